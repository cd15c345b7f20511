"""
Anomaly detection service.

Entry point used by the HTTP layer. Transaction analysis runs inline:
profile -> features -> rules -> statistical score -> combined result, and an
alert when warranted. A follow-up pattern analysis job is then enqueued in
the background so queue backpressure never delays the response.
"""

import asyncio
import logging
from typing import Any, Optional, Union

from pydantic import ValidationError

from ledgerwatch.alerting.dispatcher import AlertDispatcher
from ledgerwatch.alerting.models import Alert
from ledgerwatch.anomaly.combiner import DecisionCombiner
from ledgerwatch.anomaly.features import FeatureExtractor
from ledgerwatch.anomaly.models import AnomalyResult, RiskScoreComponents, Severity
from ledgerwatch.anomaly.profile import ProfileBuilder
from ledgerwatch.anomaly.risk_score import RiskAggregator
from ledgerwatch.anomaly.rules_engine import FraudRule, RuleRegistry, RulesEngine
from ledgerwatch.anomaly.schemas import AnalyzeTransactionRequest, AnomalyFilters
from ledgerwatch.anomaly.scorer import StatisticalScorer
from ledgerwatch.config import Settings, settings
from ledgerwatch.exceptions import InvalidTransactionError
from ledgerwatch.jobs.queue import JobOptions, JobQueue, JobType, dedup_key_for
from ledgerwatch.stores.base import AccountStore, TransactionStore

logger = logging.getLogger(__name__)


class AnomalyDetectionService:
    """Facade over the detection pipeline, alerting and background queue."""

    def __init__(
        self,
        transactions: TransactionStore,
        accounts: AccountStore,
        dispatcher: AlertDispatcher,
        queue: JobQueue,
        registry: Optional[RuleRegistry] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or settings
        self.dispatcher = dispatcher
        self.queue = queue

        timeout = self.config.store_timeout_seconds
        self.profiles = ProfileBuilder(transactions, self.config.profile, timeout)
        self.features = FeatureExtractor(transactions, timeout)
        self.rules = RulesEngine(registry, self.config.rules)
        self.scorer = StatisticalScorer(self.config.scorer)
        self.combiner = DecisionCombiner(self.config.combiner)
        self.risk = RiskAggregator(
            self.profiles,
            transactions,
            accounts,
            self.config.risk,
            timeout,
        )

        self._background: set[asyncio.Task] = set()

    async def analyze_transaction(
        self,
        user_id: str,
        transaction: Union[AnalyzeTransactionRequest, dict[str, Any]],
    ) -> AnomalyResult:
        """
        Analyze one transaction for anomalies.

        Args:
            user_id: Owner of the transaction
            transaction: Request model or raw mapping

        Returns:
            AnomalyResult

        Raises:
            InvalidTransactionError: If the transaction is malformed
        """
        request = self._validate(transaction)
        candidate = request.to_transaction(user_id)

        profile = await self.profiles.build_profile(user_id)
        features = await self.features.extract_features(user_id, candidate, profile)

        rule_result = self.rules.evaluate(features, profile)
        statistical = self.scorer.evaluate(features, profile)
        result = self.combiner.combine(
            rule_result,
            statistical.score,
            features,
            profile,
            statistical_reasons=self.scorer.reasons(features, profile),
        )

        if result.is_anomaly and result.severity != Severity.LOW:
            await self.dispatcher.create_anomaly_alert(
                user_id,
                result,
                candidate,
                dedup_key=f"transaction:{candidate.id}" if candidate.id else None,
            )

        logger.info(
            f"Analyzed transaction for user {user_id}: anomaly={result.is_anomaly} "
            f"severity={result.severity.value} confidence={result.confidence:.2f}"
        )

        self._enqueue_in_background(user_id, candidate.id, result)
        return result

    def _validate(
        self,
        transaction: Union[AnalyzeTransactionRequest, dict[str, Any]],
    ) -> AnalyzeTransactionRequest:
        if isinstance(transaction, AnalyzeTransactionRequest):
            return transaction
        try:
            return AnalyzeTransactionRequest.model_validate(transaction)
        except ValidationError as e:
            logger.warning(f"Rejected malformed transaction: {e.error_count()} errors")
            raise InvalidTransactionError("Invalid transaction data", e.errors()) from e

    def _enqueue_in_background(
        self,
        user_id: str,
        transaction_id: Optional[str],
        result: AnomalyResult,
    ) -> None:
        task = asyncio.create_task(self._enqueue_pattern_analysis(user_id, transaction_id, result))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _enqueue_pattern_analysis(
        self,
        user_id: str,
        transaction_id: Optional[str],
        result: AnomalyResult,
    ) -> None:
        try:
            await asyncio.wait_for(
                self.queue.enqueue(
                    JobType.ANALYZE_PATTERNS,
                    {
                        "user_id": user_id,
                        "transaction_id": transaction_id,
                        "result": result.to_dict(),
                    },
                    JobOptions(
                        priority=3,
                        attempts=2,
                        dedup_key=dedup_key_for(user_id, JobType.ANALYZE_PATTERNS),
                    ),
                ),
                timeout=self.config.queue.enqueue_timeout_seconds,
            )
        except Exception as e:
            logger.warning(f"Could not enqueue pattern analysis for user {user_id}: {e}")

    async def drain_background(self) -> None:
        """Wait for pending background enqueues."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def get_user_anomalies(
        self,
        user_id: str,
        filters: Optional[AnomalyFilters] = None,
    ) -> list[Alert]:
        """List a user's alerts matching the filters, newest first."""
        return await self.dispatcher.store.list_for_user(user_id, filters or AnomalyFilters())

    async def calculate_risk_score(self, user_id: str) -> RiskScoreComponents:
        """Current risk score for a user."""
        return await self.risk.calculate(user_id)

    async def train_user_model(self, user_id: str) -> dict[str, Any]:
        """Request a model refresh; training happens in the background."""
        await asyncio.wait_for(
            self.queue.enqueue(
                JobType.TRAIN_MODEL,
                {"user_id": user_id},
                JobOptions(
                    priority=5,
                    attempts=2,
                    dedup_key=dedup_key_for(user_id, JobType.TRAIN_MODEL),
                ),
            ),
            timeout=self.config.queue.enqueue_timeout_seconds,
        )
        logger.info(f"Model training requested for user {user_id}")
        return {"acknowledged": True, "message": "Model training initiated"}

    async def get_user_alerts(self, user_id: str) -> list[Alert]:
        """Most recent alerts of a user."""
        return await self.dispatcher.get_user_alerts(user_id)

    async def acknowledge_alert(self, user_id: str, alert_id: str) -> None:
        """Acknowledge one of the user's alerts."""
        await self.dispatcher.acknowledge_alert(user_id, alert_id)

    def toggle_rule(self, rule_id: str, active: bool) -> FraudRule:
        """Enable or disable a fraud rule without restarting."""
        return self.rules.registry.set_active(rule_id, active)

    def list_rules(self) -> list[FraudRule]:
        return self.rules.registry.list_rules()
