"""
Background job processor.

Consumes jobs from the queue and dispatches them to handlers by job type:
- analyze-patterns: refresh the profile and look for emerging patterns
- train-model: recompute a user's statistical baseline
- monitor-goals: raise alerts for goals falling behind schedule
- detect-account-anomalies: rapid-fire and round-number bursts on an account
- weekly-digest: per-user weekly security summary
- cleanup-retention: delete old alerts and finished queue entries

Transient failures are retried by the queue with exponential backoff.
Permanent failures are logged and, where the payload names an account,
recorded on the account as a sync error.
"""

import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Union

import httpx
import numpy as np
import redis.exceptions

from ledgerwatch.alerting.dispatcher import AlertDispatcher
from ledgerwatch.anomaly.models import Goal, Severity, Transaction
from ledgerwatch.anomaly.profile import ProfileBuilder
from ledgerwatch.anomaly.risk_score import RiskAggregator
from ledgerwatch.anomaly.schemas import AnomalyFilters
from ledgerwatch.config import Settings, settings
from ledgerwatch.exceptions import ConfigurationError, TransientError
from ledgerwatch.jobs.queue import EPOCH, Job, JobQueue, JobType, job_type_name
from ledgerwatch.stores.base import AccountStore, AlertStore, GoalStore, TransactionStore

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]

RETRYABLE_MESSAGES = (
    "econnreset",
    "econnrefused",
    "etimedout",
    "rate limit exceeded",
    "service temporarily unavailable",
    "internal server error",
    "server busy",
)

RETRYABLE_TYPES = (
    TransientError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    httpx.TransportError,
    redis.exceptions.ConnectionError,
    redis.exceptions.TimeoutError,
)


def is_retryable_error(error: BaseException) -> bool:
    """Classify an error as transient infrastructure failure."""
    if isinstance(error, RETRYABLE_TYPES):
        return True
    message = str(error).lower()
    return any(marker in message for marker in RETRYABLE_MESSAGES)


def is_round_amount(amount: float) -> bool:
    return float(amount) % 10 == 0


class JobProcessor:
    """
    Executes queued jobs with a pool of asyncio workers.

    Handlers must be idempotent: the queue delivers at least once. Alerts
    raised by handlers carry a key derived from the job's dedup key, so a
    repeated execution finds the alert it already created.
    """

    def __init__(
        self,
        queue: JobQueue,
        transactions: TransactionStore,
        accounts: AccountStore,
        goals: GoalStore,
        alerts: AlertStore,
        dispatcher: AlertDispatcher,
        profiles: Optional[ProfileBuilder] = None,
        risk: Optional[RiskAggregator] = None,
        config: Optional[Settings] = None,
    ):
        self.queue = queue
        self.transactions = transactions
        self.accounts = accounts
        self.goals = goals
        self.alerts = alerts
        self.dispatcher = dispatcher
        self.config = config or settings
        self.profiles = profiles or ProfileBuilder(transactions, self.config.profile)
        self.risk = risk or RiskAggregator(self.profiles, transactions, accounts, self.config.risk)

        self._handlers: dict[str, JobHandler] = {}
        self._workers: list[asyncio.Task] = []
        self._running = False
        self._processed = 0
        self._failed = 0

        self.register_handler(JobType.ANALYZE_PATTERNS, self.analyze_patterns)
        self.register_handler(JobType.TRAIN_MODEL, self.train_model)
        self.register_handler(JobType.MONITOR_GOALS, self.monitor_goals)
        self.register_handler(JobType.DETECT_ACCOUNT_ANOMALIES, self.detect_account_anomalies)
        self.register_handler(JobType.WEEKLY_DIGEST, self.weekly_digest)
        self.register_handler(JobType.CLEANUP_RETENTION, self.cleanup_retention)

    def register_handler(self, job_type: Union[JobType, str], handler: JobHandler) -> None:
        """Register a handler function for a job type."""
        self._handlers[job_type_name(job_type)] = handler
        logger.debug(f"Registered handler for {job_type_name(job_type)}")

    async def _read(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.config.store_timeout_seconds)

    # Execution

    async def process_job(self, job: Job) -> bool:
        """
        Run one dequeued job and record its outcome.

        Returns:
            True if the job completed
        """
        handler = self._handlers.get(job.job_type)
        if handler is None:
            error = ConfigurationError(f"No handler registered for job type {job.job_type}")
            logger.error(f"Job {job.id} failed permanently: {error}")
            await self.queue.fail(job, str(error), retryable=False)
            self._failed += 1
            return False

        try:
            result = await handler(job)
        except Exception as e:
            await self._handle_failure(job, e)
            return False

        await self.queue.complete(job, result)
        self._processed += 1
        logger.info(f"Job {job.id} ({job.job_type}) completed")
        return True

    async def _handle_failure(self, job: Job, error: Exception) -> None:
        retryable = is_retryable_error(error)
        rescheduled = await self.queue.fail(job, str(error), retryable=retryable)

        if rescheduled:
            logger.warning(
                f"Job {job.id} ({job.job_type}) attempt {job.attempts_made}/{job.attempts} "
                f"failed, retrying in {job.next_backoff().total_seconds():.1f}s: {error}"
            )
            return

        self._failed += 1
        logger.error(
            f"Job {job.id} ({job.job_type}) failed after {job.attempts_made} attempts: {error}",
            exc_info=error,
        )

        account_id = job.payload.get("account_id")
        if not retryable and account_id:
            try:
                await self._read(self.accounts.update_sync_error(account_id, str(error)))
            except Exception as e:
                logger.error(f"Could not record sync error on account {account_id}: {e}")

    async def _worker(self, index: int) -> None:
        logger.debug(f"Worker {index} started")
        while self._running:
            job = await self.queue.dequeue(timeout=self.config.queue.poll_interval_seconds)
            if job is None:
                continue
            try:
                await self.process_job(job)
            except Exception as e:
                # Queue bookkeeping failed; the job stays active for triage
                logger.error(f"Worker {index} could not record job {job.id}: {e}", exc_info=True)
        logger.debug(f"Worker {index} stopped")

    def start(self, concurrency: int = 1) -> None:
        """Start worker tasks on the running event loop."""
        if self._running:
            return
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"ledgerwatch-worker-{i}")
            for i in range(concurrency)
        ]
        logger.info(f"Started {concurrency} job workers")

    async def run(self, concurrency: int = 1) -> None:
        """Run workers until stop() is called."""
        self.start(concurrency)
        await asyncio.gather(*self._workers)

    async def stop(self) -> None:
        """Stop workers after their current job."""
        self._running = False
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Job workers stopped")

    async def drain(self, max_jobs: Optional[int] = None) -> int:
        """Process ready jobs until the queue has none; returns number processed."""
        count = 0
        while max_jobs is None or count < max_jobs:
            job = await self.queue.dequeue(timeout=0)
            if job is None:
                break
            await self.process_job(job)
            count += 1
        return count

    def get_stats(self) -> dict[str, Any]:
        """Get processor statistics."""
        return {
            "workers": len(self._workers),
            "running": self._running,
            "processed": self._processed,
            "failed": self._failed,
            "handlers": sorted(self._handlers),
        }

    # Handlers

    @staticmethod
    def _alert_key(job: Job, suffix: str) -> str:
        return f"{job.dedup_key or job.id}:{suffix}"

    async def analyze_patterns(self, job: Job) -> dict[str, Any]:
        """Refresh the profile and check the trailing window for emerging patterns."""
        user_id = job.payload["user_id"]
        patterns = self.config.patterns
        now = datetime.utcnow()

        logger.info(f"Analyzing patterns for user {user_id}")
        profile = await self.profiles.build_profile(user_id, as_of=now)

        window = await self._read(
            self.transactions.list_for_user(
                user_id, since=now - timedelta(days=patterns.pattern_window_days), until=now
            )
        )
        raised = []

        if window:
            daily_average = len(window) / patterns.pattern_window_days
            if daily_average > patterns.daily_velocity_limit:
                await self.dispatcher.create_account_security_alert(
                    user_id,
                    None,
                    "High transaction velocity detected",
                    Severity.MEDIUM,
                    dedup_key=self._alert_key(job, "velocity"),
                )
                raised.append("velocity")

            amounts = np.array([t.magnitude for t in window])
            limit = float(amounts.mean()) * patterns.large_amount_multiplier
            large_count = int((amounts > limit).sum())
            if large_count > patterns.large_amount_count:
                await self.dispatcher.create_account_security_alert(
                    user_id,
                    None,
                    "Multiple large transactions detected",
                    Severity.MEDIUM,
                    dedup_key=self._alert_key(job, "large-amounts"),
                )
                raised.append("large-amounts")

        return {
            "user_id": user_id,
            "transactions": len(window),
            "profile_transactions": profile.transaction_count,
            "patterns": raised,
        }

    async def train_model(self, job: Job) -> dict[str, Any]:
        """Recompute the user's statistical baseline from recent history."""
        user_id = job.payload["user_id"]
        patterns = self.config.patterns

        history = await self._read(
            self.transactions.list_for_user(
                user_id, since=EPOCH, limit=patterns.training_max_transactions
            )
        )
        if len(history) < patterns.training_min_transactions:
            logger.info(
                f"Insufficient data for training model for user {user_id} "
                f"({len(history)} transactions)"
            )
            return {"user_id": user_id, "trained": False, "data_points": len(history)}

        amounts = np.array([t.magnitude for t in history])
        mean = float(np.mean(amounts))
        std_dev = float(np.std(amounts))

        logger.info(f"Model training completed for user {user_id} on {len(history)} transactions")
        return {
            "user_id": user_id,
            "trained": True,
            "model_type": "statistical",
            "mean": mean,
            "std_dev": std_dev,
            "threshold": mean + 2 * std_dev,
            "data_points": len(history),
        }

    async def monitor_goals(self, job: Job) -> dict[str, Any]:
        """Raise goal risk alerts for goals behind schedule."""
        user_id = job.payload.get("user_id")
        now = datetime.utcnow()

        goals = await self._read(self.goals.list_active(as_of=now, user_id=user_id))
        at_risk = 0
        for goal in goals:
            assessment = self.assess_goal(goal, now)
            if assessment is None:
                continue
            risk_level, message = assessment
            await self.dispatcher.create_goal_risk_alert(
                goal.user_id,
                goal.id,
                risk_level,
                message,
                dedup_key=self._alert_key(job, f"goal:{goal.id}"),
            )
            at_risk += 1

        logger.info(f"Goal monitoring completed for {len(goals)} goals, {at_risk} at risk")
        return {"goals": len(goals), "at_risk": at_risk}

    def assess_goal(self, goal: Goal, now: datetime) -> Optional[tuple[Severity, str]]:
        """
        Compare time progress with amount progress.

        Returns:
            (risk level, message), or None when the goal is on track
        """
        p = self.config.patterns
        days_remaining = math.ceil((goal.target_date - now).total_seconds() / 86400)
        if days_remaining <= 0 or goal.target_amount <= 0:
            return None

        span = (goal.target_date - goal.created_at).total_seconds()
        if span <= 0:
            return None

        amount_progress = goal.current_amount / goal.target_amount * 100
        time_progress = (now - goal.created_at).total_seconds() / span * 100

        if time_progress > p.goal_high_time_progress and amount_progress < p.goal_high_amount_progress:
            return Severity.HIGH, (
                f"Your goal \"{goal.name}\" is at high risk. You're {time_progress:.0f}% "
                f"through the timeline but only {amount_progress:.0f}% complete."
            )
        if time_progress > p.goal_medium_time_progress and amount_progress < p.goal_medium_amount_progress:
            return Severity.MEDIUM, (
                f"Your goal \"{goal.name}\" may be at risk. "
                f"Consider increasing your efforts to stay on track."
            )
        if days_remaining <= p.goal_deadline_days and amount_progress < p.goal_deadline_amount_progress:
            return Severity.MEDIUM, (
                f"Your goal \"{goal.name}\" has {days_remaining} days remaining "
                f"and is {amount_progress:.0f}% complete."
            )
        return None

    async def detect_account_anomalies(self, job: Job) -> dict[str, Any]:
        """Look for bursts of activity on one account over the trailing day."""
        user_id = job.payload["user_id"]
        account_id = job.payload["account_id"]
        p = self.config.patterns
        now = datetime.utcnow()

        recent = await self._read(
            self.transactions.list_for_user(
                user_id,
                since=now - timedelta(hours=p.account_window_hours),
                until=now,
                account_id=account_id,
            )
        )
        findings = self.account_findings(recent)

        for suffix, (event, severity) in findings.items():
            await self.dispatcher.create_account_security_alert(
                user_id,
                account_id,
                event,
                severity,
                dedup_key=self._alert_key(job, suffix),
            )

        return {"account_id": account_id, "transactions": len(recent), "findings": list(findings)}

    def account_findings(self, recent: list[Transaction]) -> dict[str, tuple[str, Severity]]:
        """Rapid-fire and round-number findings for newest-first transactions."""
        p = self.config.patterns
        findings: dict[str, tuple[str, Severity]] = {}
        if not recent:
            return findings

        rapid = sum(
            1 for newer, older in zip(recent, recent[1:])
            if (newer.date - older.date).total_seconds() < p.rapid_gap_seconds
        )
        if rapid > p.rapid_count_limit:
            findings["rapid"] = (f"{rapid} rapid transactions detected", Severity.HIGH)

        round_count = sum(1 for t in recent if is_round_amount(t.magnitude))
        if round_count > p.round_count_limit and round_count / len(recent) > p.round_ratio_limit:
            findings["round-numbers"] = (
                "Suspicious round number transaction pattern detected",
                Severity.CRITICAL,
            )
        return findings

    async def weekly_digest(self, job: Job) -> dict[str, Any]:
        """Summarize the last week of alerts for every affected user."""
        now = datetime.utcnow()
        since = now - timedelta(days=7)
        user_id = job.payload.get("user_id")

        users = [user_id] if user_id else await self._read(self.alerts.users_with_alerts_since(since))
        generated = 0
        for user in users:
            try:
                if await self._weekly_summary(job, user, since):
                    generated += 1
            except Exception as e:
                logger.error(f"Failed to generate weekly summary for user {user}: {e}")

        logger.info(f"Generated weekly anomaly reports for {generated} users")
        return {"users": len(users), "generated": generated}

    async def _weekly_summary(self, job: Job, user_id: str, since: datetime) -> bool:
        recent = await self._read(
            self.alerts.list_for_user(user_id, AnomalyFilters(start_date=since, limit=100))
        )
        anomalies = [a for a in recent if not a.details.get("digest")]
        if not anomalies:
            return False

        high_count = sum(1 for a in anomalies if a.severity.rank >= Severity.HIGH.rank)
        risk = await self.risk.calculate(user_id)

        await self.dispatcher.create_account_security_alert(
            user_id,
            None,
            f"Weekly Security Summary: {len(anomalies)} anomalies detected, "
            f"risk score: {risk.overall_risk}",
            Severity.MEDIUM if high_count else Severity.LOW,
            dedup_key=self._alert_key(job, f"digest:{user_id}"),
            extra={
                "digest": True,
                "totalAnomalies": len(anomalies),
                "highSeverityCount": high_count,
                "topConcerns": [a.title for a in anomalies[:3]],
                "currentRiskScore": risk.overall_risk,
            },
        )
        return True

    async def cleanup_retention(self, job: Job) -> dict[str, int]:
        """Delete expired alerts and finished queue entries."""
        s = self.config.scheduler
        cutoff = datetime.utcnow() - timedelta(days=s.alert_retention_days)

        alerts_deleted = await self._read(self.alerts.delete_older_than(cutoff))
        completed = await self.queue.clean(s.completed_job_retention_days * 86400, "completed")
        failed = await self.queue.clean(s.failed_job_retention_days * 86400, "failed")

        logger.info(
            f"Retention cleanup removed {alerts_deleted} alerts, "
            f"{completed} completed and {failed} failed jobs"
        )
        return {"alerts": alerts_deleted, "completed_jobs": completed, "failed_jobs": failed}
