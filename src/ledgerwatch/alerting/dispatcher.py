"""
Alert creation and delivery.

Alerts are always persisted. Push delivery is attempted afterwards and its
failures never reach the caller, so persistence is not coupled to the
notification transport.
"""

import json
import logging
from datetime import datetime
from typing import Any, Optional

from ledgerwatch.alerting.models import Alert, AlertType
from ledgerwatch.alerting.push import LoggingPushTransport, PushTransport
from ledgerwatch.anomaly.models import AnomalyResult, AnomalyType, Severity, Transaction
from ledgerwatch.anomaly.schemas import AnomalyFilters
from ledgerwatch.exceptions import AlertNotFoundError, NotificationError
from ledgerwatch.stores.base import AlertStore

logger = logging.getLogger(__name__)

ANOMALY_TITLES = {
    AnomalyType.AMOUNT: "Unusual Transaction Amount",
    AnomalyType.FREQUENCY: "High Transaction Frequency",
    AnomalyType.LOCATION: "Transaction in New Location",
    AnomalyType.MERCHANT: "Transaction with New Merchant",
    AnomalyType.TIME: "Transaction at Unusual Time",
    AnomalyType.PATTERN: "Unusual Transaction Pattern",
}

DEFAULT_ALERT_LIMIT = 50


def format_amount(amount: float) -> str:
    """Format an amount as Brazilian reais, e.g. R$ 1.234,56."""
    text = f"{amount:,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"R$ {text}"


def alert_type_for(anomaly_type: AnomalyType) -> AlertType:
    """Amount anomalies are spending alerts; everything else is fraud."""
    if anomaly_type == AnomalyType.AMOUNT:
        return AlertType.UNUSUAL_SPENDING
    return AlertType.FRAUD_DETECTION


class AlertDispatcher:
    """
    Creates, lists and acknowledges alerts.

    Every create accepts an optional dedup key. Repeated creates with the
    same key return the stored alert and do not notify again, which makes
    at-least-once job delivery safe.
    """

    def __init__(
        self,
        store: AlertStore,
        push: Optional[PushTransport] = None,
    ):
        self.store = store
        self.push = push or LoggingPushTransport()

    async def create_anomaly_alert(
        self,
        user_id: str,
        result: AnomalyResult,
        transaction: Transaction,
        dedup_key: Optional[str] = None,
    ) -> Alert:
        """
        Create an alert for an anomalous transaction.

        Args:
            user_id: Owner of the transaction
            result: Combined detection result
            transaction: The analyzed transaction
            dedup_key: Optional idempotency key

        Returns:
            The persisted alert
        """
        message = (
            f"A transaction of {format_amount(transaction.amount)} for "
            f"\"{transaction.description}\" has been flagged as potentially suspicious."
        )
        if result.reasons:
            message = f"{message} Reason: {result.reasons[0]}"

        alert = Alert(
            user_id=user_id,
            alert_type=alert_type_for(result.anomaly_type),
            severity=result.severity,
            title=ANOMALY_TITLES.get(result.anomaly_type, "Suspicious Activity Detected"),
            message=message,
            transaction_id=transaction.id or None,
            details={
                "transactionAmount": transaction.amount,
                "transactionDescription": transaction.description,
                "transactionDate": transaction.date.isoformat(),
                "anomalyType": result.anomaly_type.value,
                "confidence": result.confidence,
                "riskScore": result.risk_score,
                "reasons": list(result.reasons),
                "recommendations": list(result.recommendations),
            },
        )
        return await self._persist_and_notify(alert, dedup_key, always_notify=False)

    async def create_goal_risk_alert(
        self,
        user_id: str,
        goal_id: str,
        risk_level: Severity,
        message: str,
        dedup_key: Optional[str] = None,
    ) -> Alert:
        """Create an alert for a savings goal that is falling behind."""
        alert = Alert(
            user_id=user_id,
            alert_type=AlertType.GOAL_RISK,
            severity=risk_level,
            title="Goal at Risk",
            message=message,
            action_url=f"/goals/{goal_id}",
            details={
                "goalId": goal_id,
                "riskLevel": risk_level.value,
                "timestamp": datetime.utcnow().isoformat(),
            },
        )
        return await self._persist_and_notify(alert, dedup_key, always_notify=False)

    async def create_account_security_alert(
        self,
        user_id: str,
        account_id: Optional[str],
        event: str,
        severity: Severity,
        dedup_key: Optional[str] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> Alert:
        """Create a security alert; these notify regardless of severity."""
        details = {
            "accountId": account_id,
            "securityEvent": event,
            "timestamp": datetime.utcnow().isoformat(),
        }
        details.update(extra or {})
        alert = Alert(
            user_id=user_id,
            alert_type=AlertType.ACCOUNT_SECURITY,
            severity=severity,
            title="Account Security Alert",
            message=f"Security event detected: {event}",
            action_url=f"/accounts/{account_id}" if account_id else None,
            details=details,
        )
        return await self._persist_and_notify(alert, dedup_key, always_notify=True)

    async def _persist_and_notify(
        self,
        alert: Alert,
        dedup_key: Optional[str],
        always_notify: bool,
    ) -> Alert:
        stored = await self.store.create(alert, dedup_key=dedup_key)
        if stored.id != alert.id:
            logger.debug(f"Alert for key {dedup_key} already exists as {stored.id}")
            return stored

        logger.info(
            f"Created {stored.severity.value} {stored.alert_type.value} alert "
            f"for user {stored.user_id}: {stored.title}"
        )

        if always_notify or stored.severity != Severity.LOW:
            await self._notify(stored)

        return stored

    async def _notify(self, alert: Alert) -> None:
        data = {
            "type": "anomaly_alert",
            "alertId": alert.id,
            "alertType": alert.alert_type.value,
            "severity": alert.severity.value,
            "details": json.dumps(alert.details, default=str),
            "timestamp": datetime.utcnow().isoformat(),
            "requiresAction": "true" if alert.severity == Severity.CRITICAL else "false",
        }
        try:
            await self.push.send(alert.user_id, alert.title, alert.message, data)
        except NotificationError as e:
            logger.error(f"Push notification failed for alert {alert.id}: {e}")
        except Exception as e:
            logger.error(f"Unexpected push failure for alert {alert.id}: {e}", exc_info=True)

    async def get_user_alerts(
        self,
        user_id: str,
        filters: Optional[AnomalyFilters] = None,
    ) -> list[Alert]:
        """List a user's alerts, newest first."""
        return await self.store.list_for_user(
            user_id, filters or AnomalyFilters(limit=DEFAULT_ALERT_LIMIT)
        )

    async def acknowledge_alert(self, user_id: str, alert_id: str) -> Alert:
        """
        Acknowledge one of the user's alerts.

        Acknowledging twice keeps the first acknowledgement time.

        Raises:
            AlertNotFoundError: If the alert does not exist or belongs to another user
        """
        alert = await self.store.get(alert_id)
        if alert is None or alert.user_id != user_id:
            raise AlertNotFoundError(alert_id, user_id)

        if alert.acknowledge():
            await self.store.update(alert)
            logger.info(f"Alert {alert_id} acknowledged by {user_id}")

        return alert

    async def get_stats(self, user_id: str) -> dict[str, Any]:
        """Get alert statistics for a user."""
        alerts = await self.store.list_for_user(user_id)

        by_type: dict[str, int] = {}
        by_severity: dict[str, int] = {}
        acknowledged_count = 0

        for alert in alerts:
            by_type[alert.alert_type.value] = by_type.get(alert.alert_type.value, 0) + 1
            by_severity[alert.severity.value] = by_severity.get(alert.severity.value, 0) + 1
            if alert.acknowledged:
                acknowledged_count += 1

        return {
            "total": len(alerts),
            "acknowledged": acknowledged_count,
            "unacknowledged": len(alerts) - acknowledged_count,
            "by_type": by_type,
            "by_severity": by_severity,
        }
