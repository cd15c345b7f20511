"""
Alert model.

Alerts are user-scoped records of a detected condition. They are mutated
only by acknowledgement and removed only by the retention sweep.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from ledgerwatch.anomaly.models import Severity


class AlertType(str, Enum):
    """Types of alerts."""

    FRAUD_DETECTION = "fraud_detection"
    UNUSUAL_SPENDING = "unusual_spending"
    GOAL_RISK = "goal_risk"
    ACCOUNT_SECURITY = "account_security"


@dataclass
class Alert:
    """An alert raised for a user."""

    user_id: str
    alert_type: AlertType
    severity: Severity
    title: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    transaction_id: Optional[str] = None
    action_url: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=datetime.utcnow)
    acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None

    def acknowledge(self, at: Optional[datetime] = None) -> bool:
        """
        Acknowledge the alert.

        Returns:
            True if the state changed, False if it was already acknowledged
        """
        if self.acknowledged:
            return False
        self.acknowledged = True
        self.acknowledged_at = at or datetime.utcnow()
        return True

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "userId": self.user_id,
            "transactionId": self.transaction_id,
            "type": self.alert_type.value,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "details": self.details,
            "actionUrl": self.action_url,
            "isAcknowledged": self.acknowledged,
            "acknowledgedAt": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
            "createdAt": self.created_at.isoformat(),
        }
