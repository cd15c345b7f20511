"""
Domain types for the detection pipeline.

Transactions, accounts and goals are read models owned by external stores;
profiles, feature vectors and results are derived per request.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class Severity(str, Enum):
    """Severity levels shared by results and alerts."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class AnomalyType(str, Enum):
    """Dominant signal behind an anomaly."""

    AMOUNT = "amount"
    FREQUENCY = "frequency"
    LOCATION = "location"
    MERCHANT = "merchant"
    TIME = "time"
    PATTERN = "pattern"


@dataclass
class Transaction:
    """A financial transaction as seen by the detection pipeline."""

    id: str
    user_id: str
    amount: float
    description: str
    date: datetime
    account_id: Optional[str] = None
    location: Optional[str] = None
    category: Optional[str] = None
    type: str = "expense"
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def magnitude(self) -> float:
        """Absolute amount; expenses may be stored as negatives."""
        return abs(float(self.amount))


@dataclass
class Account:
    """A linked or manual financial account."""

    id: str
    user_id: str
    name: str = ""
    provider: Optional[str] = None
    is_active: bool = True
    last_sync_at: Optional[datetime] = None
    sync_error: Optional[str] = None


@dataclass
class Goal:
    """A savings goal."""

    id: str
    user_id: str
    name: str
    target_amount: float
    current_amount: float
    target_date: datetime
    created_at: datetime
    is_active: bool = True


@dataclass
class BehaviorProfile:
    """Statistical baseline of a user's historical transactions."""

    user_id: str
    average_amount: float
    median_amount: float
    std_dev: float
    common_merchants: list[str] = field(default_factory=list)
    common_locations: list[str] = field(default_factory=list)
    common_categories: list[str] = field(default_factory=list)
    active_hours: list[int] = field(default_factory=list)  # 0-23
    active_weekdays: list[int] = field(default_factory=list)  # Monday=0
    active_days_of_month: list[int] = field(default_factory=list)  # 1-31
    transaction_count: int = 0
    is_default: bool = False
    last_updated: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "user_id": self.user_id,
            "average_amount": self.average_amount,
            "median_amount": self.median_amount,
            "std_dev": self.std_dev,
            "common_merchants": list(self.common_merchants),
            "common_locations": list(self.common_locations),
            "common_categories": list(self.common_categories),
            "active_hours": list(self.active_hours),
            "active_weekdays": list(self.active_weekdays),
            "active_days_of_month": list(self.active_days_of_month),
            "transaction_count": self.transaction_count,
            "is_default": self.is_default,
            "last_updated": self.last_updated.isoformat(),
        }


@dataclass
class FeatureVector:
    """Flat signals derived from one candidate transaction and a profile."""

    amount: float
    hour_of_day: int
    day_of_week: int
    day_of_month: int
    is_weekend: bool
    merchant_rank: int  # 1-based position in common merchants, 0 if unseen
    location_rank: int
    hours_since_previous: float
    amount_deviation: float  # |amount - mean| / stddev
    is_new_merchant: bool
    is_new_location: bool
    recent_count: int  # transactions in the trailing 60 minutes

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "amount": self.amount,
            "hour_of_day": self.hour_of_day,
            "day_of_week": self.day_of_week,
            "day_of_month": self.day_of_month,
            "is_weekend": self.is_weekend,
            "merchant_rank": self.merchant_rank,
            "location_rank": self.location_rank,
            "hours_since_previous": self.hours_since_previous,
            "amount_deviation": self.amount_deviation,
            "is_new_merchant": self.is_new_merchant,
            "is_new_location": self.is_new_location,
            "recent_count": self.recent_count,
        }


@dataclass
class AnomalyResult:
    """Combined verdict for one analyzed transaction."""

    is_anomaly: bool
    confidence: float
    severity: Severity
    anomaly_type: AnomalyType
    reasons: list[str] = field(default_factory=list)
    risk_score: int = 0
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "isAnomaly": self.is_anomaly,
            "confidence": self.confidence,
            "severity": self.severity.value,
            "anomalyType": self.anomaly_type.value,
            "reasons": list(self.reasons),
            "riskScore": self.risk_score,
            "recommendations": list(self.recommendations),
        }


@dataclass
class RiskScoreComponents:
    """Multi-dimensional 0-100 risk score for a user."""

    transaction_risk: int
    behavior_risk: int
    account_risk: int
    time_risk: int
    location_risk: int
    overall_risk: int

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary."""
        return {
            "transactionRisk": self.transaction_risk,
            "behaviorRisk": self.behavior_risk,
            "accountRisk": self.account_risk,
            "timeRisk": self.time_risk,
            "locationRisk": self.location_risk,
            "overallRisk": self.overall_risk,
        }
