"""
Request schemas accepted from the HTTP layer.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ledgerwatch.alerting.models import AlertType
from ledgerwatch.anomaly.models import AnomalyType, Severity, Transaction


class TransactionKind(str, Enum):
    """Direction of a submitted transaction."""

    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class AnalyzeTransactionRequest(BaseModel):
    """Transaction submitted for synchronous analysis."""

    type: TransactionKind = TransactionKind.EXPENSE
    amount: float = Field(..., ge=0.01)
    description: str = Field(..., min_length=1)
    date: datetime
    id: Optional[str] = None
    account_id: Optional[str] = None
    category: Optional[str] = None
    location: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def round_amount(cls, v: float) -> float:
        """Amounts carry at most two decimal places."""
        return round(v, 2)

    @field_validator("date")
    @classmethod
    def strip_timezone(cls, v: datetime) -> datetime:
        """Normalize aware timestamps to naive UTC."""
        if v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v

    def to_transaction(self, user_id: str) -> Transaction:
        """Build the candidate transaction for the pipeline."""
        return Transaction(
            id=self.id or "",
            user_id=user_id,
            amount=self.amount,
            description=self.description,
            date=self.date,
            account_id=self.account_id,
            location=self.location,
            category=self.category,
            type=self.type.value,
        )


class AnomalyFilters(BaseModel):
    """Filters for listing a user's alerts."""

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    severity: Optional[Severity] = None
    alert_type: Optional[AlertType] = None
    anomaly_type: Optional[AnomalyType] = None
    acknowledged: Optional[bool] = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit
