"""
Collaborator interfaces consumed by the detection pipeline.

Persistence technology is owned elsewhere; the pipeline only depends on
these contracts. All methods are async and may raise on infrastructure
failure.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from ledgerwatch.alerting.models import Alert
from ledgerwatch.anomaly.models import Account, Goal, Severity, Transaction
from ledgerwatch.anomaly.schemas import AnomalyFilters


class TransactionStore(ABC):
    """Read access to user transactions."""

    @abstractmethod
    async def list_for_user(
        self,
        user_id: str,
        since: datetime,
        until: Optional[datetime] = None,
        account_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        """List transactions dated in [since, until], newest first."""

    @abstractmethod
    async def most_recent_for_user(
        self,
        user_id: str,
        before: Optional[datetime] = None,
        exclude_id: Optional[str] = None,
    ) -> Optional[Transaction]:
        """Get the latest transaction dated at or before `before`."""

    @abstractmethod
    async def count_for_user(
        self,
        user_id: str,
        since: datetime,
        until: datetime,
        exclude_id: Optional[str] = None,
    ) -> int:
        """Count transactions dated in [since, until]."""

    @abstractmethod
    async def users_with_transactions_since(
        self,
        since: datetime,
        by: str = "created_at",
    ) -> list[str]:
        """Distinct user ids with a transaction created (or dated) since."""

    @abstractmethod
    async def accounts_with_activity_since(
        self,
        since: datetime,
    ) -> list[tuple[str, str]]:
        """Distinct (user_id, account_id) pairs with transactions dated since."""


class AccountStore(ABC):
    """Access to user accounts."""

    @abstractmethod
    async def list_for_user(self, user_id: str) -> list[Account]:
        """List all accounts of a user."""

    @abstractmethod
    async def update_sync_error(self, account_id: str, message: str) -> None:
        """Annotate an account with a synchronization error."""


class GoalStore(ABC):
    """Read access to savings goals."""

    @abstractmethod
    async def list_active(
        self,
        as_of: datetime,
        user_id: Optional[str] = None,
    ) -> list[Goal]:
        """List active goals whose target date is not before `as_of`."""


class AlertStore(ABC):
    """Persistence for alerts."""

    @abstractmethod
    async def create(self, alert: Alert, dedup_key: Optional[str] = None) -> Alert:
        """
        Persist an alert.

        When `dedup_key` was already used, the previously stored alert is
        returned and nothing new is written.
        """

    @abstractmethod
    async def get(self, alert_id: str) -> Optional[Alert]:
        """Get an alert by id."""

    @abstractmethod
    async def update(self, alert: Alert) -> None:
        """Persist acknowledgement state."""

    @abstractmethod
    async def list_for_user(
        self,
        user_id: str,
        filters: Optional[AnomalyFilters] = None,
    ) -> list[Alert]:
        """List a user's alerts, newest first."""

    @abstractmethod
    async def count_since(
        self,
        since: datetime,
        min_severity: Severity = Severity.LOW,
    ) -> int:
        """Count alerts created since a point in time."""

    @abstractmethod
    async def users_with_alerts_since(self, since: datetime) -> list[str]:
        """Distinct users with alerts created since a point in time."""

    @abstractmethod
    async def delete_older_than(self, cutoff: datetime) -> int:
        """Delete alerts created before the cutoff; returns count deleted."""


def alert_matches(alert: Alert, filters: Optional[AnomalyFilters]) -> bool:
    """Check an alert against listing filters (pagination excluded)."""
    if filters is None:
        return True
    if filters.start_date and alert.created_at < filters.start_date:
        return False
    if filters.end_date and alert.created_at > filters.end_date:
        return False
    if filters.severity and alert.severity != filters.severity:
        return False
    if filters.alert_type and alert.alert_type != filters.alert_type:
        return False
    if filters.anomaly_type and alert.details.get("anomalyType") != filters.anomaly_type.value:
        return False
    if filters.acknowledged is not None and alert.acknowledged != filters.acknowledged:
        return False
    return True
