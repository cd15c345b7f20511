"""
In-memory collaborator implementations.

Used for tests, demos and single-process deployments without a database.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from ledgerwatch.alerting.models import Alert
from ledgerwatch.anomaly.models import Account, Goal, Severity, Transaction
from ledgerwatch.anomaly.schemas import AnomalyFilters
from ledgerwatch.stores.base import (
    AccountStore,
    AlertStore,
    GoalStore,
    TransactionStore,
    alert_matches,
)

logger = logging.getLogger(__name__)


class InMemoryTransactionStore(TransactionStore):
    """Transaction store backed by a list."""

    def __init__(self, transactions: Optional[list[Transaction]] = None):
        self._transactions: list[Transaction] = list(transactions or [])

    def add(self, transaction: Transaction) -> None:
        self._transactions.append(transaction)

    def add_many(self, transactions: list[Transaction]) -> None:
        self._transactions.extend(transactions)

    async def list_for_user(
        self,
        user_id: str,
        since: datetime,
        until: Optional[datetime] = None,
        account_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        result = [
            t for t in self._transactions
            if t.user_id == user_id
            and t.date >= since
            and (until is None or t.date <= until)
            and (account_id is None or t.account_id == account_id)
        ]
        result.sort(key=lambda t: t.date, reverse=True)
        if limit is not None:
            result = result[:limit]
        return result

    async def most_recent_for_user(
        self,
        user_id: str,
        before: Optional[datetime] = None,
        exclude_id: Optional[str] = None,
    ) -> Optional[Transaction]:
        candidates = [
            t for t in self._transactions
            if t.user_id == user_id
            and (before is None or t.date <= before)
            and (not exclude_id or t.id != exclude_id)
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda t: t.date)

    async def count_for_user(
        self,
        user_id: str,
        since: datetime,
        until: datetime,
        exclude_id: Optional[str] = None,
    ) -> int:
        return sum(
            1 for t in self._transactions
            if t.user_id == user_id
            and since <= t.date <= until
            and (not exclude_id or t.id != exclude_id)
        )

    async def users_with_transactions_since(
        self,
        since: datetime,
        by: str = "created_at",
    ) -> list[str]:
        users: dict[str, None] = {}
        for t in self._transactions:
            if getattr(t, by) >= since:
                users[t.user_id] = None
        return list(users)

    async def accounts_with_activity_since(
        self,
        since: datetime,
    ) -> list[tuple[str, str]]:
        pairs: dict[tuple[str, str], None] = {}
        for t in self._transactions:
            if t.account_id and t.date >= since:
                pairs[(t.user_id, t.account_id)] = None
        return list(pairs)


class InMemoryAccountStore(AccountStore):
    """Account store backed by a dict."""

    def __init__(self, accounts: Optional[list[Account]] = None):
        self._accounts: dict[str, Account] = {a.id: a for a in accounts or []}

    def add(self, account: Account) -> None:
        self._accounts[account.id] = account

    def get(self, account_id: str) -> Optional[Account]:
        return self._accounts.get(account_id)

    async def list_for_user(self, user_id: str) -> list[Account]:
        return [a for a in self._accounts.values() if a.user_id == user_id]

    async def update_sync_error(self, account_id: str, message: str) -> None:
        account = self._accounts.get(account_id)
        if account is None:
            logger.warning(f"Cannot mark sync error, account {account_id} not found")
            return
        account.sync_error = message


class InMemoryGoalStore(GoalStore):
    """Goal store backed by a list."""

    def __init__(self, goals: Optional[list[Goal]] = None):
        self._goals: list[Goal] = list(goals or [])

    def add(self, goal: Goal) -> None:
        self._goals.append(goal)

    async def list_active(
        self,
        as_of: datetime,
        user_id: Optional[str] = None,
    ) -> list[Goal]:
        return [
            g for g in self._goals
            if g.is_active
            and g.target_date >= as_of
            and (user_id is None or g.user_id == user_id)
        ]


class InMemoryAlertStore(AlertStore):
    """Alert store with dedup-key upserts."""

    def __init__(self):
        self._alerts: dict[str, Alert] = {}
        self._dedup_keys: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def create(self, alert: Alert, dedup_key: Optional[str] = None) -> Alert:
        async with self._lock:
            if dedup_key and dedup_key in self._dedup_keys:
                existing = self._alerts.get(self._dedup_keys[dedup_key])
                if existing is not None:
                    logger.debug(f"Duplicate alert for key {dedup_key}, skipping")
                    return existing
            self._alerts[alert.id] = alert
            if dedup_key:
                self._dedup_keys[dedup_key] = alert.id
            return alert

    async def get(self, alert_id: str) -> Optional[Alert]:
        return self._alerts.get(alert_id)

    async def update(self, alert: Alert) -> None:
        self._alerts[alert.id] = alert

    async def list_for_user(
        self,
        user_id: str,
        filters: Optional[AnomalyFilters] = None,
    ) -> list[Alert]:
        alerts = [
            a for a in self._alerts.values()
            if a.user_id == user_id and alert_matches(a, filters)
        ]
        alerts.sort(key=lambda a: a.created_at, reverse=True)
        if filters is not None:
            alerts = alerts[filters.offset:filters.offset + filters.limit]
        return alerts

    async def count_since(
        self,
        since: datetime,
        min_severity: Severity = Severity.LOW,
    ) -> int:
        return sum(
            1 for a in self._alerts.values()
            if a.created_at >= since and a.severity.rank >= min_severity.rank
        )

    async def users_with_alerts_since(self, since: datetime) -> list[str]:
        users: dict[str, None] = {}
        for a in self._alerts.values():
            if a.created_at >= since:
                users[a.user_id] = None
        return list(users)

    async def delete_older_than(self, cutoff: datetime) -> int:
        async with self._lock:
            stale = [a.id for a in self._alerts.values() if a.created_at < cutoff]
            for alert_id in stale:
                del self._alerts[alert_id]
            self._dedup_keys = {
                k: v for k, v in self._dedup_keys.items() if v in self._alerts
            }
            return len(stale)

    def all(self) -> list[Alert]:
        return list(self._alerts.values())
