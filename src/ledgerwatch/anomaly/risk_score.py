"""
Risk score computation for users.

Computes a 0-100 risk score from five independent components:
- Transaction risk: share of large transactions in the trailing window
- Behavior risk: how established the user's merchant history is
- Account risk: number of linked accounts and how stale their sync is
- Time risk: share of night-time transactions
- Location risk: share of transactions at locations unknown to the profile
"""

import asyncio
import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from ledgerwatch.anomaly.models import Account, BehaviorProfile, RiskScoreComponents, Transaction
from ledgerwatch.anomaly.profile import ProfileBuilder
from ledgerwatch.config import RiskWeights, settings
from ledgerwatch.stores.base import AccountStore, TransactionStore

logger = logging.getLogger(__name__)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value: float) -> int:
    return min(100, max(0, round_half_up(value)))


class RiskAggregator:
    """
    Calculates multi-dimensional risk scores.

    Each component tolerates an empty window by scoring 0. Scores are
    computed per request and never cached.
    """

    def __init__(
        self,
        profiles: ProfileBuilder,
        transactions: TransactionStore,
        accounts: AccountStore,
        weights: Optional[RiskWeights] = None,
        timeout: Optional[float] = None,
    ):
        self.profiles = profiles
        self.transactions = transactions
        self.accounts = accounts
        self.weights = weights or settings.risk
        self.timeout = timeout or settings.store_timeout_seconds

    async def calculate(
        self,
        user_id: str,
        as_of: Optional[datetime] = None,
    ) -> RiskScoreComponents:
        """
        Calculate the risk score for a user.

        Args:
            user_id: User to score
            as_of: End of the trailing window (default: now)

        Returns:
            RiskScoreComponents with all five components and the overall score
        """
        as_of = as_of or datetime.utcnow()
        profile = await self.profiles.build_profile(user_id, as_of=as_of)

        window = await asyncio.wait_for(
            self.transactions.list_for_user(
                user_id,
                since=as_of - timedelta(days=self.weights.window_days),
                until=as_of,
            ),
            timeout=self.timeout,
        )
        accounts = await asyncio.wait_for(
            self.accounts.list_for_user(user_id),
            timeout=self.timeout,
        )

        return self.combine(
            transaction_risk=self.transaction_risk(window, profile),
            behavior_risk=self.behavior_risk(profile),
            account_risk=self.account_risk(accounts, as_of),
            time_risk=self.time_risk(window),
            location_risk=self.location_risk(window, profile),
        )

    def combine(
        self,
        transaction_risk: int,
        behavior_risk: int,
        account_risk: int,
        time_risk: int,
        location_risk: int,
    ) -> RiskScoreComponents:
        """Apply the component weights to produce the overall score."""
        w = self.weights
        overall = (
            transaction_risk * w.transaction_weight
            + behavior_risk * w.behavior_weight
            + account_risk * w.account_weight
            + time_risk * w.time_weight
            + location_risk * w.location_weight
        )
        return RiskScoreComponents(
            transaction_risk=transaction_risk,
            behavior_risk=behavior_risk,
            account_risk=account_risk,
            time_risk=time_risk,
            location_risk=location_risk,
            overall_risk=_clamp(overall),
        )

    def transaction_risk(
        self,
        window: list[Transaction],
        profile: BehaviorProfile,
    ) -> int:
        """Share of window transactions above the large-amount multiple."""
        if not window:
            return 0
        limit = profile.average_amount * self.weights.large_amount_multiplier
        large = [t for t in window if t.magnitude > limit]
        return _clamp(len(large) / len(window) * self.weights.transaction_scale)

    def behavior_risk(self, profile: BehaviorProfile) -> int:
        """Lower risk for users with an established merchant history."""
        w = self.weights
        return _clamp(w.behavior_base - len(profile.common_merchants) * w.behavior_per_merchant)

    def account_risk(self, accounts: list[Account], as_of: datetime) -> int:
        """More accounts and stale syncs widen the attack surface."""
        if not accounts:
            return 0
        w = self.weights
        stale_cutoff = as_of - timedelta(days=w.stale_account_days)
        stale = [a for a in accounts if a.last_sync_at is None or a.last_sync_at < stale_cutoff]

        score = min(len(accounts) * w.account_per_account, w.account_count_cap)
        score += len(stale) / len(accounts) * w.stale_account_weight
        return _clamp(score)

    def time_risk(self, window: list[Transaction]) -> int:
        """Share of transactions outside daytime hours."""
        if not window:
            return 0
        w = self.weights
        night = [
            t for t in window
            if t.date.hour < w.day_start_hour or t.date.hour > w.day_end_hour
        ]
        return _clamp(len(night) / len(window) * 100)

    def location_risk(
        self,
        window: list[Transaction],
        profile: BehaviorProfile,
    ) -> int:
        """Share of transactions at locations absent from the profile."""
        if not window:
            return 0
        unknown = [
            t for t in window
            if t.location and t.location not in profile.common_locations
        ]
        return _clamp(len(unknown) / len(window) * 100)
