"""
Behavioral profile construction.

A profile is a derived read model: it is rebuilt from the trailing window
of transactions every time it is requested and never mutated in place, so
concurrent callers need no coordination.
"""

import asyncio
import calendar
import logging
from collections import Counter
from datetime import datetime
from typing import Iterable, Optional

import numpy as np

from ledgerwatch.anomaly.models import BehaviorProfile, Transaction
from ledgerwatch.config import ProfileSettings, settings
from ledgerwatch.stores.base import TransactionStore

logger = logging.getLogger(__name__)


def extract_merchant(description: Optional[str]) -> Optional[str]:
    """
    Extract a merchant token from a transaction description.

    Heuristic: the first whitespace-delimited word, uppercased. Punctuation
    and digits are kept as-is.
    """
    if not description:
        return None
    words = description.split()
    if not words:
        return None
    return words[0].upper()


def months_before(moment: datetime, months: int) -> datetime:
    """Shift a timestamp back by calendar months, clamping the day."""
    month_index = moment.month - 1 - months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def top_items(items: Iterable[str], count: int) -> list[str]:
    """Rank items by frequency, first occurrence breaking ties."""
    return [item for item, _ in Counter(items).most_common(count)]


class ProfileBuilder:
    """
    Builds a user's behavioral baseline from transaction history.

    Fails closed: an empty history or a failing lookup yields the default
    profile instead of an error.
    """

    def __init__(
        self,
        transactions: TransactionStore,
        config: Optional[ProfileSettings] = None,
        timeout: Optional[float] = None,
    ):
        self.transactions = transactions
        self.config = config or settings.profile
        self.timeout = timeout or settings.store_timeout_seconds

    def default_profile(self, user_id: str) -> BehaviorProfile:
        """Profile for users without usable history."""
        return BehaviorProfile(
            user_id=user_id,
            average_amount=self.config.default_average,
            median_amount=self.config.default_median,
            std_dev=self.config.default_std_dev,
            active_hours=list(range(24)),
            active_weekdays=list(range(7)),
            active_days_of_month=list(range(1, 32)),
            is_default=True,
        )

    async def build_profile(
        self,
        user_id: str,
        as_of: Optional[datetime] = None,
    ) -> BehaviorProfile:
        """
        Build the profile from the trailing lookback window.

        Args:
            user_id: User to profile
            as_of: End of the window (default: now)

        Returns:
            BehaviorProfile, or the default profile when history is unavailable
        """
        as_of = as_of or datetime.utcnow()
        since = months_before(as_of, self.config.lookback_months)

        try:
            history = await asyncio.wait_for(
                self.transactions.list_for_user(user_id, since=since, until=as_of),
                timeout=self.timeout,
            )
        except Exception as e:
            logger.error(f"Error loading history for user {user_id}: {e}")
            return self.default_profile(user_id)

        if not history:
            return self.default_profile(user_id)

        return self.profile_from_transactions(user_id, history)

    def profile_from_transactions(
        self,
        user_id: str,
        history: list[Transaction],
    ) -> BehaviorProfile:
        """Compute profile statistics for a non-empty history."""
        amounts = np.array([t.magnitude for t in history], dtype=float)

        merchants = [m for m in (extract_merchant(t.description) for t in history) if m]
        locations = [t.location for t in history if t.location]
        categories = [t.category for t in history if t.category]

        return BehaviorProfile(
            user_id=user_id,
            average_amount=float(np.mean(amounts)),
            median_amount=float(np.median(amounts)),
            std_dev=float(np.std(amounts)),  # population stddev
            common_merchants=top_items(merchants, self.config.top_n),
            common_locations=top_items(locations, self.config.top_n),
            common_categories=top_items(categories, self.config.top_n),
            active_hours=sorted({t.date.hour for t in history}),
            active_weekdays=sorted({t.date.weekday() for t in history}),
            active_days_of_month=sorted({t.date.day for t in history}),
            transaction_count=len(history),
        )
