"""
Feature extraction for a candidate transaction.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from ledgerwatch.anomaly.models import BehaviorProfile, FeatureVector, Transaction
from ledgerwatch.anomaly.profile import extract_merchant
from ledgerwatch.config import settings
from ledgerwatch.stores.base import TransactionStore

logger = logging.getLogger(__name__)

DEFAULT_HOURS_SINCE_PREVIOUS = 24.0
VELOCITY_WINDOW = timedelta(minutes=60)


def amount_deviation(amount: float, profile: BehaviorProfile) -> float:
    """Absolute z-score of an amount against the profile; 0 when stddev is 0."""
    if profile.std_dev <= 0:
        return 0.0
    return abs(amount - profile.average_amount) / profile.std_dev


def rank_of(item: Optional[str], ranking: list[str]) -> int:
    """1-based position of an item in a frequency ranking, 0 if absent."""
    if not item or item not in ranking:
        return 0
    return ranking.index(item) + 1


class FeatureExtractor:
    """
    Turns one transaction plus a profile into a FeatureVector.

    Reads the user's previous transaction (recency) and the number of
    transactions in the trailing hour (velocity). The candidate itself is
    counted once in the velocity window whether or not it is already stored.
    """

    def __init__(
        self,
        transactions: TransactionStore,
        timeout: Optional[float] = None,
    ):
        self.transactions = transactions
        self.timeout = timeout or settings.store_timeout_seconds

    async def extract_features(
        self,
        user_id: str,
        transaction: Transaction,
        profile: BehaviorProfile,
    ) -> FeatureVector:
        """Extract features for a candidate transaction."""
        when = transaction.date
        merchant = extract_merchant(transaction.description)
        location = transaction.location or None

        previous = await asyncio.wait_for(
            self.transactions.most_recent_for_user(
                user_id, before=when, exclude_id=transaction.id or None
            ),
            timeout=self.timeout,
        )
        if previous is not None:
            hours_since = max(0.0, (when - previous.date).total_seconds() / 3600)
        else:
            hours_since = DEFAULT_HOURS_SINCE_PREVIOUS

        prior_in_window = await asyncio.wait_for(
            self.transactions.count_for_user(
                user_id,
                since=when - VELOCITY_WINDOW,
                until=when,
                exclude_id=transaction.id or None,
            ),
            timeout=self.timeout,
        )

        weekday = when.weekday()
        amount = transaction.magnitude

        return FeatureVector(
            amount=amount,
            hour_of_day=when.hour,
            day_of_week=weekday,
            day_of_month=when.day,
            is_weekend=weekday >= 5,
            merchant_rank=rank_of(merchant, profile.common_merchants),
            location_rank=rank_of(location, profile.common_locations),
            hours_since_previous=hours_since,
            amount_deviation=amount_deviation(amount, profile),
            is_new_merchant=bool(merchant) and merchant not in profile.common_merchants,
            is_new_location=bool(location) and location not in profile.common_locations,
            recent_count=prior_in_window + 1,
        )
