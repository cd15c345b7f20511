"""
Tests for feature extraction.
"""

from datetime import datetime, timedelta

import pytest

from ledgerwatch.anomaly.features import FeatureExtractor, amount_deviation, rank_of
from ledgerwatch.anomaly.models import BehaviorProfile, Transaction

from conftest import USER_ID


def _txn(txn_id: str, amount: float, date: datetime, description: str = "GROCERY store",
         location: str = "Sao Paulo") -> Transaction:
    return Transaction(
        id=txn_id,
        user_id=USER_ID,
        amount=amount,
        description=description,
        date=date,
        location=location,
    )


class TestHelpers:
    """Tests for feature helper functions."""

    def test_amount_deviation(self, profile):
        """Deviation is the absolute z-score."""
        assert amount_deviation(100.0, profile) == 0.0
        assert amount_deviation(250.0, profile) == pytest.approx(3.0)
        assert amount_deviation(0.0, profile) == pytest.approx(2.0)

    def test_amount_deviation_zero_stddev(self, profile):
        """A flat history produces zero deviation instead of dividing by zero."""
        flat = BehaviorProfile(user_id=USER_ID, average_amount=10.0, median_amount=10.0, std_dev=0.0)
        assert amount_deviation(10_000.0, flat) == 0.0

    def test_rank_of(self):
        """Ranks are 1-based, 0 for unseen or missing items."""
        ranking = ["GROCERY", "CAFE"]
        assert rank_of("GROCERY", ranking) == 1
        assert rank_of("CAFE", ranking) == 2
        assert rank_of("AIRLINE", ranking) == 0
        assert rank_of(None, ranking) == 0


class TestFeatureExtractor:
    """Tests for FeatureExtractor."""

    @pytest.mark.asyncio
    async def test_calendar_features(self, transactions, profile):
        """Hour, weekday, day of month and weekend flag come from the date."""
        # 2024-06-01 was a Saturday
        candidate = _txn("c1", 100.0, datetime(2024, 6, 1, 15, 30))

        features = await FeatureExtractor(transactions).extract_features(USER_ID, candidate, profile)

        assert features.hour_of_day == 15
        assert features.day_of_week == 5
        assert features.day_of_month == 1
        assert features.is_weekend

    @pytest.mark.asyncio
    async def test_known_merchant_and_location(self, transactions, profile):
        """Known merchant and location carry their rank."""
        candidate = _txn("c1", 100.0, datetime(2024, 6, 4, 12), description="cafe central",
                         location="Campinas")

        features = await FeatureExtractor(transactions).extract_features(USER_ID, candidate, profile)

        assert features.merchant_rank == 2
        assert features.location_rank == 2
        assert not features.is_new_merchant
        assert not features.is_new_location

    @pytest.mark.asyncio
    async def test_new_merchant_and_location(self, transactions, profile):
        """Unseen merchant and location have rank 0."""
        candidate = _txn("c1", 100.0, datetime(2024, 6, 4, 12), description="AIRLINE ticket",
                         location="Lisbon")

        features = await FeatureExtractor(transactions).extract_features(USER_ID, candidate, profile)

        assert features.merchant_rank == 0
        assert features.location_rank == 0
        assert features.is_new_merchant
        assert features.is_new_location

    @pytest.mark.asyncio
    async def test_missing_location_is_not_new(self, transactions, profile):
        """A transaction without location is not flagged as a new location."""
        candidate = _txn("c1", 100.0, datetime(2024, 6, 4, 12), location=None)

        features = await FeatureExtractor(transactions).extract_features(USER_ID, candidate, profile)

        assert not features.is_new_location
        assert features.location_rank == 0

    @pytest.mark.asyncio
    async def test_no_previous_transaction_defaults_to_a_day(self, transactions, profile):
        """Without history, hours since previous defaults to 24."""
        candidate = _txn("c1", 100.0, datetime(2024, 6, 4, 12))

        features = await FeatureExtractor(transactions).extract_features(USER_ID, candidate, profile)

        assert features.hours_since_previous == 24.0
        assert features.recent_count == 1

    @pytest.mark.asyncio
    async def test_recency_and_velocity(self, transactions, profile):
        """Previous transaction gives recency; the trailing hour gives velocity."""
        when = datetime(2024, 6, 4, 12)
        transactions.add_many([
            _txn("p1", 100.0, when - timedelta(minutes=90)),
            _txn("p2", 100.0, when - timedelta(minutes=40)),
            _txn("p3", 100.0, when - timedelta(minutes=15)),
        ])
        candidate = _txn("c1", 100.0, when)

        features = await FeatureExtractor(transactions).extract_features(USER_ID, candidate, profile)

        assert features.hours_since_previous == pytest.approx(0.25)
        assert features.recent_count == 3

    @pytest.mark.asyncio
    async def test_stored_candidate_counted_once(self, transactions, profile):
        """A candidate already persisted is not counted twice."""
        when = datetime(2024, 6, 4, 12)
        candidate = _txn("c1", 100.0, when)
        transactions.add_many([_txn("p1", 100.0, when - timedelta(minutes=30)), candidate])

        features = await FeatureExtractor(transactions).extract_features(USER_ID, candidate, profile)

        assert features.recent_count == 2
        assert features.hours_since_previous == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_other_users_ignored(self, transactions, profile):
        """Only the candidate owner's transactions affect velocity."""
        when = datetime(2024, 6, 4, 12)
        other = Transaction(id="o1", user_id="someone-else", amount=5.0, description="X",
                            date=when - timedelta(minutes=5))
        transactions.add(other)

        features = await FeatureExtractor(transactions).extract_features(
            USER_ID, _txn("c1", 100.0, when), profile
        )

        assert features.recent_count == 1
        assert features.hours_since_previous == 24.0
