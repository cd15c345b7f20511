"""
Pytest configuration and shared fixtures for LedgerWatch tests.
"""

from datetime import datetime, timedelta
from typing import Callable

import pytest

from ledgerwatch.alerting.dispatcher import AlertDispatcher
from ledgerwatch.alerting.push import LoggingPushTransport
from ledgerwatch.anomaly.models import BehaviorProfile, FeatureVector, Transaction
from ledgerwatch.anomaly.service import AnomalyDetectionService
from ledgerwatch.config import QueueSettings, Settings
from ledgerwatch.jobs.processor import JobProcessor
from ledgerwatch.jobs.queue import InMemoryJobQueue
from ledgerwatch.jobs.scheduler import AnomalyScheduler
from ledgerwatch.stores.memory import (
    InMemoryAccountStore,
    InMemoryAlertStore,
    InMemoryGoalStore,
    InMemoryTransactionStore,
)

USER_ID = "user-1"


@pytest.fixture
def test_settings() -> Settings:
    """Settings with immediate retries and short timeouts."""
    return Settings(
        queue=QueueSettings(default_backoff_ms=0, poll_interval_seconds=0.01),
        store_timeout_seconds=1.0,
    )


@pytest.fixture
def profile() -> BehaviorProfile:
    """Established profile: average 100, stddev 50, daytime activity."""
    return BehaviorProfile(
        user_id=USER_ID,
        average_amount=100.0,
        median_amount=50.0,
        std_dev=50.0,
        common_merchants=["GROCERY", "CAFE", "PHARMACY"],
        common_locations=["Sao Paulo", "Campinas"],
        common_categories=["food"],
        active_hours=list(range(8, 21)),
        active_weekdays=list(range(7)),
        active_days_of_month=list(range(1, 32)),
        transaction_count=120,
    )


@pytest.fixture
def make_features() -> Callable[..., FeatureVector]:
    """Factory for feature vectors describing an unremarkable weekday purchase."""

    def factory(**overrides) -> FeatureVector:
        values = dict(
            amount=100.0,
            hour_of_day=14,
            day_of_week=2,
            day_of_month=15,
            is_weekend=False,
            merchant_rank=1,
            location_rank=1,
            hours_since_previous=24.0,
            amount_deviation=0.0,
            is_new_merchant=False,
            is_new_location=False,
            recent_count=1,
        )
        values.update(overrides)
        return FeatureVector(**values)

    return factory


@pytest.fixture
def transactions() -> InMemoryTransactionStore:
    return InMemoryTransactionStore()


@pytest.fixture
def accounts() -> InMemoryAccountStore:
    return InMemoryAccountStore()


@pytest.fixture
def goals() -> InMemoryGoalStore:
    return InMemoryGoalStore()


@pytest.fixture
def alert_store() -> InMemoryAlertStore:
    return InMemoryAlertStore()


@pytest.fixture
def push() -> LoggingPushTransport:
    return LoggingPushTransport()


@pytest.fixture
def dispatcher(alert_store, push) -> AlertDispatcher:
    return AlertDispatcher(alert_store, push)


@pytest.fixture
def queue(test_settings) -> InMemoryJobQueue:
    return InMemoryJobQueue(test_settings.queue)


@pytest.fixture
def processor(
    queue, transactions, accounts, goals, alert_store, dispatcher, test_settings
) -> JobProcessor:
    return JobProcessor(
        queue,
        transactions,
        accounts,
        goals,
        alert_store,
        dispatcher,
        config=test_settings,
    )


@pytest.fixture
def scheduler(queue, transactions, alert_store, test_settings) -> AnomalyScheduler:
    return AnomalyScheduler(queue, transactions, alert_store, test_settings)


@pytest.fixture
def service(transactions, accounts, dispatcher, queue, test_settings) -> AnomalyDetectionService:
    return AnomalyDetectionService(
        transactions, accounts, dispatcher, queue, config=test_settings
    )


@pytest.fixture
def yesterday() -> datetime:
    """Start of the current hour, one day ago."""
    return (datetime.utcnow() - timedelta(days=1)).replace(minute=0, second=0, microsecond=0)


@pytest.fixture
def seeded_history(transactions) -> list[Transaction]:
    """
    Sixty daytime grocery purchases alternating 50 and 150.

    Yields a profile with average 100, population stddev 50, a single
    merchant and location, and active hours 10-18 on every weekday.
    """
    now = datetime.utcnow()
    history = [
        Transaction(
            id=f"hist-{i}",
            user_id=USER_ID,
            amount=50.0 if i % 2 == 0 else 150.0,
            description="GROCERY store purchase",
            date=(now - timedelta(days=2 + i)).replace(
                hour=10 + i % 9, minute=0, second=0, microsecond=0
            ),
            account_id="acc-1",
            location="Sao Paulo",
            category="food",
        )
        for i in range(60)
    ]
    transactions.add_many(history)
    return history
