"""
Tests for settings and component wiring.
"""

import pytest

from ledgerwatch.alerting.push import FCMPushTransport, LoggingPushTransport
from ledgerwatch.config import Settings
from ledgerwatch.jobs.queue import InMemoryJobQueue
from ledgerwatch.main import build_components
from ledgerwatch.stores.memory import InMemoryAlertStore
from ledgerwatch.stores.sql import SQLAlertStore


class TestSettings:
    """Tests for environment-driven settings."""

    def test_defaults(self):
        """Defaults match the documented thresholds."""
        config = Settings()

        assert config.rules.large_amount_multiplier == 5.0
        assert config.combiner.critical_cutoff == 0.9
        assert config.queue.default_attempts == 3
        assert config.scheduler.alert_retention_days == 90
        assert config.scheduler.account_anomalies_cron == "*/30 9-18 * * mon-fri"

    def test_nested_environment_override(self, monkeypatch):
        """Nested groups are overridden with double underscores."""
        monkeypatch.setenv("LEDGERWATCH_RULES__LARGE_AMOUNT_MULTIPLIER", "7.5")
        monkeypatch.setenv("LEDGERWATCH_QUEUE__BACKEND", "redis")
        monkeypatch.setenv("LEDGERWATCH_LOG_LEVEL", "debug")

        config = Settings()

        assert config.rules.large_amount_multiplier == 7.5
        assert config.queue.backend == "redis"
        assert config.log_level == "DEBUG"

    def test_invalid_values_rejected(self, monkeypatch):
        """Unknown log levels and queue backends fail fast."""
        with pytest.raises(ValueError):
            Settings(log_level="LOUD")

        monkeypatch.setenv("LEDGERWATCH_QUEUE__BACKEND", "kafka")
        with pytest.raises(ValueError):
            Settings()


class TestBuildComponents:
    """Tests for application wiring."""

    @pytest.mark.asyncio
    async def test_in_memory_defaults(self):
        """Without a database or push key everything runs in process."""
        components = await build_components(Settings())
        try:
            assert isinstance(components.alerts, InMemoryAlertStore)
            assert isinstance(components.queue, InMemoryJobQueue)
            assert isinstance(components.push, LoggingPushTransport)
            assert components.processor.profiles is components.service.profiles
        finally:
            await components.close()

    @pytest.mark.asyncio
    async def test_sql_and_fcm(self, tmp_path):
        """A database URL and server key select SQL stores and FCM."""
        config = Settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'wiring.db'}")
        config.notifications.fcm_server_key = "secret"

        components = await build_components(config)
        try:
            assert isinstance(components.alerts, SQLAlertStore)
            assert isinstance(components.push, FCMPushTransport)
            assert components.engine is not None
        finally:
            await components.close()
