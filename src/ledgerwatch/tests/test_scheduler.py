"""
Tests for cron cadences and on-demand scheduling.
"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from ledgerwatch.anomaly.models import Severity, Transaction
from ledgerwatch.jobs.queue import JobStatus, JobType
from ledgerwatch.jobs.scheduler import IMMEDIATE_PRIORITY, AnomalyScheduler

from conftest import USER_ID


def _txn(txn_id, user_id, date, created_at=None, account_id=None):
    return Transaction(
        id=txn_id,
        user_id=user_id,
        amount=10.0,
        description="CAFE",
        date=date,
        account_id=account_id,
        created_at=created_at or date,
    )


async def _waiting(queue):
    return await queue.get_jobs(JobStatus.WAITING) + await queue.get_jobs(JobStatus.DELAYED)


class TestCadences:
    """Tests for each sweep."""

    @pytest.mark.asyncio
    async def test_goal_monitoring(self, scheduler, queue):
        """One global goal sweep per run."""
        assert await scheduler.schedule_goal_monitoring() == 1

        jobs = await _waiting(queue)
        assert len(jobs) == 1
        assert jobs[0].job_type == JobType.MONITOR_GOALS.value
        assert jobs[0].priority == 5
        assert jobs[0].attempts == 3

    @pytest.mark.asyncio
    async def test_recent_transaction_analysis(self, scheduler, queue, transactions):
        """Users with transactions created in the last two hours are analyzed."""
        now = datetime.utcnow()
        transactions.add_many([
            _txn("a", "recent-user", now - timedelta(days=3), created_at=now - timedelta(minutes=30)),
            _txn("b", "recent-user", now - timedelta(days=4), created_at=now - timedelta(minutes=40)),
            _txn("c", "stale-user", now - timedelta(minutes=10), created_at=now - timedelta(hours=5)),
        ])

        assert await scheduler.schedule_recent_transaction_analysis() == 1

        jobs = await _waiting(queue)
        assert [j.payload["user_id"] for j in jobs] == ["recent-user"]
        assert jobs[0].job_type == JobType.ANALYZE_PATTERNS.value
        assert jobs[0].priority == 3

    @pytest.mark.asyncio
    async def test_profile_refresh_is_staggered(self, scheduler, queue, transactions):
        """Training jobs for active users may be delayed up to a minute."""
        now = datetime.utcnow()
        transactions.add_many([
            _txn("a", "u1", now - timedelta(days=5)),
            _txn("b", "u2", now - timedelta(days=10)),
            _txn("c", "inactive", now - timedelta(days=45)),
        ])

        assert await scheduler.schedule_profile_refresh() == 2

        jobs = await _waiting(queue)
        assert {j.payload["user_id"] for j in jobs} == {"u1", "u2"}
        for job in jobs:
            assert job.job_type == JobType.TRAIN_MODEL.value
            assert job.ready_at - job.created_at <= timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_account_anomaly_detection(self, scheduler, queue, transactions):
        """Each recently active account gets one detection job."""
        now = datetime.utcnow()
        transactions.add_many([
            _txn("a", "u1", now - timedelta(hours=1), account_id="acc-1"),
            _txn("b", "u1", now - timedelta(hours=2), account_id="acc-1"),
            _txn("c", "u1", now - timedelta(hours=2), account_id="acc-2"),
            _txn("d", "u2", now - timedelta(hours=6), account_id="acc-3"),
        ])

        assert await scheduler.schedule_account_anomaly_detection() == 2

        jobs = await _waiting(queue)
        assert {j.payload["account_id"] for j in jobs} == {"acc-1", "acc-2"}
        assert all(j.priority == 4 for j in jobs)

    @pytest.mark.asyncio
    async def test_repeated_sweep_is_deduplicated(self, scheduler, queue):
        """Running a sweep twice in one bucket enqueues once."""
        await scheduler.schedule_weekly_digest()
        await scheduler.schedule_weekly_digest()
        await scheduler.schedule_retention_cleanup()

        assert (await queue.stats())["waiting"] == 2

    @pytest.mark.asyncio
    async def test_failing_cadence_is_isolated(self, queue, alert_store, test_settings):
        """A failing sweep logs, returns 0 and leaves the others running."""
        broken = AsyncMock()
        broken.users_with_transactions_since.side_effect = ConnectionError("database unavailable")
        broken.accounts_with_activity_since.side_effect = ConnectionError("database unavailable")
        scheduler = AnomalyScheduler(queue, broken, alert_store, test_settings)

        await scheduler.trigger_immediate_analysis()

        assert await scheduler.run_cadence(
            "analyze-recent-transactions", scheduler.schedule_recent_transaction_analysis
        ) == 0
        jobs = await _waiting(queue)
        assert [j.job_type for j in jobs] == [JobType.MONITOR_GOALS.value]
        stats = await scheduler.get_monitoring_stats()
        assert set(stats["lastRuns"]) == {"monitor-goals-risk"}


class TestOnDemand:
    """Tests for immediate analysis and monitoring stats."""

    @pytest.mark.asyncio
    async def test_immediate_user_analysis(self, scheduler, queue):
        """A single user's analysis jumps the queue."""
        await scheduler.schedule_weekly_digest()

        await scheduler.trigger_immediate_analysis(USER_ID)

        first = await queue.dequeue(timeout=0)
        assert first.priority == IMMEDIATE_PRIORITY
        assert first.job_type == JobType.ANALYZE_PATTERNS.value
        jobs = await _waiting(queue)
        assert {j.job_type for j in jobs} == {
            JobType.TRAIN_MODEL.value,
            JobType.MONITOR_GOALS.value,
            JobType.WEEKLY_DIGEST.value,
        }

    @pytest.mark.asyncio
    async def test_immediate_global_sweep(self, scheduler, queue, transactions):
        """Without a user, the goal, recent and account sweeps run now."""
        now = datetime.utcnow()
        transactions.add(_txn("a", "u1", now - timedelta(minutes=5), account_id="acc-1"))

        await scheduler.trigger_immediate_analysis()

        jobs = await _waiting(queue)
        assert sorted(j.job_type for j in jobs) == sorted([
            JobType.MONITOR_GOALS.value,
            JobType.ANALYZE_PATTERNS.value,
            JobType.DETECT_ACCOUNT_ANOMALIES.value,
        ])

    @pytest.mark.asyncio
    async def test_monitoring_stats(self, scheduler, dispatcher):
        """Stats count medium-or-worse alerts from the last day."""
        await dispatcher.create_goal_risk_alert(USER_ID, "g1", Severity.HIGH, "Behind")
        await dispatcher.create_goal_risk_alert(USER_ID, "g2", Severity.MEDIUM, "Behind")
        await dispatcher.create_goal_risk_alert(USER_ID, "g3", Severity.LOW, "Behind")
        old = await dispatcher.create_goal_risk_alert(USER_ID, "g4", Severity.CRITICAL, "Behind")
        old.created_at = datetime.utcnow() - timedelta(days=2)
        await scheduler.schedule_goal_monitoring()

        stats = await scheduler.get_monitoring_stats()

        assert stats["alerts"]["last24Hours"] == 2
        assert stats["queue"]["waiting"] == 1
        assert "lastUpdate" in stats


class TestLifecycle:
    """Tests for the cron timer."""

    @pytest.mark.asyncio
    async def test_start_registers_all_cadences(self, scheduler):
        """Six cadences are registered and the timer can be stopped."""
        scheduler.start()
        try:
            assert scheduler.running
            job_ids = {job.id for job in scheduler._scheduler.get_jobs()}
            assert job_ids == set(scheduler.cadences())
            assert len(job_ids) == 6
        finally:
            scheduler.shutdown()

    def test_shutdown_without_start(self, scheduler):
        """Stopping a scheduler that never started is a no-op."""
        scheduler.shutdown()
        assert not scheduler.running
