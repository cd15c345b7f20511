"""
Cron-driven anomaly scheduling.

Cadences only enqueue jobs; detection always runs in the job processor, so
a slow analysis cannot starve the timer. Each cadence is isolated: a failing
sweep is logged and does not affect the others.
"""

import asyncio
import logging
import random
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ledgerwatch.anomaly.models import Severity
from ledgerwatch.config import Settings, settings
from ledgerwatch.jobs.queue import Job, JobOptions, JobQueue, JobType, dedup_key_for
from ledgerwatch.stores.base import AlertStore, TransactionStore

logger = logging.getLogger(__name__)

IMMEDIATE_PRIORITY = 10


class AnomalyScheduler:
    """
    Enqueues background analysis on fixed cadences.

    Cadences (cron expressions configurable in settings):
    - goal risk sweep every 4 hours
    - recent transaction re-analysis every 2 hours
    - profile refresh daily at 03:00, staggered
    - account anomaly sweep every 30 minutes in business hours
    - weekly digest on Sunday mornings
    - retention cleanup monthly
    """

    def __init__(
        self,
        queue: JobQueue,
        transactions: TransactionStore,
        alerts: AlertStore,
        config: Optional[Settings] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.queue = queue
        self.transactions = transactions
        self.alerts = alerts
        self.config = config or settings
        self._scheduler = scheduler
        self._last_runs: dict[str, datetime] = {}

    async def _enqueue(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        options: JobOptions,
    ) -> Job:
        return await asyncio.wait_for(
            self.queue.enqueue(job_type, payload, options),
            timeout=self.config.queue.enqueue_timeout_seconds,
        )

    async def _read(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.config.store_timeout_seconds)

    # Cadences

    async def schedule_goal_monitoring(self, user_id: Optional[str] = None) -> int:
        """Enqueue one goal risk sweep."""
        payload = {"user_id": user_id} if user_id else {}
        await self._enqueue(
            JobType.MONITOR_GOALS,
            payload,
            JobOptions(
                priority=5,
                attempts=3,
                backoff_ms=2000,
                dedup_key=dedup_key_for(user_id, JobType.MONITOR_GOALS),
            ),
        )
        logger.info("Scheduled goal risk monitoring")
        return 1

    async def schedule_recent_transaction_analysis(self) -> int:
        """Enqueue pattern analysis for users with recently created transactions."""
        since = datetime.utcnow() - timedelta(hours=self.config.scheduler.recent_window_hours)
        users = await self._read(self.transactions.users_with_transactions_since(since, by="created_at"))

        for user_id in users:
            await self._enqueue(
                JobType.ANALYZE_PATTERNS,
                {"user_id": user_id},
                JobOptions(
                    priority=3,
                    attempts=2,
                    dedup_key=dedup_key_for(user_id, JobType.ANALYZE_PATTERNS),
                ),
            )

        logger.info(f"Scheduled pattern analysis for {len(users)} users")
        return len(users)

    async def schedule_profile_refresh(self) -> int:
        """Enqueue model training for recently active users with a random stagger."""
        since = datetime.utcnow() - timedelta(days=self.config.scheduler.active_user_days)
        users = await self._read(self.transactions.users_with_transactions_since(since, by="date"))
        stagger_ms = int(self.config.scheduler.profile_stagger_seconds * 1000)

        for user_id in users:
            await self._enqueue(
                JobType.TRAIN_MODEL,
                {"user_id": user_id},
                JobOptions(
                    priority=1,
                    attempts=2,
                    delay_ms=random.randint(0, stagger_ms),
                    dedup_key=dedup_key_for(user_id, JobType.TRAIN_MODEL),
                ),
            )

        logger.info(f"Scheduled profile refresh for {len(users)} users")
        return len(users)

    async def schedule_account_anomaly_detection(self) -> int:
        """Enqueue anomaly detection for accounts with recent activity."""
        since = datetime.utcnow() - timedelta(hours=self.config.scheduler.account_activity_hours)
        pairs = await self._read(self.transactions.accounts_with_activity_since(since))

        for user_id, account_id in pairs:
            await self._enqueue(
                JobType.DETECT_ACCOUNT_ANOMALIES,
                {"user_id": user_id, "account_id": account_id},
                JobOptions(
                    priority=4,
                    attempts=2,
                    dedup_key=dedup_key_for(
                        f"{user_id}:{account_id}", JobType.DETECT_ACCOUNT_ANOMALIES
                    ),
                ),
            )

        logger.info(f"Scheduled account anomaly detection for {len(pairs)} accounts")
        return len(pairs)

    async def schedule_weekly_digest(self) -> int:
        """Enqueue the weekly digest."""
        await self._enqueue(
            JobType.WEEKLY_DIGEST,
            {},
            JobOptions(priority=2, dedup_key=dedup_key_for(None, JobType.WEEKLY_DIGEST)),
        )
        logger.info("Scheduled weekly digest")
        return 1

    async def schedule_retention_cleanup(self) -> int:
        """Enqueue the monthly retention cleanup."""
        await self._enqueue(
            JobType.CLEANUP_RETENTION,
            {},
            JobOptions(priority=1, dedup_key=dedup_key_for(None, JobType.CLEANUP_RETENTION)),
        )
        logger.info("Scheduled retention cleanup")
        return 1

    async def run_cadence(self, name: str, cadence: Callable[[], Awaitable[int]]) -> int:
        """Run one cadence, logging instead of raising on failure."""
        try:
            count = await cadence()
        except Exception as e:
            logger.error(f"Cadence {name} failed: {e}", exc_info=True)
            return 0
        self._last_runs[name] = datetime.utcnow()
        return count

    def cadences(self) -> dict[str, tuple[str, Callable[[], Awaitable[int]]]]:
        """Cadence name -> (cron expression, coroutine function)."""
        s = self.config.scheduler
        return {
            "monitor-goals-risk": (s.goals_cron, self.schedule_goal_monitoring),
            "analyze-recent-transactions": (
                s.recent_transactions_cron,
                self.schedule_recent_transaction_analysis,
            ),
            "update-behavior-profiles": (s.profiles_cron, self.schedule_profile_refresh),
            "monitor-account-anomalies": (
                s.account_anomalies_cron,
                self.schedule_account_anomaly_detection,
            ),
            "generate-weekly-reports": (s.weekly_digest_cron, self.schedule_weekly_digest),
            "cleanup-old-data": (s.cleanup_cron, self.schedule_retention_cleanup),
        }

    # Lifecycle

    def start(self) -> None:
        """Register all cadences and start the cron timer on the running loop."""
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(timezone=self.config.scheduler.timezone)

        for name, (expression, cadence) in self.cadences().items():
            self._scheduler.add_job(
                self.run_cadence,
                CronTrigger.from_crontab(expression, timezone=self.config.scheduler.timezone),
                args=[name, cadence],
                id=name,
                name=name,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
            logger.info(f"Registered cadence {name}: {expression}")

        self._scheduler.start()
        logger.info(f"Anomaly scheduler started ({self.config.scheduler.timezone})")

    def shutdown(self) -> None:
        """Stop the cron timer."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Anomaly scheduler stopped")

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # On demand

    async def trigger_immediate_analysis(self, user_id: Optional[str] = None) -> None:
        """
        Bypass the cadences.

        With a user id, enqueue that user's analysis at top priority. Without
        one, run the goal, recent-transaction and account sweeps now.
        """
        logger.info(
            f"Triggering immediate anomaly analysis"
            f"{f' for user {user_id}' if user_id else ' for all users'}"
        )

        if user_id:
            for job_type in (JobType.ANALYZE_PATTERNS, JobType.TRAIN_MODEL, JobType.MONITOR_GOALS):
                await self._enqueue(
                    job_type,
                    {"user_id": user_id},
                    JobOptions(priority=IMMEDIATE_PRIORITY),
                )
            return

        await self.run_cadence("monitor-goals-risk", self.schedule_goal_monitoring)
        await self.run_cadence(
            "analyze-recent-transactions", self.schedule_recent_transaction_analysis
        )
        await self.run_cadence(
            "monitor-account-anomalies", self.schedule_account_anomaly_detection
        )

    async def get_monitoring_stats(self) -> dict[str, Any]:
        """Queue counts and the number of medium-or-worse alerts in the last day."""
        since = datetime.utcnow() - timedelta(hours=24)
        queue_stats = await self.queue.stats()
        recent_alerts = await self._read(self.alerts.count_since(since, min_severity=Severity.MEDIUM))

        return {
            "queue": queue_stats,
            "alerts": {"last24Hours": recent_alerts},
            "lastUpdate": datetime.utcnow().isoformat(),
            "lastRuns": {name: ran.isoformat() for name, ran in self._last_runs.items()},
        }
