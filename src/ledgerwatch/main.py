"""
LedgerWatch worker entry point.

Runs the cron scheduler and a pool of job workers:

    python -m ledgerwatch.main --workers 4
    python -m ledgerwatch.main --once
"""

import argparse
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from ledgerwatch.alerting.dispatcher import AlertDispatcher
from ledgerwatch.alerting.push import FCMPushTransport, LoggingPushTransport, PushTransport
from ledgerwatch.anomaly.service import AnomalyDetectionService
from ledgerwatch.config import Settings, settings
from ledgerwatch.jobs.processor import JobProcessor
from ledgerwatch.jobs.queue import JobQueue, create_queue
from ledgerwatch.jobs.scheduler import AnomalyScheduler
from ledgerwatch.stores.base import AccountStore, AlertStore, GoalStore, TransactionStore
from ledgerwatch.stores.memory import (
    InMemoryAccountStore,
    InMemoryAlertStore,
    InMemoryGoalStore,
    InMemoryTransactionStore,
)
from ledgerwatch.stores.sql import (
    SQLAccountStore,
    SQLAlertStore,
    SQLGoalStore,
    SQLTransactionStore,
    create_all,
    create_engine,
    create_session_factory,
)

logger = logging.getLogger(__name__)


@dataclass
class Components:
    """Wired application components."""

    transactions: TransactionStore
    accounts: AccountStore
    goals: GoalStore
    alerts: AlertStore
    queue: JobQueue
    push: PushTransport
    dispatcher: AlertDispatcher
    service: AnomalyDetectionService
    processor: JobProcessor
    scheduler: AnomalyScheduler
    engine: Optional[AsyncEngine] = None

    async def close(self) -> None:
        self.scheduler.shutdown()
        await self.processor.stop()
        await self.queue.close()
        await self.push.close()
        if self.engine is not None:
            await self.engine.dispose()


async def _no_device_tokens(user_id: str) -> list[str]:
    # Device registration lives with the notification service
    return []


async def build_components(config: Optional[Settings] = None) -> Components:
    """Wire stores, queue, alerting, service, processor and scheduler."""
    config = config or settings
    engine = None

    if config.database_url:
        engine = create_engine(config.database_url)
        await create_all(engine)
        sessions = create_session_factory(engine)
        transactions = SQLTransactionStore(sessions)
        accounts = SQLAccountStore(sessions)
        goals = SQLGoalStore(sessions)
        alerts = SQLAlertStore(sessions)
        logger.info("Using SQL stores")
    else:
        transactions = InMemoryTransactionStore()
        accounts = InMemoryAccountStore()
        goals = InMemoryGoalStore()
        alerts = InMemoryAlertStore()
        logger.info("No database configured, using in-memory stores")

    if config.notifications.fcm_server_key:
        push = FCMPushTransport(_no_device_tokens, config.notifications)
    else:
        push = LoggingPushTransport(config.notifications.log_history_size)

    queue = create_queue(config)
    dispatcher = AlertDispatcher(alerts, push)
    service = AnomalyDetectionService(transactions, accounts, dispatcher, queue, config=config)
    processor = JobProcessor(
        queue,
        transactions,
        accounts,
        goals,
        alerts,
        dispatcher,
        profiles=service.profiles,
        risk=service.risk,
        config=config,
    )
    scheduler = AnomalyScheduler(queue, transactions, alerts, config)

    return Components(
        transactions=transactions,
        accounts=accounts,
        goals=goals,
        alerts=alerts,
        queue=queue,
        push=push,
        dispatcher=dispatcher,
        service=service,
        processor=processor,
        scheduler=scheduler,
        engine=engine,
    )


async def run(workers: int, once: bool) -> None:
    components = await build_components()
    try:
        if once:
            await components.scheduler.trigger_immediate_analysis()
            processed = await components.processor.drain()
            stats = await components.scheduler.get_monitoring_stats()
            logger.info(f"Processed {processed} jobs, queue: {stats['queue']}")
            return

        components.scheduler.start()
        await components.processor.run(concurrency=workers)
    finally:
        await components.close()


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="LedgerWatch anomaly detection workers")
    parser.add_argument("--workers", type=int, default=2, help="Number of concurrent job workers")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run all sweeps immediately, drain the queue and exit",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(run(args.workers, args.once))
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    main()
