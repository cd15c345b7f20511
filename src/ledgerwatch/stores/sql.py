"""
SQLAlchemy-backed collaborator stores.

Tables use portable column types (JSON rather than JSONB) so the same
models run on PostgreSQL and on SQLite through aiosqlite.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    Index,
    JSON,
    Select,
    String,
    Text,
    delete,
    func,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ledgerwatch.alerting.models import Alert, AlertType
from ledgerwatch.anomaly.models import Account, Goal, Severity, Transaction
from ledgerwatch.anomaly.schemas import AnomalyFilters
from ledgerwatch.stores.base import AccountStore, AlertStore, GoalStore, TransactionStore

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TransactionRecord(Base):
    """A user transaction."""

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[Optional[str]] = mapped_column(String(64))
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    location: Mapped[Optional[str]] = mapped_column(String(255))
    category: Mapped[Optional[str]] = mapped_column(String(100))
    type: Mapped[str] = mapped_column(String(20), default="expense")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_transactions_user_date", "user_id", "date"),
        Index("idx_transactions_created", "created_at"),
    )

    def to_domain(self) -> Transaction:
        return Transaction(
            id=self.id,
            user_id=self.user_id,
            amount=self.amount,
            description=self.description,
            date=self.date,
            account_id=self.account_id,
            location=self.location,
            category=self.category,
            type=self.type,
            created_at=self.created_at,
        )


class AccountRecord(Base):
    """A linked financial account."""

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    provider: Mapped[Optional[str]] = mapped_column(String(100))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    sync_error: Mapped[Optional[str]] = mapped_column(Text)

    def to_domain(self) -> Account:
        return Account(
            id=self.id,
            user_id=self.user_id,
            name=self.name,
            provider=self.provider,
            is_active=self.is_active,
            last_sync_at=self.last_sync_at,
            sync_error=self.sync_error,
        )


class GoalRecord(Base):
    """A savings goal."""

    __tablename__ = "goals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    target_amount: Mapped[float] = mapped_column(Float, nullable=False)
    current_amount: Mapped[float] = mapped_column(Float, default=0.0)
    target_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    def to_domain(self) -> Goal:
        return Goal(
            id=self.id,
            user_id=self.user_id,
            name=self.name,
            target_amount=self.target_amount,
            current_amount=self.current_amount,
            target_date=self.target_date,
            created_at=self.created_at,
            is_active=self.is_active,
        )


class AlertRecord(Base):
    """A persisted alert."""

    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    anomaly_type: Mapped[Optional[str]] = mapped_column(String(20))
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(64))
    action_url: Mapped[Optional[str]] = mapped_column(String(255))
    dedup_key: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    acknowledged: Mapped[bool] = mapped_column(Boolean, default=False)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_alerts_user_created", "user_id", "created_at"),
        Index("idx_alerts_created", "created_at"),
    )

    @classmethod
    def from_domain(cls, alert: Alert, dedup_key: Optional[str] = None) -> "AlertRecord":
        return cls(
            id=alert.id,
            user_id=alert.user_id,
            alert_type=alert.alert_type.value,
            severity=alert.severity.value,
            anomaly_type=alert.details.get("anomalyType"),
            title=alert.title,
            message=alert.message,
            details=alert.details,
            transaction_id=alert.transaction_id,
            action_url=alert.action_url,
            dedup_key=dedup_key,
            acknowledged=alert.acknowledged,
            acknowledged_at=alert.acknowledged_at,
            created_at=alert.created_at,
        )

    def to_domain(self) -> Alert:
        return Alert(
            id=self.id,
            user_id=self.user_id,
            alert_type=AlertType(self.alert_type),
            severity=Severity(self.severity),
            title=self.title,
            message=self.message,
            details=dict(self.details or {}),
            transaction_id=self.transaction_id,
            action_url=self.action_url,
            acknowledged=self.acknowledged,
            acknowledged_at=self.acknowledged_at,
            created_at=self.created_at,
        )


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine for a database URL."""
    return create_async_engine(database_url, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_all(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class SQLTransactionStore(TransactionStore):
    """Transaction store on SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def add(self, transaction: Transaction) -> None:
        async with self.session_factory() as session:
            session.add(
                TransactionRecord(
                    id=transaction.id or str(uuid4()),
                    user_id=transaction.user_id,
                    account_id=transaction.account_id,
                    amount=float(transaction.amount),
                    description=transaction.description,
                    date=transaction.date,
                    location=transaction.location,
                    category=transaction.category,
                    type=transaction.type,
                    created_at=transaction.created_at,
                )
            )
            await session.commit()

    async def list_for_user(
        self,
        user_id: str,
        since: datetime,
        until: Optional[datetime] = None,
        account_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        stmt = select(TransactionRecord).where(
            TransactionRecord.user_id == user_id,
            TransactionRecord.date >= since,
        )
        if until is not None:
            stmt = stmt.where(TransactionRecord.date <= until)
        if account_id is not None:
            stmt = stmt.where(TransactionRecord.account_id == account_id)
        stmt = stmt.order_by(TransactionRecord.date.desc())
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [r.to_domain() for r in result.scalars().all()]

    async def most_recent_for_user(
        self,
        user_id: str,
        before: Optional[datetime] = None,
        exclude_id: Optional[str] = None,
    ) -> Optional[Transaction]:
        stmt = select(TransactionRecord).where(TransactionRecord.user_id == user_id)
        if before is not None:
            stmt = stmt.where(TransactionRecord.date <= before)
        if exclude_id:
            stmt = stmt.where(TransactionRecord.id != exclude_id)
        stmt = stmt.order_by(TransactionRecord.date.desc()).limit(1)

        async with self.session_factory() as session:
            record = (await session.execute(stmt)).scalar_one_or_none()
            return record.to_domain() if record else None

    async def count_for_user(
        self,
        user_id: str,
        since: datetime,
        until: datetime,
        exclude_id: Optional[str] = None,
    ) -> int:
        stmt = select(func.count()).select_from(TransactionRecord).where(
            TransactionRecord.user_id == user_id,
            TransactionRecord.date >= since,
            TransactionRecord.date <= until,
        )
        if exclude_id:
            stmt = stmt.where(TransactionRecord.id != exclude_id)

        async with self.session_factory() as session:
            return (await session.execute(stmt)).scalar_one()

    async def users_with_transactions_since(
        self,
        since: datetime,
        by: str = "created_at",
    ) -> list[str]:
        if by not in ("created_at", "date"):
            raise ValueError(f"Cannot select users by {by}")
        column = getattr(TransactionRecord, by)
        stmt = select(TransactionRecord.user_id).where(column >= since).distinct()

        async with self.session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def accounts_with_activity_since(
        self,
        since: datetime,
    ) -> list[tuple[str, str]]:
        stmt = (
            select(TransactionRecord.user_id, TransactionRecord.account_id)
            .where(
                TransactionRecord.date >= since,
                TransactionRecord.account_id.is_not(None),
            )
            .distinct()
        )
        async with self.session_factory() as session:
            return [(row[0], row[1]) for row in (await session.execute(stmt)).all()]


class SQLAccountStore(AccountStore):
    """Account store on SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def add(self, account: Account) -> None:
        async with self.session_factory() as session:
            session.add(
                AccountRecord(
                    id=account.id,
                    user_id=account.user_id,
                    name=account.name,
                    provider=account.provider,
                    is_active=account.is_active,
                    last_sync_at=account.last_sync_at,
                    sync_error=account.sync_error,
                )
            )
            await session.commit()

    async def get(self, account_id: str) -> Optional[Account]:
        async with self.session_factory() as session:
            record = await session.get(AccountRecord, account_id)
            return record.to_domain() if record else None

    async def list_for_user(self, user_id: str) -> list[Account]:
        stmt = select(AccountRecord).where(AccountRecord.user_id == user_id)
        async with self.session_factory() as session:
            return [r.to_domain() for r in (await session.execute(stmt)).scalars().all()]

    async def update_sync_error(self, account_id: str, message: str) -> None:
        async with self.session_factory() as session:
            record = await session.get(AccountRecord, account_id)
            if record is None:
                logger.warning(f"Cannot mark sync error, account {account_id} not found")
                return
            record.sync_error = message
            await session.commit()
        logger.info(f"Marked sync error on account {account_id}")


class SQLGoalStore(GoalStore):
    """Goal store on SQLAlchemy."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def add(self, goal: Goal) -> None:
        async with self.session_factory() as session:
            session.add(
                GoalRecord(
                    id=goal.id,
                    user_id=goal.user_id,
                    name=goal.name,
                    target_amount=goal.target_amount,
                    current_amount=goal.current_amount,
                    target_date=goal.target_date,
                    created_at=goal.created_at,
                    is_active=goal.is_active,
                )
            )
            await session.commit()

    async def list_active(
        self,
        as_of: datetime,
        user_id: Optional[str] = None,
    ) -> list[Goal]:
        stmt = select(GoalRecord).where(
            GoalRecord.is_active.is_(True),
            GoalRecord.target_date >= as_of,
        )
        if user_id is not None:
            stmt = stmt.where(GoalRecord.user_id == user_id)

        async with self.session_factory() as session:
            return [r.to_domain() for r in (await session.execute(stmt)).scalars().all()]


class SQLAlertStore(AlertStore):
    """Alert store on SQLAlchemy with dedup-key upserts."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _by_dedup_key(self, session: AsyncSession, dedup_key: str) -> Optional[AlertRecord]:
        result = await session.execute(select(AlertRecord).where(AlertRecord.dedup_key == dedup_key))
        return result.scalar_one_or_none()

    async def create(self, alert: Alert, dedup_key: Optional[str] = None) -> Alert:
        async with self.session_factory() as session:
            if dedup_key:
                existing = await self._by_dedup_key(session, dedup_key)
                if existing is not None:
                    logger.debug(f"Duplicate alert for key {dedup_key}, skipping")
                    return existing.to_domain()

            session.add(AlertRecord.from_domain(alert, dedup_key))
            try:
                await session.commit()
            except IntegrityError:
                # Another writer claimed the key first
                await session.rollback()
                existing = await self._by_dedup_key(session, dedup_key) if dedup_key else None
                if existing is None:
                    raise
                return existing.to_domain()
        return alert

    async def get(self, alert_id: str) -> Optional[Alert]:
        async with self.session_factory() as session:
            record = await session.get(AlertRecord, alert_id)
            return record.to_domain() if record else None

    async def update(self, alert: Alert) -> None:
        async with self.session_factory() as session:
            record = await session.get(AlertRecord, alert.id)
            if record is None:
                return
            record.acknowledged = alert.acknowledged
            record.acknowledged_at = alert.acknowledged_at
            await session.commit()

    def _filtered(self, user_id: str, filters: Optional[AnomalyFilters]) -> Select:
        stmt = select(AlertRecord).where(AlertRecord.user_id == user_id)
        if filters is None:
            return stmt
        if filters.start_date:
            stmt = stmt.where(AlertRecord.created_at >= filters.start_date)
        if filters.end_date:
            stmt = stmt.where(AlertRecord.created_at <= filters.end_date)
        if filters.severity:
            stmt = stmt.where(AlertRecord.severity == filters.severity.value)
        if filters.alert_type:
            stmt = stmt.where(AlertRecord.alert_type == filters.alert_type.value)
        if filters.anomaly_type:
            stmt = stmt.where(AlertRecord.anomaly_type == filters.anomaly_type.value)
        if filters.acknowledged is not None:
            stmt = stmt.where(AlertRecord.acknowledged.is_(filters.acknowledged))
        return stmt

    async def list_for_user(
        self,
        user_id: str,
        filters: Optional[AnomalyFilters] = None,
    ) -> list[Alert]:
        stmt = self._filtered(user_id, filters).order_by(AlertRecord.created_at.desc())
        if filters is not None:
            stmt = stmt.offset(filters.offset).limit(filters.limit)

        async with self.session_factory() as session:
            return [r.to_domain() for r in (await session.execute(stmt)).scalars().all()]

    async def count_since(
        self,
        since: datetime,
        min_severity: Severity = Severity.LOW,
    ) -> int:
        severities = [s.value for s in Severity if s.rank >= min_severity.rank]
        stmt = select(func.count()).select_from(AlertRecord).where(
            AlertRecord.created_at >= since,
            AlertRecord.severity.in_(severities),
        )
        async with self.session_factory() as session:
            return (await session.execute(stmt)).scalar_one()

    async def users_with_alerts_since(self, since: datetime) -> list[str]:
        stmt = select(AlertRecord.user_id).where(AlertRecord.created_at >= since).distinct()
        async with self.session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def delete_older_than(self, cutoff: datetime) -> int:
        async with self.session_factory() as session:
            result = await session.execute(delete(AlertRecord).where(AlertRecord.created_at < cutoff))
            await session.commit()
            deleted = result.rowcount or 0
        if deleted:
            logger.info(f"Deleted {deleted} alerts older than {cutoff.isoformat()}")
        return deleted
