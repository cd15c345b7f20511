"""
Priority job queue with retry and exponential backoff.

Jobs move through waiting -> active -> completed, or back to delayed while
retries remain, or to failed once they are exhausted. Failed jobs stay
inspectable until cleaned. Delivery is at-least-once, so consumers must be
idempotent.

Two backends share the same contract:
- InMemoryJobQueue: single-process, heap ordered
- RedisJobQueue: durable, shared between worker processes
"""

import asyncio
import heapq
import itertools
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional, Union
from uuid import uuid4

import redis.asyncio as redis

from ledgerwatch.config import QueueSettings, Settings, settings
from ledgerwatch.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)


class JobType(str, Enum):
    """Background job types."""

    ANALYZE_PATTERNS = "analyze-patterns"
    TRAIN_MODEL = "train-model"
    MONITOR_GOALS = "monitor-goals"
    DETECT_ACCOUNT_ANOMALIES = "detect-account-anomalies"
    WEEKLY_DIGEST = "weekly-digest"
    CLEANUP_RETENTION = "cleanup-retention"
    SYNC_ACCOUNT = "sync-account"


class JobStatus(str, Enum):
    """Lifecycle state of a job."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


def job_type_name(job_type: Union[JobType, str]) -> str:
    """Plain string name of a job type."""
    return job_type.value if isinstance(job_type, JobType) else str(job_type)


def dedup_key_for(
    user_id: Optional[str],
    job_type: Union[JobType, str],
    now: Optional[datetime] = None,
    bucket_seconds: Optional[int] = None,
) -> str:
    """
    Deterministic idempotency key for a job.

    Jobs for the same user and type within one time bucket share a key.
    """
    now = now or datetime.utcnow()
    bucket_seconds = bucket_seconds or settings.queue.dedup_bucket_seconds
    bucket = int((now - EPOCH).total_seconds()) // bucket_seconds
    return f"{user_id or 'all'}:{job_type_name(job_type)}:{bucket}"


@dataclass
class JobOptions:
    """Enqueue options. Larger priority means more urgent."""

    priority: int = 0
    attempts: Optional[int] = None
    backoff_ms: Optional[int] = None
    delay_ms: int = 0
    dedup_key: Optional[str] = None


@dataclass
class Job:
    """A unit of background work."""

    job_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    priority: int = 0
    attempts: int = 3
    backoff_ms: int = 2000
    attempts_made: int = 0
    status: JobStatus = JobStatus.WAITING
    dedup_key: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    ready_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Optional[Any] = None
    error: Optional[str] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.payload.get("user_id")

    def next_backoff(self) -> timedelta:
        """Delay before the next attempt: base * 2^(attempts_made - 1)."""
        exponent = max(self.attempts_made - 1, 0)
        return timedelta(milliseconds=self.backoff_ms * (2 ** exponent))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "job_type": self.job_type,
            "payload": self.payload,
            "priority": self.priority,
            "attempts": self.attempts,
            "backoff_ms": self.backoff_ms,
            "attempts_made": self.attempts_made,
            "status": self.status.value,
            "dedup_key": self.dedup_key,
            "created_at": self.created_at.isoformat(),
            "ready_at": self.ready_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "result": self.result,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        """Rebuild a job from its dictionary form."""

        def parse(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return cls(
            id=data["id"],
            job_type=data["job_type"],
            payload=data.get("payload") or {},
            priority=data.get("priority", 0),
            attempts=data.get("attempts", 1),
            backoff_ms=data.get("backoff_ms", 0),
            attempts_made=data.get("attempts_made", 0),
            status=JobStatus(data.get("status", JobStatus.WAITING.value)),
            dedup_key=data.get("dedup_key"),
            created_at=parse(data.get("created_at")) or datetime.utcnow(),
            ready_at=parse(data.get("ready_at")) or datetime.utcnow(),
            started_at=parse(data.get("started_at")),
            finished_at=parse(data.get("finished_at")),
            result=data.get("result"),
            error=data.get("error"),
        )


class JobQueue(ABC):
    """Durable, priority-ordered job queue."""

    def __init__(self, config: Optional[QueueSettings] = None):
        self.config = config or settings.queue

    def _build_job(
        self,
        job_type: Union[JobType, str],
        payload: Optional[dict[str, Any]],
        options: Optional[JobOptions],
    ) -> Job:
        options = options or JobOptions()
        now = datetime.utcnow()
        delayed = options.delay_ms > 0
        return Job(
            job_type=job_type_name(job_type),
            payload=dict(payload or {}),
            priority=options.priority,
            attempts=options.attempts or self.config.default_attempts,
            backoff_ms=(
                options.backoff_ms
                if options.backoff_ms is not None
                else self.config.default_backoff_ms
            ),
            status=JobStatus.DELAYED if delayed else JobStatus.WAITING,
            dedup_key=options.dedup_key,
            created_at=now,
            ready_at=now + timedelta(milliseconds=options.delay_ms),
        )

    @abstractmethod
    async def enqueue(
        self,
        job_type: Union[JobType, str],
        payload: Optional[dict[str, Any]] = None,
        options: Optional[JobOptions] = None,
    ) -> Job:
        """
        Add a job.

        If a pending job already carries the same dedup key, that job is
        returned instead of adding a new one.
        """

    @abstractmethod
    async def dequeue(self, timeout: Optional[float] = None) -> Optional[Job]:
        """Take the most urgent ready job, waiting up to `timeout` seconds."""

    @abstractmethod
    async def complete(self, job: Job, result: Any = None) -> None:
        """Mark an active job completed."""

    @abstractmethod
    async def fail(self, job: Job, error: str, retryable: bool = True) -> bool:
        """
        Record a failed attempt.

        Returns:
            True if the job was rescheduled, False if it is now dead
        """

    @abstractmethod
    async def stats(self) -> dict[str, int]:
        """Counts of waiting (including delayed), active, completed and failed jobs."""

    @abstractmethod
    async def get_jobs(self, status: Union[JobStatus, str], limit: int = 100) -> list[Job]:
        """List jobs in one state, most recent first."""

    @abstractmethod
    async def clean(self, older_than_seconds: float, status: Union[JobStatus, str]) -> int:
        """Remove finished jobs older than the grace period; returns count removed."""

    async def close(self) -> None:
        pass


class InMemoryJobQueue(JobQueue):
    """Single-process queue backed by two heaps."""

    def __init__(self, config: Optional[QueueSettings] = None):
        super().__init__(config)
        self._jobs: dict[str, Job] = {}
        self._waiting: list[tuple[int, datetime, int, str]] = []
        self._delayed: list[tuple[datetime, int, str]] = []
        self._pending_keys: dict[str, str] = {}
        self._seq = itertools.count()
        self._cond = asyncio.Condition()

    def _push(self, job: Job) -> None:
        seq = next(self._seq)
        if job.status == JobStatus.DELAYED:
            heapq.heappush(self._delayed, (job.ready_at, seq, job.id))
        else:
            heapq.heappush(self._waiting, (-job.priority, job.ready_at, seq, job.id))

    def _promote_ready(self, now: datetime) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.DELAYED:
                continue
            job.status = JobStatus.WAITING
            self._push(job)

    def _release_key(self, job: Job) -> None:
        if job.dedup_key and self._pending_keys.get(job.dedup_key) == job.id:
            del self._pending_keys[job.dedup_key]

    async def enqueue(
        self,
        job_type: Union[JobType, str],
        payload: Optional[dict[str, Any]] = None,
        options: Optional[JobOptions] = None,
    ) -> Job:
        job = self._build_job(job_type, payload, options)
        async with self._cond:
            if job.dedup_key and job.dedup_key in self._pending_keys:
                existing = self._jobs[self._pending_keys[job.dedup_key]]
                logger.debug(f"Job {job.dedup_key} already pending as {existing.id}")
                return existing

            self._jobs[job.id] = job
            if job.dedup_key:
                self._pending_keys[job.dedup_key] = job.id
            self._push(job)
            self._cond.notify()

        logger.debug(f"Enqueued {job.job_type} job {job.id} (priority {job.priority})")
        return job

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[Job]:
        deadline = None if timeout is None else time.monotonic() + timeout

        async with self._cond:
            while True:
                now = datetime.utcnow()
                self._promote_ready(now)

                while self._waiting:
                    _, _, _, job_id = heapq.heappop(self._waiting)
                    job = self._jobs.get(job_id)
                    if job is None or job.status != JobStatus.WAITING:
                        continue
                    job.status = JobStatus.ACTIVE
                    job.started_at = now
                    job.attempts_made += 1
                    return job

                wait_for = None
                if deadline is not None:
                    wait_for = deadline - time.monotonic()
                    if wait_for <= 0:
                        return None
                if self._delayed:
                    until_ready = (self._delayed[0][0] - now).total_seconds()
                    wait_for = until_ready if wait_for is None else min(wait_for, until_ready)

                if wait_for is not None:
                    wait_for = max(wait_for, 0.0)
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=wait_for)
                except asyncio.TimeoutError:
                    pass

    async def complete(self, job: Job, result: Any = None) -> None:
        async with self._cond:
            job.status = JobStatus.COMPLETED
            job.finished_at = datetime.utcnow()
            job.result = result
            job.error = None
            self._release_key(job)

    async def fail(self, job: Job, error: str, retryable: bool = True) -> bool:
        async with self._cond:
            job.error = error
            if retryable and job.attempts_made < job.attempts:
                job.status = JobStatus.DELAYED
                job.ready_at = datetime.utcnow() + job.next_backoff()
                self._push(job)
                self._cond.notify()
                return True

            job.status = JobStatus.FAILED
            job.finished_at = datetime.utcnow()
            self._release_key(job)
            return False

    async def stats(self) -> dict[str, int]:
        counts = {status: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status] += 1
        return {
            "waiting": counts[JobStatus.WAITING] + counts[JobStatus.DELAYED],
            "active": counts[JobStatus.ACTIVE],
            "completed": counts[JobStatus.COMPLETED],
            "failed": counts[JobStatus.FAILED],
        }

    async def get_jobs(self, status: Union[JobStatus, str], limit: int = 100) -> list[Job]:
        status = JobStatus(status)
        jobs = [j for j in self._jobs.values() if j.status == status]
        jobs.sort(key=lambda j: j.finished_at or j.created_at, reverse=True)
        return jobs[:limit]

    async def clean(self, older_than_seconds: float, status: Union[JobStatus, str]) -> int:
        status = JobStatus(status)
        cutoff = datetime.utcnow() - timedelta(seconds=older_than_seconds)
        async with self._cond:
            stale = [
                j.id for j in self._jobs.values()
                if j.status == status and (j.finished_at or j.created_at) < cutoff
            ]
            for job_id in stale:
                del self._jobs[job_id]
        if stale:
            logger.info(f"Cleaned {len(stale)} {status.value} jobs")
        return len(stale)


class RedisJobQueue(JobQueue):
    """
    Queue shared through Redis.

    Job bodies live as JSON in one hash. Each state has a sorted set of job
    ids; the waiting set is scored so that ZPOPMIN yields the highest
    priority first, then the earliest ready time.

    Active jobs are scored by start time. A job still active after
    `active_lease_seconds` is treated as abandoned by a dead worker and its
    attempt is failed, so it is retried or moved to failed.
    """

    PRIORITY_SCALE = 1e13

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        config: Optional[QueueSettings] = None,
    ):
        super().__init__(config)
        self._redis = client or redis.from_url(
            self.config.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        self._prefix = self.config.key_prefix

    def _key(self, name: str) -> str:
        return f"{self._prefix}:{name}"

    @staticmethod
    def _ms(moment: datetime) -> int:
        return int((moment - EPOCH).total_seconds() * 1000)

    @classmethod
    def waiting_score(cls, job: Job) -> float:
        """Lower score is dequeued first."""
        return -job.priority * cls.PRIORITY_SCALE + cls._ms(job.ready_at)

    async def _save(self, job: Job) -> None:
        await self._redis.hset(self._key("jobs"), job.id, json.dumps(job.to_dict(), default=str))

    async def _load(self, job_id: str) -> Optional[Job]:
        raw = await self._redis.hget(self._key("jobs"), job_id)
        return Job.from_dict(json.loads(raw)) if raw else None

    async def _schedule(self, job: Job) -> None:
        if job.status == JobStatus.DELAYED:
            await self._redis.zadd(self._key("delayed"), {job.id: self._ms(job.ready_at)})
        else:
            await self._redis.zadd(self._key("waiting"), {job.id: self.waiting_score(job)})

    async def _release_key(self, job: Job) -> None:
        if job.dedup_key:
            current = await self._redis.hget(self._key("dedup"), job.dedup_key)
            if current == job.id:
                await self._redis.hdel(self._key("dedup"), job.dedup_key)

    async def enqueue(
        self,
        job_type: Union[JobType, str],
        payload: Optional[dict[str, Any]] = None,
        options: Optional[JobOptions] = None,
    ) -> Job:
        job = self._build_job(job_type, payload, options)

        if job.dedup_key:
            claimed = await self._redis.hsetnx(self._key("dedup"), job.dedup_key, job.id)
            if not claimed:
                existing_id = await self._redis.hget(self._key("dedup"), job.dedup_key)
                existing = await self._load(existing_id) if existing_id else None
                if existing is not None:
                    logger.debug(f"Job {job.dedup_key} already pending as {existing.id}")
                    return existing
                await self._redis.hset(self._key("dedup"), job.dedup_key, job.id)

        await self._save(job)
        await self._schedule(job)
        logger.debug(f"Enqueued {job.job_type} job {job.id} (priority {job.priority})")
        return job

    async def _promote_ready(self) -> None:
        now_ms = self._ms(datetime.utcnow())
        ready = await self._redis.zrangebyscore(self._key("delayed"), "-inf", now_ms)
        for job_id in ready:
            # Only the worker that removes the id promotes it
            if not await self._redis.zrem(self._key("delayed"), job_id):
                continue
            job = await self._load(job_id)
            if job is None:
                continue
            job.status = JobStatus.WAITING
            await self._save(job)
            await self._schedule(job)

    async def _recover_stalled(self) -> None:
        cutoff = datetime.utcnow() - timedelta(seconds=self.config.active_lease_seconds)
        stalled = await self._redis.zrangebyscore(self._key("active"), "-inf", self._ms(cutoff))
        for job_id in stalled:
            if not await self._redis.zrem(self._key("active"), job_id):
                continue
            job = await self._load(job_id)
            if job is None:
                continue
            logger.warning(
                f"Job {job.id} ({job.job_type}) exceeded its lease on attempt {job.attempts_made}"
            )
            await self._finish_attempt(job, "Worker lease expired", retryable=True)

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[Job]:
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            await self._recover_stalled()
            await self._promote_ready()
            popped = await self._redis.zpopmin(self._key("waiting"))
            if popped:
                job_id, _ = popped[0]
                job = await self._load(job_id)
                if job is not None:
                    now = datetime.utcnow()
                    job.status = JobStatus.ACTIVE
                    job.started_at = now
                    job.attempts_made += 1
                    await self._save(job)
                    await self._redis.zadd(self._key("active"), {job.id: self._ms(now)})
                    return job
                continue

            sleep_for = self.config.poll_interval_seconds
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                sleep_for = min(sleep_for, remaining)
            await asyncio.sleep(sleep_for)

    async def complete(self, job: Job, result: Any = None) -> None:
        if not await self._redis.zrem(self._key("active"), job.id):
            logger.warning(f"Job {job.id} lost its lease before completing, result discarded")
            return
        job.status = JobStatus.COMPLETED
        job.finished_at = datetime.utcnow()
        job.result = result
        job.error = None
        await self._save(job)
        await self._redis.zadd(self._key("completed"), {job.id: self._ms(job.finished_at)})
        await self._release_key(job)

    async def fail(self, job: Job, error: str, retryable: bool = True) -> bool:
        if not await self._redis.zrem(self._key("active"), job.id):
            logger.warning(f"Job {job.id} lost its lease before failing, already rescheduled")
            return True
        return await self._finish_attempt(job, error, retryable)

    async def _finish_attempt(self, job: Job, error: str, retryable: bool) -> bool:
        job.error = error
        if retryable and job.attempts_made < job.attempts:
            job.status = JobStatus.DELAYED
            job.ready_at = datetime.utcnow() + job.next_backoff()
            await self._save(job)
            await self._schedule(job)
            return True

        job.status = JobStatus.FAILED
        job.finished_at = datetime.utcnow()
        await self._save(job)
        await self._redis.zadd(self._key("failed"), {job.id: self._ms(job.finished_at)})
        await self._release_key(job)
        return False

    async def stats(self) -> dict[str, int]:
        waiting = await self._redis.zcard(self._key("waiting"))
        delayed = await self._redis.zcard(self._key("delayed"))
        return {
            "waiting": waiting + delayed,
            "active": await self._redis.zcard(self._key("active")),
            "completed": await self._redis.zcard(self._key("completed")),
            "failed": await self._redis.zcard(self._key("failed")),
        }

    async def get_jobs(self, status: Union[JobStatus, str], limit: int = 100) -> list[Job]:
        status = JobStatus(status)
        ids = await self._redis.zrevrange(self._key(status.value), 0, limit - 1)
        if not ids:
            return []
        raw = await self._redis.hmget(self._key("jobs"), ids)
        return [Job.from_dict(json.loads(r)) for r in raw if r]

    async def clean(self, older_than_seconds: float, status: Union[JobStatus, str]) -> int:
        status = JobStatus(status)
        cutoff_ms = self._ms(datetime.utcnow() - timedelta(seconds=older_than_seconds))
        stale = await self._redis.zrangebyscore(self._key(status.value), "-inf", cutoff_ms)
        if not stale:
            return 0
        await self._redis.zrem(self._key(status.value), *stale)
        await self._redis.hdel(self._key("jobs"), *stale)
        logger.info(f"Cleaned {len(stale)} {status.value} jobs")
        return len(stale)

    async def close(self) -> None:
        await self._redis.aclose()


def create_queue(config: Optional[Settings] = None) -> JobQueue:
    """Build the queue backend selected in settings."""
    config = config or settings
    if config.queue.backend == "memory":
        return InMemoryJobQueue(config.queue)
    if config.queue.backend == "redis":
        return RedisJobQueue(config=config.queue)
    raise ConfigurationError(f"Unsupported queue backend: {config.queue.backend}")
