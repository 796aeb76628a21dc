"""Durable job queue with named lanes and per-job leases.

Delivery is at-least-once. A consumer claims a job under a time-bounded
lease and must settle it with ack (done), drop (permanent failure, never
redelivered) or nack (redelivered after backoff). A job whose lease expires
without being settled becomes claimable again, and a job that used up its
attempts is dead-lettered (status "dead").

DatabaseJobQueue keeps jobs in the jobs table; the claim is a conditional
UPDATE on the row, so two consumers can never hold the same lease.
InMemoryJobQueue implements the same contract for tests and single-process
runs.
"""
import asyncio
import itertools
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable

from sqlalchemy import and_, or_, select, update, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from files_manager.models.job import Job

logger = logging.getLogger(__name__)

THUMBNAILS_LANE = "thumbnails"
WELCOMES_LANE = "welcomes"
LANES = (THUMBNAILS_LANE, WELCOMES_LANE)

# How many times claim() retries after losing a race for the same row
_CLAIM_RACE_RETRIES = 5

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def retry_delay_seconds(attempts: int, base: float, cap: float) -> float:
    """Exponential backoff with cap to avoid hot-looping."""
    attempt = max(attempts, 1)
    return min(base * (2 ** (attempt - 1)), cap)


@dataclass
class Delivery:
    """One claimed attempt at a job. Settle it exactly once."""
    id: str
    lane: str
    payload: dict
    attempts: int
    max_attempts: int
    enqueued_at: datetime
    lease_token: str
    queue: "JobQueue" = field(repr=False, compare=False)

    async def ack(self) -> bool:
        return await self.queue.ack(self)

    async def nack(self, error: str) -> bool:
        return await self.queue.nack(self, error)

    async def drop(self, reason: str) -> bool:
        return await self.queue.drop(self, reason)

    def age_seconds(self) -> float:
        return (self.queue.clock() - as_utc(self.enqueued_at)).total_seconds()


class JobQueue:
    """Base class for queue backends."""

    def __init__(
        self,
        *,
        lanes: tuple[str, ...] = LANES,
        lease_seconds: float = 60.0,
        max_attempts: int = 5,
        retry_backoff: float = 2.0,
        retry_backoff_max: float = 300.0,
        poll_interval: float = 1.0,
        clock: Clock = utcnow,
    ):
        self.lanes = lanes
        self.lease_seconds = lease_seconds
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self.retry_backoff_max = retry_backoff_max
        self.poll_interval = poll_interval
        self.clock = clock

    async def enqueue(self, lane: str, payload: dict) -> str:
        """Durably record a job and return its id."""
        raise NotImplementedError

    async def claim(self, lane: str) -> Delivery | None:
        """Lease the oldest deliverable job in the lane, if any."""
        raise NotImplementedError

    async def ack(self, delivery: Delivery) -> bool:
        raise NotImplementedError

    async def nack(self, delivery: Delivery, error: str) -> bool:
        raise NotImplementedError

    async def drop(self, delivery: Delivery, reason: str) -> bool:
        raise NotImplementedError

    async def requeue(self, job_id: str) -> bool:
        """Put a dead or dropped job back in its lane with a fresh budget."""
        raise NotImplementedError

    async def recover_expired_leases(self) -> int:
        """Dead-letter jobs whose lease expired on their final attempt."""
        raise NotImplementedError

    async def get_status(self, job_id: str) -> str | None:
        raise NotImplementedError

    async def stats(self) -> dict[str, dict[str, int]]:
        """Job counts per lane and status."""
        raise NotImplementedError

    async def consume(self, lane: str, stop_event: asyncio.Event) -> AsyncIterator[Delivery]:
        """Yield deliveries from a lane until stop_event is set.

        Polls every poll_interval seconds while the lane is empty. Callers
        must settle each delivery before asking for the next one.
        """
        self._check_lane(lane)
        while not stop_event.is_set():
            delivery = await self.claim(lane)
            if delivery is None:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue
            yield delivery

    def _check_lane(self, lane: str) -> None:
        if lane not in self.lanes:
            raise ValueError(f"Unknown lane: {lane}. Choose from {list(self.lanes)}")

    def _normalize_payload(self, payload: dict) -> dict:
        if not isinstance(payload, dict):
            raise TypeError("Job payload must be a dict")
        # Round-trip so callers can't mutate what was enqueued
        return json.loads(json.dumps(payload))

    def _retry_at(self, attempts: int, now: datetime) -> datetime:
        delay = retry_delay_seconds(attempts, self.retry_backoff, self.retry_backoff_max)
        return now + timedelta(seconds=delay)

    def _lease_until(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.lease_seconds)


class DatabaseJobQueue(JobQueue):
    """Job queue stored in the jobs table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], **kwargs):
        super().__init__(**kwargs)
        self.session_factory = session_factory

    async def enqueue(self, lane: str, payload: dict) -> str:
        self._check_lane(lane)
        now = self.clock()
        job = Job(
            lane=lane,
            payload=self._normalize_payload(payload),
            status="queued",
            attempts=0,
            max_attempts=self.max_attempts,
            available_at=now,
            created_at=now,
        )
        async with self.session_factory() as db:
            db.add(job)
            await db.commit()
        logger.info(f"Enqueued job {job.id} on lane '{lane}'")
        return str(job.id)

    def _deliverable(self, lane: str, now: datetime):
        return and_(
            Job.lane == lane,
            or_(
                and_(Job.status == "queued", Job.available_at <= now),
                and_(
                    Job.status == "running",
                    Job.lease_expires_at <= now,
                    Job.attempts < Job.max_attempts,
                ),
            ),
        )

    async def claim(self, lane: str) -> Delivery | None:
        self._check_lane(lane)
        await self.recover_expired_leases()
        async with self.session_factory() as db:
            for _ in range(_CLAIM_RACE_RETRIES):
                now = self.clock()
                deliverable = self._deliverable(lane, now)
                result = await db.execute(
                    select(Job.id)
                    .where(deliverable)
                    .order_by(Job.created_at)
                    .limit(1)
                )
                job_id = result.scalar_one_or_none()
                if job_id is None:
                    return None

                token = uuid.uuid4().hex
                claimed = await db.execute(
                    update(Job)
                    .where(Job.id == job_id, deliverable)
                    .values(
                        status="running",
                        attempts=Job.attempts + 1,
                        lease_token=token,
                        lease_expires_at=self._lease_until(now),
                        started_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                if claimed.rowcount != 1:
                    # Another consumer leased it between our select and update
                    continue

                job = await db.get(Job, job_id)
                return Delivery(
                    id=str(job.id),
                    lane=job.lane,
                    payload=job.payload or {},
                    attempts=job.attempts,
                    max_attempts=job.max_attempts,
                    enqueued_at=job.created_at,
                    lease_token=token,
                    queue=self,
                )
        return None

    async def _settle(self, delivery: Delivery, **values) -> bool:
        """Apply a terminal/requeue update only if the caller still holds the lease."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(Job)
                .where(Job.id == uuid.UUID(delivery.id), Job.lease_token == delivery.lease_token)
                .values(lease_token=None, lease_expires_at=None, **values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount != 1:
            logger.warning(f"Job {delivery.id} lease was lost before it could be settled")
            return False
        return True

    async def ack(self, delivery: Delivery) -> bool:
        return await self._settle(
            delivery, status="completed", completed_at=self.clock(), error_message=None
        )

    async def nack(self, delivery: Delivery, error: str) -> bool:
        now = self.clock()
        if delivery.attempts >= delivery.max_attempts:
            logger.error(
                f"Job {delivery.id} dead-lettered after {delivery.attempts} attempts: {error}"
            )
            return await self._settle(
                delivery, status="dead", completed_at=now, error_message=error[:2000]
            )
        return await self._settle(
            delivery,
            status="queued",
            available_at=self._retry_at(delivery.attempts, now),
            error_message=error[:2000],
        )

    async def drop(self, delivery: Delivery, reason: str) -> bool:
        return await self._settle(
            delivery, status="dropped", completed_at=self.clock(), error_message=reason[:2000]
        )

    async def requeue(self, job_id: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                update(Job)
                .where(Job.id == uuid.UUID(job_id), Job.status.in_(["dead", "dropped"]))
                .values(
                    status="queued",
                    attempts=0,
                    available_at=self.clock(),
                    completed_at=None,
                    error_message=None,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return result.rowcount == 1

    async def recover_expired_leases(self) -> int:
        now = self.clock()
        async with self.session_factory() as db:
            result = await db.execute(
                update(Job)
                .where(
                    Job.status == "running",
                    Job.lease_expires_at <= now,
                    Job.attempts >= Job.max_attempts,
                )
                .values(
                    status="dead",
                    lease_token=None,
                    lease_expires_at=None,
                    completed_at=now,
                    error_message="Lease expired on the final attempt",
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount:
            logger.warning(f"Dead-lettered {result.rowcount} job(s) whose final lease expired")
        return result.rowcount

    async def get_status(self, job_id: str) -> str | None:
        async with self.session_factory() as db:
            job = await db.get(Job, uuid.UUID(job_id))
            return job.status if job else None

    async def stats(self) -> dict[str, dict[str, int]]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Job.lane, Job.status, func.count()).group_by(Job.lane, Job.status)
            )
            counts: dict[str, dict[str, int]] = {lane: {} for lane in self.lanes}
            for lane, status, count in result.all():
                counts.setdefault(lane, {})[status] = count
            return counts


@dataclass
class _MemoryJob:
    id: str
    seq: int
    lane: str
    payload: dict
    max_attempts: int
    created_at: datetime
    available_at: datetime
    status: str = "queued"
    attempts: int = 0
    lease_token: str | None = None
    lease_expires_at: datetime | None = None
    error_message: str | None = None


class InMemoryJobQueue(JobQueue):
    """Process-local queue with the same lease semantics as DatabaseJobQueue."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._jobs: dict[str, _MemoryJob] = {}
        self._seq = itertools.count()
        self._lock = asyncio.Lock()

    async def enqueue(self, lane: str, payload: dict) -> str:
        self._check_lane(lane)
        now = self.clock()
        job = _MemoryJob(
            id=str(uuid.uuid4()),
            seq=next(self._seq),
            lane=lane,
            payload=self._normalize_payload(payload),
            max_attempts=self.max_attempts,
            created_at=now,
            available_at=now,
        )
        async with self._lock:
            self._jobs[job.id] = job
        logger.info(f"Enqueued job {job.id} on lane '{lane}'")
        return job.id

    def _is_deliverable(self, job: _MemoryJob, lane: str, now: datetime) -> bool:
        if job.lane != lane:
            return False
        if job.status == "queued":
            return job.available_at <= now
        if job.status == "running":
            return job.lease_expires_at <= now and job.attempts < job.max_attempts
        return False

    async def claim(self, lane: str) -> Delivery | None:
        self._check_lane(lane)
        await self.recover_expired_leases()
        async with self._lock:
            now = self.clock()
            candidates = [j for j in self._jobs.values() if self._is_deliverable(j, lane, now)]
            if not candidates:
                return None
            job = min(candidates, key=lambda j: (j.created_at, j.seq))
            job.status = "running"
            job.attempts += 1
            job.lease_token = uuid.uuid4().hex
            job.lease_expires_at = self._lease_until(now)
            return Delivery(
                id=job.id,
                lane=job.lane,
                payload=json.loads(json.dumps(job.payload)),
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                enqueued_at=job.created_at,
                lease_token=job.lease_token,
                queue=self,
            )

    async def _settle(self, delivery: Delivery, **values) -> bool:
        async with self._lock:
            job = self._jobs.get(delivery.id)
            if job is None or job.lease_token != delivery.lease_token:
                logger.warning(f"Job {delivery.id} lease was lost before it could be settled")
                return False
            job.lease_token = None
            job.lease_expires_at = None
            for key, value in values.items():
                setattr(job, key, value)
            return True

    async def ack(self, delivery: Delivery) -> bool:
        return await self._settle(delivery, status="completed", error_message=None)

    async def nack(self, delivery: Delivery, error: str) -> bool:
        if delivery.attempts >= delivery.max_attempts:
            logger.error(
                f"Job {delivery.id} dead-lettered after {delivery.attempts} attempts: {error}"
            )
            return await self._settle(delivery, status="dead", error_message=error)
        return await self._settle(
            delivery,
            status="queued",
            available_at=self._retry_at(delivery.attempts, self.clock()),
            error_message=error,
        )

    async def drop(self, delivery: Delivery, reason: str) -> bool:
        return await self._settle(delivery, status="dropped", error_message=reason)

    async def requeue(self, job_id: str) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in ("dead", "dropped"):
                return False
            job.status = "queued"
            job.attempts = 0
            job.available_at = self.clock()
            job.error_message = None
            return True

    async def recover_expired_leases(self) -> int:
        recovered = 0
        async with self._lock:
            now = self.clock()
            for job in self._jobs.values():
                if (
                    job.status == "running"
                    and job.lease_expires_at <= now
                    and job.attempts >= job.max_attempts
                ):
                    job.status = "dead"
                    job.lease_token = None
                    job.lease_expires_at = None
                    job.error_message = "Lease expired on the final attempt"
                    recovered += 1
        if recovered:
            logger.warning(f"Dead-lettered {recovered} job(s) whose final lease expired")
        return recovered

    async def get_status(self, job_id: str) -> str | None:
        job = self._jobs.get(job_id)
        return job.status if job else None

    async def stats(self) -> dict[str, dict[str, int]]:
        counts: dict[str, dict[str, int]] = {lane: {} for lane in self.lanes}
        for job in self._jobs.values():
            lane_counts = counts.setdefault(job.lane, {})
            lane_counts[job.status] = lane_counts.get(job.status, 0) + 1
        return counts


async def enqueue_with_retry(queue: JobQueue, lane: str, payload: dict, retries: int = 3) -> str | None:
    """Fire-and-forget enqueue used by request handlers.

    Retries transient queue failures a bounded number of times. If every
    attempt fails the error is logged and None is returned; the request that
    triggered the job still succeeds.
    """
    for attempt in range(1, max(retries, 1) + 1):
        try:
            return await queue.enqueue(lane, payload)
        except (ValueError, TypeError):
            raise
        except Exception as e:
            logger.warning(
                f"Enqueue on lane '{lane}' failed (attempt {attempt}/{retries}): {e}"
            )
            if attempt < retries:
                await asyncio.sleep(0.1 * attempt)
    logger.error(f"Giving up enqueueing {payload} on lane '{lane}' after {retries} attempts")
    return None


def build_job_queue(settings, session_factory: async_sessionmaker[AsyncSession]) -> DatabaseJobQueue:
    return DatabaseJobQueue(
        session_factory,
        lease_seconds=settings.QUEUE_LEASE_SECONDS,
        max_attempts=settings.QUEUE_MAX_ATTEMPTS,
        retry_backoff=settings.QUEUE_RETRY_BACKOFF,
        retry_backoff_max=settings.QUEUE_RETRY_BACKOFF_MAX,
        poll_interval=settings.QUEUE_POLL_INTERVAL,
    )
