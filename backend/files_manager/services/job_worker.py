"""Background job workers.

Each JobWorker drains one queue lane. Workers run as asyncio tasks within
the FastAPI process, or standalone via `python -m files_manager.worker`;
any number of them may consume the same lane since the queue leases each
job to one attempt at a time.

A single job never takes a worker down: permanent failures are dropped,
transient and unexpected ones are nacked for redelivery with backoff.
"""
import asyncio
import logging
import traceback
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from files_manager.config import Settings
from files_manager.errors import PermanentError, TransientError
from files_manager.services.blob_store import BlobStore
from files_manager.services.job_queue import (
    THUMBNAILS_LANE,
    WELCOMES_LANE,
    Delivery,
    JobQueue,
)

logger = logging.getLogger(__name__)


@dataclass
class WorkerContext:
    """Everything a handler may touch. Built explicitly by the caller."""
    session_factory: async_sessionmaker[AsyncSession]
    blob_store: BlobStore
    settings: Settings


def safe_error_message(e: Exception, fallback: str = "Job interrupted") -> str:
    """Extract a meaningful error message from an exception.

    Some exceptions produce an empty str(e). This helper falls back to the
    exception class name.
    """
    msg = str(e).strip()
    if not msg:
        msg = f"{type(e).__name__}: {fallback}"
    return msg


# Job handler registry - one handler per lane
JOB_HANDLERS = {}


def register_job_handler(lane: str):
    """Decorator to register the handler for a lane."""
    def decorator(func):
        JOB_HANDLERS[lane] = func
        return func
    return decorator


async def process_job(delivery: Delivery, ctx: WorkerContext) -> dict:
    """Dispatch a delivery to its lane's handler."""
    handler = JOB_HANDLERS.get(delivery.lane)
    if not handler:
        raise PermanentError(f"No handler for lane: {delivery.lane}")
    return await handler(delivery.payload, delivery, ctx)


async def settle_delivery(delivery: Delivery, ctx: WorkerContext) -> str:
    """Run one delivery inside the per-job error boundary.

    Returns the outcome: "completed", "dropped" or "retried".
    """
    logger.info(
        f"Processing job {delivery.id} (lane={delivery.lane}, "
        f"attempt {delivery.attempts}/{delivery.max_attempts})"
    )
    try:
        result = await process_job(delivery, ctx)
    except PermanentError as e:
        logger.warning(f"Dropping job {delivery.id} ({delivery.lane}): {e.message}")
        await delivery.drop(e.message)
        return "dropped"
    except TransientError as e:
        logger.warning(f"Job {delivery.id} will be retried: {e.message}")
        await delivery.nack(e.message)
        return "retried"
    except Exception as e:
        logger.error(f"Job {delivery.id} failed: {e}")
        logger.error(traceback.format_exc())
        await delivery.nack(safe_error_message(e))
        return "retried"

    await delivery.ack()
    logger.info(f"Job {delivery.id} completed")
    logger.debug(f"Job {delivery.id} result: {result}")
    return "completed"


async def drain_lane(queue: JobQueue, lane: str, ctx: WorkerContext) -> list[str]:
    """Process every job that is deliverable right now, then return.

    Jobs nacked during the drain are not picked up again until their
    backoff has elapsed, so this always terminates.
    """
    outcomes = []
    while True:
        delivery = await queue.claim(lane)
        if delivery is None:
            return outcomes
        outcomes.append(await settle_delivery(delivery, ctx))


class JobWorker:
    """One long-lived consumer loop over a single lane."""

    def __init__(self, queue: JobQueue, lane: str, ctx: WorkerContext, name: str | None = None):
        self.queue = queue
        self.lane = lane
        self.ctx = ctx
        self.name = name or f"{lane}-worker"
        self.stop_event = asyncio.Event()

    def stop(self) -> None:
        """Stop pulling new jobs. The in-flight job, if any, finishes first."""
        self.stop_event.set()

    async def run(self) -> None:
        logger.info(f"Job worker {self.name} started")
        while not self.stop_event.is_set():
            try:
                async for delivery in self.queue.consume(self.lane, self.stop_event):
                    await settle_delivery(delivery, self.ctx)
            except Exception as e:
                logger.error(f"Worker loop error ({self.name}): {e}")
                try:
                    await asyncio.wait_for(self.stop_event.wait(), timeout=self.queue.poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info(f"Job worker {self.name} stopped")


class WorkerPool:
    """Starts and gracefully stops a set of JobWorkers."""

    def __init__(self, queue: JobQueue, ctx: WorkerContext, lanes: dict[str, int]):
        self.workers = [
            JobWorker(queue, lane, ctx, name=f"{lane}-{i}")
            for lane, count in lanes.items()
            for i in range(count)
        ]
        self.tasks: list[asyncio.Task] = []

    @classmethod
    def from_settings(cls, queue: JobQueue, ctx: WorkerContext) -> "WorkerPool":
        return cls(queue, ctx, {
            THUMBNAILS_LANE: ctx.settings.THUMBNAIL_WORKERS,
            WELCOMES_LANE: ctx.settings.WELCOME_WORKERS,
        })

    def start(self) -> None:
        self.tasks = [asyncio.create_task(w.run(), name=w.name) for w in self.workers]

    async def stop(self, timeout: float = 30.0) -> None:
        """Signal every worker, wait for in-flight jobs, cancel stragglers.

        A cancelled job is not settled; its lease expires and the queue
        redelivers it.
        """
        for worker in self.workers:
            worker.stop()
        if not self.tasks:
            return
        _, pending = await asyncio.wait(self.tasks, timeout=timeout)
        for task in pending:
            logger.warning(f"Worker {task.get_name()} did not stop in {timeout}s, cancelling")
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self.tasks = []


# ── Job Handlers ─────────────────────────────────────────────────

@register_job_handler(THUMBNAILS_LANE)
async def handle_thumbnails(payload: dict, delivery: Delivery, ctx: WorkerContext) -> dict:
    """Derive the 500/250/100px variants of an uploaded image."""
    from files_manager.services.thumbnails import generate_thumbnails
    return await generate_thumbnails(payload, delivery, ctx)


@register_job_handler(WELCOMES_LANE)
async def handle_welcome(payload: dict, delivery: Delivery, ctx: WorkerContext) -> dict:
    """Greet a newly registered user."""
    from files_manager.services.welcome import send_welcome
    return await send_welcome(payload, delivery, ctx)
