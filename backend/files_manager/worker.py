"""Standalone worker process.

    python -m files_manager.worker            # consume until SIGINT/SIGTERM
    python -m files_manager.worker --drain    # process what is queued, then exit

Uses the same Settings as the API, so run the API with START_WORKERS=false
when workers live in their own processes.
"""
import argparse
import asyncio
import logging
import signal

from files_manager.config import Settings, configure_logging
from files_manager.database import build_engine, build_session_factory
from files_manager.models import Base
from files_manager.services.blob_store import LocalBlobStore
from files_manager.services.job_queue import LANES, build_job_queue
from files_manager.services.job_worker import WorkerContext, WorkerPool, drain_lane

logger = logging.getLogger(__name__)


async def run(settings: Settings, drain: bool = False) -> None:
    engine = build_engine(settings.DATABASE_URL)
    session_factory = build_session_factory(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    queue = build_job_queue(settings, session_factory)
    ctx = WorkerContext(
        session_factory=session_factory,
        blob_store=LocalBlobStore(settings.FILE_STORAGE_PATH),
        settings=settings,
    )
    await queue.recover_expired_leases()

    try:
        if drain:
            for lane in LANES:
                outcomes = await drain_lane(queue, lane, ctx)
                logger.info(f"Drained {len(outcomes)} job(s) from lane '{lane}'")
            return

        pool = WorkerPool.from_settings(queue, ctx)
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        pool.start()
        logger.info(f"Worker process running {len(pool.workers)} consumer(s)")
        await stop.wait()
        logger.info("Shutdown requested, finishing in-flight jobs")
        await pool.stop(settings.WORKER_SHUTDOWN_TIMEOUT)
    finally:
        await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run background job workers")
    parser.add_argument("--drain", action="store_true", help="process queued jobs and exit")
    args = parser.parse_args()

    settings = Settings()
    configure_logging(settings)
    asyncio.run(run(settings, drain=args.drain))


if __name__ == "__main__":
    main()
