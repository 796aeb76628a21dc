"""FastAPI application entry point.

Run with:
    uvicorn files_manager.main:create_app --factory --port 5000
"""
import logging
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from files_manager.config import Settings, configure_logging
from files_manager.database import build_engine, build_session_factory, get_db
from files_manager.dependencies import get_job_queue
from files_manager.models import Base, FileRecord, User
from files_manager.services.blob_store import LocalBlobStore
from files_manager.services.job_queue import JobQueue, build_job_queue
from files_manager.services.job_worker import WorkerContext, WorkerPool

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup, start background workers."""
    settings: Settings = app.state.settings
    async with app.state.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Jobs whose final lease ran out while no worker was alive
    await app.state.job_queue.recover_expired_leases()

    pool = None
    if settings.START_WORKERS:
        ctx = WorkerContext(
            session_factory=app.state.session_factory,
            blob_store=app.state.blob_store,
            settings=settings,
        )
        pool = WorkerPool.from_settings(app.state.job_queue, ctx)
        pool.start()
        logger.info(f"Started {len(pool.workers)} background worker(s)")

    yield

    # Cleanup
    if pool is not None:
        await pool.stop(settings.WORKER_SHUTDOWN_TIMEOUT)
    await app.state.engine.dispose()


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings)

    app = FastAPI(
        title="Files Manager API",
        version="1.0.0",
        description="File storage API with background thumbnail generation.",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = build_engine(settings.DATABASE_URL)
    app.state.session_factory = build_session_factory(app.state.engine)
    app.state.blob_store = LocalBlobStore(settings.FILE_STORAGE_PATH)
    app.state.job_queue = build_job_queue(settings, app.state.session_factory)

    # CORS
    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/status")
    async def status(request: Request, queue: JobQueue = Depends(get_job_queue)):
        """Verify database and queue connectivity."""
        db_ok = True
        try:
            async with request.app.state.session_factory() as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning(f"Database status check failed: {e}")
            db_ok = False
        queue_ok = True
        try:
            await queue.stats()
        except Exception as e:
            logger.warning(f"Queue status check failed: {e}")
            queue_ok = False
        return {"db": db_ok, "queue": queue_ok}

    @app.get("/api/stats")
    async def stats(db: AsyncSession = Depends(get_db)):
        """Count users and files."""
        users = await db.scalar(select(func.count()).select_from(User))
        files = await db.scalar(select(func.count()).select_from(FileRecord))
        return {"users": users, "files": files}

    # Register routers
    from files_manager.routes.auth import router as auth_router
    from files_manager.routes.users import router as users_router
    from files_manager.routes.files import router as files_router
    from files_manager.routes.jobs import router as jobs_router
    app.include_router(auth_router)
    app.include_router(users_router)
    app.include_router(files_router)
    app.include_router(jobs_router)

    return app
