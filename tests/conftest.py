"""Shared fixtures: SQLite metadata store, tmp blob store, queues and an API client."""
import base64
import io
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from PIL import Image

from files_manager.config import Settings
from files_manager.database import build_engine, build_session_factory
from files_manager.main import create_app
from files_manager.models import Base, User
from files_manager.services.auth import hash_password
from files_manager.services.blob_store import LocalBlobStore
from files_manager.services.job_queue import DatabaseJobQueue, InMemoryJobQueue
from files_manager.services.job_worker import WorkerContext


class FakeClock:
    """Manually advanced UTC clock for lease and backoff tests."""

    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_image_bytes(width: int = 1000, height: int = 600, fmt: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), (200, 30, 90)).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'files.db'}",
        FILE_STORAGE_PATH=str(tmp_path / "blobs"),
        START_WORKERS=False,
        QUEUE_POLL_INTERVAL=0.01,
        QUEUE_LEASE_SECONDS=30.0,
        QUEUE_MAX_ATTEMPTS=3,
        QUEUE_RETRY_BACKOFF=1.0,
        QUEUE_RETRY_BACKOFF_MAX=10.0,
        THUMBNAIL_RECORD_GRACE_SECONDS=0.0,
        WORKER_SHUTDOWN_TIMEOUT=5.0,
    )


@pytest.fixture
async def engine(settings):
    engine = build_engine(settings.DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def blob_store(settings) -> LocalBlobStore:
    return LocalBlobStore(settings.FILE_STORAGE_PATH)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_queue(session_factory, clock) -> DatabaseJobQueue:
    return DatabaseJobQueue(
        session_factory,
        lease_seconds=30.0,
        max_attempts=3,
        retry_backoff=1.0,
        retry_backoff_max=10.0,
        poll_interval=0.01,
        clock=clock,
    )


@pytest.fixture
def memory_queue(clock) -> InMemoryJobQueue:
    return InMemoryJobQueue(
        lease_seconds=30.0,
        max_attempts=3,
        retry_backoff=1.0,
        retry_backoff_max=10.0,
        poll_interval=0.01,
        clock=clock,
    )


@pytest.fixture(params=["database", "memory"])
def queue(request, db_queue, memory_queue):
    """Both queue backends, so every contract test runs against each."""
    return db_queue if request.param == "database" else memory_queue


@pytest.fixture
def ctx(session_factory, blob_store, settings) -> WorkerContext:
    return WorkerContext(session_factory=session_factory, blob_store=blob_store, settings=settings)


@pytest.fixture
async def user(db) -> User:
    user = User(email="bob@example.com", password=hash_password("secret"))
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
def image_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture
def image_b64(image_bytes) -> str:
    return base64.b64encode(image_bytes).decode()


@pytest.fixture
async def app(settings):
    app = create_app(settings)
    async with app.router.lifespan_context(app):
        yield app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
