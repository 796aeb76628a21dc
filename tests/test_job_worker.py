"""Worker runtime: per-job error boundary, draining and graceful shutdown."""
import asyncio

import pytest

from files_manager.errors import PermanentError, TransientError
from files_manager.services import job_worker
from files_manager.services.job_queue import THUMBNAILS_LANE, WELCOMES_LANE
from files_manager.services.job_worker import (
    JobWorker,
    WorkerPool,
    drain_lane,
    safe_error_message,
    settle_delivery,
)


@pytest.fixture
def handler(monkeypatch):
    """Swap the welcomes handler for a scripted one."""
    calls = []
    behaviour = {"raise": None}

    async def scripted(payload, delivery, ctx):
        calls.append(payload)
        if behaviour["raise"] is not None:
            raise behaviour["raise"]
        return {"ok": True}

    monkeypatch.setitem(job_worker.JOB_HANDLERS, WELCOMES_LANE, scripted)
    scripted.calls = calls
    scripted.behaviour = behaviour
    return scripted


@pytest.mark.parametrize(
    "error, outcome, status",
    [
        (None, "completed", "completed"),
        (PermanentError("gone"), "dropped", "dropped"),
        (TransientError("busy"), "retried", "queued"),
        (RuntimeError("boom"), "retried", "queued"),
    ],
)
async def test_settle_classifies_outcomes(memory_queue, ctx, handler, error, outcome, status):
    handler.behaviour["raise"] = error
    job_id = await memory_queue.enqueue(WELCOMES_LANE, {"userId": "u1"})

    result = await settle_delivery(await memory_queue.claim(WELCOMES_LANE), ctx)

    assert result == outcome
    assert await memory_queue.get_status(job_id) == status


async def test_unexpected_error_is_logged_with_traceback(memory_queue, ctx, handler, caplog):
    handler.behaviour["raise"] = RuntimeError("boom")
    await memory_queue.enqueue(WELCOMES_LANE, {"userId": "u1"})

    await settle_delivery(await memory_queue.claim(WELCOMES_LANE), ctx)

    assert "Traceback" in caplog.text
    assert "RuntimeError: boom" in caplog.text


async def test_drain_processes_everything_deliverable(memory_queue, ctx, handler):
    for i in range(3):
        await memory_queue.enqueue(WELCOMES_LANE, {"userId": f"u{i}"})

    outcomes = await drain_lane(memory_queue, WELCOMES_LANE, ctx)

    assert outcomes == ["completed"] * 3
    assert [c["userId"] for c in handler.calls] == ["u0", "u1", "u2"]


async def test_drain_does_not_spin_on_retried_jobs(memory_queue, ctx, handler):
    handler.behaviour["raise"] = TransientError("busy")
    await memory_queue.enqueue(WELCOMES_LANE, {"userId": "u1"})

    assert await drain_lane(memory_queue, WELCOMES_LANE, ctx) == ["retried"]


async def test_worker_survives_failing_jobs(memory_queue, ctx, handler):
    handler.behaviour["raise"] = RuntimeError("boom")
    await memory_queue.enqueue(WELCOMES_LANE, {"userId": "u1"})
    worker = JobWorker(memory_queue, WELCOMES_LANE, ctx)
    task = asyncio.create_task(worker.run())

    while not handler.calls:
        await asyncio.sleep(0.01)
    handler.behaviour["raise"] = None
    await memory_queue.enqueue(WELCOMES_LANE, {"userId": "u2"})
    while len(handler.calls) < 2:
        await asyncio.sleep(0.01)

    worker.stop()
    await asyncio.wait_for(task, timeout=1)
    assert [c["userId"] for c in handler.calls] == ["u1", "u2"]


async def test_stop_lets_the_in_flight_job_finish(memory_queue, ctx, monkeypatch):
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow(payload, delivery, ctx):
        started.set()
        await release.wait()
        return {}

    monkeypatch.setitem(job_worker.JOB_HANDLERS, THUMBNAILS_LANE, slow)
    job_id = await memory_queue.enqueue(THUMBNAILS_LANE, {"fileId": "f1"})
    pool = WorkerPool(memory_queue, ctx, {THUMBNAILS_LANE: 1})
    pool.start()
    await started.wait()

    stopping = asyncio.create_task(pool.stop(timeout=5))
    await asyncio.sleep(0.05)
    assert not stopping.done()
    release.set()
    await stopping

    assert await memory_queue.get_status(job_id) == "completed"
    assert pool.tasks == []


async def test_stop_cancels_workers_after_timeout(memory_queue, ctx, monkeypatch):
    started = asyncio.Event()

    async def stuck(payload, delivery, ctx):
        started.set()
        await asyncio.Event().wait()

    monkeypatch.setitem(job_worker.JOB_HANDLERS, THUMBNAILS_LANE, stuck)
    job_id = await memory_queue.enqueue(THUMBNAILS_LANE, {"fileId": "f1"})
    pool = WorkerPool(memory_queue, ctx, {THUMBNAILS_LANE: 1})
    pool.start()
    await started.wait()

    await pool.stop(timeout=0.05)

    # Never settled: the lease will expire and the job gets redelivered
    assert await memory_queue.get_status(job_id) == "running"


def test_pool_sizes_come_from_settings(memory_queue, ctx):
    ctx.settings.THUMBNAIL_WORKERS = 2
    ctx.settings.WELCOME_WORKERS = 1

    pool = WorkerPool.from_settings(memory_queue, ctx)

    assert sorted(w.name for w in pool.workers) == ["thumbnails-0", "thumbnails-1", "welcomes-0"]


def test_safe_error_message_falls_back_to_class_name():
    assert safe_error_message(TimeoutError()) == "TimeoutError: Job interrupted"
    assert safe_error_message(ValueError("bad")) == "bad"
