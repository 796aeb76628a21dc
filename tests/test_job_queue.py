"""Queue contract tests, run against both backends."""
import asyncio

import pytest

from files_manager.services.job_queue import (
    THUMBNAILS_LANE,
    WELCOMES_LANE,
    enqueue_with_retry,
    retry_delay_seconds,
)


async def test_claim_returns_enqueued_payload(queue):
    job_id = await queue.enqueue(THUMBNAILS_LANE, {"fileId": "f1", "userId": "u1"})

    delivery = await queue.claim(THUMBNAILS_LANE)

    assert delivery.id == job_id
    assert delivery.lane == THUMBNAILS_LANE
    assert delivery.payload == {"fileId": "f1", "userId": "u1"}
    assert delivery.attempts == 1
    assert await queue.get_status(job_id) == "running"


async def test_claim_on_empty_lane_returns_none(queue):
    assert await queue.claim(THUMBNAILS_LANE) is None


async def test_lanes_are_independent(queue):
    await queue.enqueue(WELCOMES_LANE, {"userId": "u1"})

    assert await queue.claim(THUMBNAILS_LANE) is None
    delivery = await queue.claim(WELCOMES_LANE)
    assert delivery.payload == {"userId": "u1"}


async def test_unknown_lane_is_rejected(queue):
    with pytest.raises(ValueError):
        await queue.enqueue("emails", {"userId": "u1"})
    with pytest.raises(ValueError):
        await queue.claim("emails")


async def test_payload_must_be_a_dict(queue):
    with pytest.raises(TypeError):
        await queue.enqueue(WELCOMES_LANE, ["not", "a", "dict"])


async def test_leased_job_is_not_claimable_until_lease_expires(queue, clock):
    job_id = await queue.enqueue(THUMBNAILS_LANE, {"fileId": "f1"})
    first = await queue.claim(THUMBNAILS_LANE)

    clock.advance(29)
    assert await queue.claim(THUMBNAILS_LANE) is None

    clock.advance(2)
    second = await queue.claim(THUMBNAILS_LANE)
    assert second.id == job_id
    assert second.attempts == 2
    assert second.lease_token != first.lease_token


async def test_settle_with_a_lost_lease_is_ignored(queue, clock):
    job_id = await queue.enqueue(THUMBNAILS_LANE, {"fileId": "f1"})
    stale = await queue.claim(THUMBNAILS_LANE)
    clock.advance(31)
    current = await queue.claim(THUMBNAILS_LANE)

    assert await stale.ack() is False
    assert await queue.get_status(job_id) == "running"
    assert await current.ack() is True
    assert await queue.get_status(job_id) == "completed"


async def test_acked_job_is_not_redelivered(queue, clock):
    job_id = await queue.enqueue(WELCOMES_LANE, {"userId": "u1"})
    delivery = await queue.claim(WELCOMES_LANE)

    assert await delivery.ack() is True
    clock.advance(3600)
    assert await queue.claim(WELCOMES_LANE) is None
    assert await queue.get_status(job_id) == "completed"


async def test_dropped_job_is_never_redelivered(queue, clock):
    job_id = await queue.enqueue(THUMBNAILS_LANE, {"fileId": "f1"})
    delivery = await queue.claim(THUMBNAILS_LANE)

    await delivery.drop("File not found")
    clock.advance(3600)

    assert await queue.claim(THUMBNAILS_LANE) is None
    assert await queue.get_status(job_id) == "dropped"


async def test_nack_applies_backoff_before_redelivery(queue, clock):
    job_id = await queue.enqueue(THUMBNAILS_LANE, {"fileId": "f1"})
    delivery = await queue.claim(THUMBNAILS_LANE)

    await delivery.nack("storage unavailable")
    assert await queue.get_status(job_id) == "queued"
    assert await queue.claim(THUMBNAILS_LANE) is None

    clock.advance(1)
    retried = await queue.claim(THUMBNAILS_LANE)
    assert retried.id == job_id
    assert retried.attempts == 2

    await retried.nack("storage unavailable")
    clock.advance(1)
    assert await queue.claim(THUMBNAILS_LANE) is None
    clock.advance(1)
    assert (await queue.claim(THUMBNAILS_LANE)).attempts == 3


async def test_nack_on_last_attempt_dead_letters(queue, clock):
    job_id = await queue.enqueue(THUMBNAILS_LANE, {"fileId": "f1"})
    for _ in range(3):
        delivery = await queue.claim(THUMBNAILS_LANE)
        await delivery.nack("still failing")
        clock.advance(60)

    assert await queue.get_status(job_id) == "dead"
    assert await queue.claim(THUMBNAILS_LANE) is None


async def test_expired_final_lease_is_dead_lettered(queue, clock):
    job_id = await queue.enqueue(WELCOMES_LANE, {"userId": "u1"})
    for _ in range(3):
        assert await queue.claim(WELCOMES_LANE) is not None
        clock.advance(31)

    assert await queue.recover_expired_leases() == 1
    assert await queue.get_status(job_id) == "dead"
    assert await queue.claim(WELCOMES_LANE) is None


async def test_requeue_gives_a_dead_job_a_fresh_budget(queue, clock):
    job_id = await queue.enqueue(THUMBNAILS_LANE, {"fileId": "f1"})
    delivery = await queue.claim(THUMBNAILS_LANE)
    await delivery.drop("bad payload")

    assert await queue.requeue(job_id) is True
    again = await queue.claim(THUMBNAILS_LANE)
    assert again.id == job_id
    assert again.attempts == 1


async def test_requeue_refuses_live_jobs(queue):
    job_id = await queue.enqueue(THUMBNAILS_LANE, {"fileId": "f1"})
    assert await queue.requeue(job_id) is False


async def test_claims_follow_enqueue_order(queue, clock):
    first = await queue.enqueue(WELCOMES_LANE, {"userId": "u1"})
    clock.advance(1)
    second = await queue.enqueue(WELCOMES_LANE, {"userId": "u2"})

    assert (await queue.claim(WELCOMES_LANE)).id == first
    assert (await queue.claim(WELCOMES_LANE)).id == second


async def test_concurrent_claims_never_share_a_job(queue):
    for i in range(5):
        await queue.enqueue(WELCOMES_LANE, {"userId": f"u{i}"})

    deliveries = await asyncio.gather(*[queue.claim(WELCOMES_LANE) for _ in range(8)])
    claimed = [d.id for d in deliveries if d is not None]

    assert len(claimed) == len(set(claimed))
    assert len(claimed) <= 5


async def test_stats_counts_per_lane_and_status(queue):
    await queue.enqueue(WELCOMES_LANE, {"userId": "u1"})
    await queue.enqueue(WELCOMES_LANE, {"userId": "u2"})
    delivery = await queue.claim(WELCOMES_LANE)
    await delivery.ack()

    stats = await queue.stats()

    assert stats[WELCOMES_LANE] == {"completed": 1, "queued": 1}
    assert stats[THUMBNAILS_LANE] == {}


async def test_consume_stops_when_event_is_set(queue):
    await queue.enqueue(WELCOMES_LANE, {"userId": "u1"})
    stop = asyncio.Event()
    seen = []

    async for delivery in queue.consume(WELCOMES_LANE, stop):
        seen.append(delivery.id)
        await delivery.ack()
        stop.set()

    assert len(seen) == 1


def test_retry_delay_is_exponential_and_capped():
    assert retry_delay_seconds(1, 2.0, 300.0) == 2.0
    assert retry_delay_seconds(3, 2.0, 300.0) == 8.0
    assert retry_delay_seconds(20, 2.0, 300.0) == 300.0


class FlakyQueue:
    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    async def enqueue(self, lane, payload):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("queue unavailable")
        return "job-1"


async def test_enqueue_with_retry_recovers_from_transient_failures():
    flaky = FlakyQueue(failures=2)
    assert await enqueue_with_retry(flaky, WELCOMES_LANE, {"userId": "u1"}, retries=3) == "job-1"
    assert flaky.calls == 3


async def test_enqueue_with_retry_gives_up_without_raising(caplog):
    flaky = FlakyQueue(failures=10)
    assert await enqueue_with_retry(flaky, WELCOMES_LANE, {"userId": "u1"}, retries=2) is None
    assert flaky.calls == 2
    assert "Giving up" in caplog.text
