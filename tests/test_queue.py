"""Durable queue tests: backoff, idempotent enqueue, leases, admission control."""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from atelier.core.timezone import utcnow
from atelier.models.queue_entry import QueueEntryStatus
from atelier.services.exceptions import QueueUnavailableError
from atelier.services.queue.backoff import BackoffPolicy, BackoffType, backoff_delay_ms
from atelier.services.queue.job_queue import EnqueueOptions, JobQueue

JOB_TYPE = "generate"


def payload():
    return {"job_id": uuid4(), "user_id": uuid4()}


@pytest.mark.parametrize(
    "attempts,expected", [(0, 30_000), (1, 60_000), (2, 120_000), (3, 240_000)]
)
def test_exponential_backoff(attempts, expected):
    assert backoff_delay_ms(attempts, 30_000) == expected


def test_fixed_backoff_ignores_attempts():
    policy = BackoffPolicy(type=BackoffType.FIXED, delay_ms=5000)

    assert policy.delay_for(1) == 5000
    assert policy.delay_for(4) == 5000


async def expire_lease(context, entry_id):
    async with await context.uow_factory() as uow:
        entry = await uow.queue_entries.get_by_id(entry_id)
        entry.lease_expires_at = utcnow() - timedelta(seconds=1)
        uow.session.add(entry)


@pytest.mark.asyncio
async def test_enqueue_creates_waiting_entry(context):
    data = payload()

    entry = await context.queue.enqueue(JOB_TYPE, data)

    assert entry.status == QueueEntryStatus.WAITING
    assert entry.payload["job_id"] == str(data["job_id"])
    fetched = await context.queue.retrieve(entry.id)
    assert fetched is not None and fetched.job_id == data["job_id"]
    metrics = await context.queue.metrics(JOB_TYPE)
    assert metrics.waiting == 1
    assert metrics.total == 1


@pytest.mark.asyncio
async def test_enqueue_is_idempotent_per_open_job(context):
    data = payload()

    first = await context.queue.enqueue(JOB_TYPE, data)
    second = await context.queue.enqueue(JOB_TYPE, data)

    assert first.id == second.id
    assert (await context.queue.metrics(JOB_TYPE)).waiting == 1


@pytest.mark.asyncio
async def test_retrieve_unknown_entry_returns_none(context):
    assert await context.queue.retrieve(uuid4()) is None


@pytest.mark.asyncio
async def test_delayed_entry_is_not_claimed_early(context):
    await context.queue.enqueue(JOB_TYPE, payload(), EnqueueOptions(delay_ms=60_000))

    assert (await context.queue.metrics(JOB_TYPE)).delayed == 1
    assert await context.queue.claim(JOB_TYPE, "w1", lease_seconds=30) is None


@pytest.mark.asyncio
async def test_claim_prefers_most_urgent_priority(context):
    await context.queue.enqueue(JOB_TYPE, payload(), EnqueueOptions(priority=5))
    urgent = await context.queue.enqueue(JOB_TYPE, payload(), EnqueueOptions(priority=1))

    claimed = await context.queue.claim(JOB_TYPE, "w1", lease_seconds=30)

    assert claimed.id == urgent.id
    assert claimed.status == QueueEntryStatus.ACTIVE
    assert claimed.lease_token


@pytest.mark.asyncio
async def test_claim_only_serves_its_job_type(context):
    await context.queue.enqueue("quilt-design", payload())

    assert await context.queue.claim(JOB_TYPE, "w1", lease_seconds=30) is None


@pytest.mark.asyncio
async def test_paused_queue_dispatches_nothing_and_keeps_entries(context):
    entry = await context.queue.enqueue(JOB_TYPE, payload())

    await context.queue.pause(JOB_TYPE)

    assert await context.queue.is_paused(JOB_TYPE)
    assert await context.queue.claim(JOB_TYPE, "w1", lease_seconds=30) is None
    metrics = await context.queue.metrics(JOB_TYPE)
    assert metrics.paused == 1
    assert metrics.waiting == 0

    await context.queue.resume(JOB_TYPE)

    claimed = await context.queue.claim(JOB_TYPE, "w1", lease_seconds=30)
    assert claimed.id == entry.id


@pytest.mark.asyncio
async def test_complete_records_result(context):
    await context.queue.enqueue(JOB_TYPE, payload())
    entry = await context.queue.claim(JOB_TYPE, "w1", lease_seconds=30)

    assert await context.queue.complete(entry, {"status": "succeeded"}) is True

    stored = await context.queue.retrieve(entry.id)
    assert stored.status == QueueEntryStatus.COMPLETED
    assert stored.result == {"status": "succeeded"}
    assert stored.attempts_made == 1
    assert stored.lease_token is None


@pytest.mark.asyncio
async def test_retryable_failure_is_delayed_by_backoff(context):
    await context.queue.enqueue(JOB_TYPE, payload(), EnqueueOptions(attempts=3))
    entry = await context.queue.claim(JOB_TYPE, "w1", lease_seconds=30)
    before = utcnow()

    outcome = await context.queue.fail(entry, "Gemini API error: 503", retryable=True)

    assert outcome.status == "retrying"
    assert outcome.attempts_made == 1
    assert outcome.run_at >= before + timedelta(milliseconds=60_000)
    stored = await context.queue.retrieve(entry.id)
    assert stored.status == QueueEntryStatus.DELAYED
    assert stored.last_error == "Gemini API error: 503"


@pytest.mark.asyncio
async def test_permanent_failure_fails_entry(context):
    await context.queue.enqueue(JOB_TYPE, payload(), EnqueueOptions(attempts=3))
    entry = await context.queue.claim(JOB_TYPE, "w1", lease_seconds=30)

    outcome = await context.queue.fail(entry, "content policy", retryable=False)

    assert outcome.status == "failed"
    assert (await context.queue.retrieve(entry.id)).status == QueueEntryStatus.FAILED


@pytest.mark.asyncio
async def test_exhausted_attempts_fail_entry(context):
    await context.queue.enqueue(JOB_TYPE, payload(), EnqueueOptions(attempts=1))
    entry = await context.queue.claim(JOB_TYPE, "w1", lease_seconds=30)

    outcome = await context.queue.fail(entry, "timeout", retryable=True)

    assert outcome.status == "failed"
    assert (await context.queue.metrics(JOB_TYPE)).failed == 1


@pytest.mark.asyncio
async def test_stalled_entry_is_redelivered_and_stale_ack_ignored(context):
    await context.queue.enqueue(JOB_TYPE, payload())
    stale = await context.queue.claim(JOB_TYPE, "w1", lease_seconds=30)
    await expire_lease(context, stale.id)

    recovered = await context.queue.recover_stalled(JOB_TYPE, max_stalled_count=1)

    assert len(recovered) == 1
    assert recovered[0].redelivered is True
    assert recovered[0].worker_id == "w1"
    fresh = await context.queue.claim(JOB_TYPE, "w2", lease_seconds=30)
    assert fresh.id == stale.id
    assert fresh.lease_token != stale.lease_token

    assert await context.queue.complete(stale, {"status": "late"}) is False
    assert (await context.queue.fail(stale, "late")).status == "stale"
    assert await context.queue.heartbeat(stale, 30) is False
    assert await context.queue.heartbeat(fresh, 30) is True


@pytest.mark.asyncio
async def test_entry_stalled_too_often_fails(context):
    await context.queue.enqueue(JOB_TYPE, payload())
    entry = await context.queue.claim(JOB_TYPE, "w1", lease_seconds=30)
    await expire_lease(context, entry.id)

    recovered = await context.queue.recover_stalled(JOB_TYPE, max_stalled_count=0)

    assert recovered[0].redelivered is False
    stored = await context.queue.retrieve(entry.id)
    assert stored.status == QueueEntryStatus.FAILED
    assert stored.last_error == "job stalled more than allowable limit"


@pytest.mark.asyncio
async def test_remove_pending_deletes_waiting_entries(context):
    data = payload()
    await context.queue.enqueue(JOB_TYPE, data)

    assert await context.queue.remove_pending(data["job_id"]) == 1
    assert (await context.queue.metrics(JOB_TYPE)).total == 0


@pytest.mark.asyncio
async def test_drain_pauses_and_reports_active_entries(context):
    await context.queue.enqueue(JOB_TYPE, payload())
    await context.queue.enqueue(JOB_TYPE, payload())
    await context.queue.claim(JOB_TYPE, "w1", lease_seconds=30)

    remaining = await context.queue.drain(JOB_TYPE, timeout=0.2, poll_interval=0.05)

    assert remaining == 1
    assert await context.queue.is_paused(JOB_TYPE)
    metrics = await context.queue.metrics(JOB_TYPE)
    assert metrics.active == 1
    assert metrics.paused == 1


@pytest.mark.asyncio
async def test_drain_of_idle_queue_is_clean(context):
    assert await context.queue.drain(JOB_TYPE, timeout=0.1) == 0


@pytest.mark.asyncio
async def test_clean_prunes_old_completed_entries(context):
    await context.queue.enqueue(JOB_TYPE, payload())
    entry = await context.queue.claim(JOB_TYPE, "w1", lease_seconds=30)
    await context.queue.complete(entry, {})

    assert await context.queue.clean(JOB_TYPE) == 0
    pruned = await context.queue.clean(JOB_TYPE, now=utcnow() + timedelta(days=2))

    assert pruned == 1
    assert await context.queue.retrieve(entry.id) is None


@pytest.mark.asyncio
async def test_transport_failure_raises_queue_unavailable():
    async def broken_uow_factory():
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    queue = JobQueue(broken_uow_factory)

    with pytest.raises(QueueUnavailableError):
        await queue.enqueue(JOB_TYPE, payload())
    with pytest.raises(QueueUnavailableError):
        await queue.metrics(JOB_TYPE)


@pytest.mark.asyncio
async def test_enqueue_timeout_raises_queue_unavailable():
    async def slow_uow_factory():
        await asyncio.sleep(1)

    queue = JobQueue(slow_uow_factory, enqueue_timeout_seconds=0.05)

    with pytest.raises(QueueUnavailableError):
        await queue.enqueue(JOB_TYPE, payload())
