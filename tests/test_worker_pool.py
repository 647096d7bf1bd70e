"""Worker pool tests: ack semantics, events, rate limit, heartbeat and stall sweep."""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest
from structlog.testing import capture_logs

from atelier.core.timezone import utcnow
from atelier.models.queue_entry import QueueEntryStatus
from atelier.services.exceptions import ContentPolicyError, ProviderUnavailableError
from atelier.services.queue.job_queue import EnqueueOptions
from atelier.workers.worker_pool import RateLimit, WorkerEvent, WorkerPool, subscribe

JOB_TYPE = "generate"


def payload():
    return {"job_id": uuid4(), "user_id": uuid4()}


def make_pool(context, handler, **kwargs) -> WorkerPool:
    kwargs.setdefault("poll_interval", 0.01)
    return WorkerPool(context, JOB_TYPE, handler, worker_id="test-worker", **kwargs)


async def wait_for_completed(context, count: int, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while (await context.queue.metrics(JOB_TYPE)).completed < count:
        assert loop.time() < deadline, "entries were not completed in time"
        await asyncio.sleep(0.02)


@pytest.mark.asyncio
async def test_process_next_on_empty_queue(context):
    async def handler(entry):
        raise AssertionError("should not run")

    assert await make_pool(context, handler).process_next() is False


@pytest.mark.asyncio
async def test_success_completes_entry_and_emits_events(context):
    events = []

    async def handler(entry):
        return {"status": "succeeded", "job_id": entry.payload["job_id"]}

    pool = make_pool(context, handler)
    pool.on(WorkerEvent.STARTED, lambda payload: events.append(("started", payload["entry"].id)))

    async def on_completed(payload):
        events.append(("completed", payload["result"]["status"]))

    pool.on("completed", on_completed)
    entry = await context.queue.enqueue(JOB_TYPE, payload())

    assert await pool.process_next() is True

    stored = await context.queue.retrieve(entry.id)
    assert stored.status == QueueEntryStatus.COMPLETED
    assert stored.result["status"] == "succeeded"
    assert events == [("started", entry.id), ("completed", "succeeded")]


@pytest.mark.asyncio
async def test_permanent_error_fails_entry(context):
    failures = []

    async def handler(entry):
        raise ContentPolicyError("Blocked for safety", reason="SAFETY")

    pool = make_pool(context, handler)
    pool.on(WorkerEvent.FAILED, lambda payload: failures.append(payload["outcome"]))
    entry = await context.queue.enqueue(JOB_TYPE, payload(), EnqueueOptions(attempts=3))

    await pool.process_next()

    stored = await context.queue.retrieve(entry.id)
    assert stored.status == QueueEntryStatus.FAILED
    assert stored.last_error == "Blocked for safety"
    assert failures[0].status == "failed"


@pytest.mark.asyncio
async def test_transient_error_delays_entry(context):
    async def handler(entry):
        raise ProviderUnavailableError("Gemini API error: 503", status_code=503)

    entry = await context.queue.enqueue(JOB_TYPE, payload(), EnqueueOptions(attempts=3))

    await make_pool(context, handler).process_next()

    stored = await context.queue.retrieve(entry.id)
    assert stored.status == QueueEntryStatus.DELAYED
    assert stored.attempts_made == 1
    assert stored.run_at > utcnow() + timedelta(seconds=50)


@pytest.mark.asyncio
async def test_unclassified_error_is_retried(context):
    async def handler(entry):
        raise ValueError("unexpected")

    entry = await context.queue.enqueue(JOB_TYPE, payload(), EnqueueOptions(attempts=3))

    await make_pool(context, handler).process_next()

    assert (await context.queue.retrieve(entry.id)).status == QueueEntryStatus.DELAYED


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_ack(context):
    async def handler(entry):
        return {"status": "succeeded"}

    def broken_listener(payload):
        raise RuntimeError("listener bug")

    pool = make_pool(context, handler)
    pool.on(WorkerEvent.COMPLETED, broken_listener)
    entry = await context.queue.enqueue(JOB_TYPE, payload())

    await pool.process_next()

    assert (await context.queue.retrieve(entry.id)).status == QueueEntryStatus.COMPLETED


@pytest.mark.asyncio
async def test_rate_limit_is_shared_by_the_pool(context):
    async def handler(entry):
        return {"status": "succeeded"}

    pool = make_pool(context, handler, rate_limit=RateLimit(max=1, duration_ms=200))
    await context.queue.enqueue(JOB_TYPE, payload())
    await context.queue.enqueue(JOB_TYPE, payload())
    loop = asyncio.get_running_loop()

    started = loop.time()
    await pool.process_next()
    await pool.process_next()

    assert loop.time() - started >= 0.18


@pytest.mark.asyncio
async def test_heartbeat_keeps_long_job_from_stalling(context):
    release = asyncio.Event()

    async def handler(entry):
        await release.wait()
        return {"status": "succeeded"}

    pool = make_pool(context, handler, lease_seconds=1)
    entry = await context.queue.enqueue(JOB_TYPE, payload())
    running = asyncio.create_task(pool.process_next())

    await asyncio.sleep(1.3)
    recovered = await pool.check_stalled()
    release.set()
    await running

    assert recovered == []
    assert (await context.queue.retrieve(entry.id)).status == QueueEntryStatus.COMPLETED


@pytest.mark.asyncio
async def test_check_stalled_emits_event(context):
    stalled = []

    async def handler(entry):
        return {}

    pool = make_pool(context, handler, max_stalled_count=1)
    pool.on(WorkerEvent.STALLED, lambda payload: stalled.append(payload["stalled"]))
    entry = await context.queue.enqueue(JOB_TYPE, payload())
    claimed = await context.queue.claim(JOB_TYPE, "crashed-worker", lease_seconds=30)
    async with await context.uow_factory() as uow:
        claimed.lease_expires_at = utcnow() - timedelta(seconds=1)
        await uow.session.merge(claimed)

    await pool.check_stalled()

    assert len(stalled) == 1
    assert stalled[0].entry_id == entry.id
    assert stalled[0].redelivered is True


@pytest.mark.asyncio
async def test_started_pool_drains_the_queue(context):
    handled = []

    async def handler(entry):
        handled.append(entry.id)
        await asyncio.sleep(0.01)
        return {"status": "succeeded"}

    for _ in range(4):
        await context.queue.enqueue(JOB_TYPE, payload())

    pool = subscribe(context, JOB_TYPE, handler, concurrency=2, poll_interval=0.01)
    try:
        assert pool.running
        await wait_for_completed(context, 4)
    finally:
        await pool.stop()

    assert len(handled) == len(set(handled)) == 4
    assert not pool.running


@pytest.mark.asyncio
async def test_failing_started_listener_is_logged_and_handler_still_runs(context):
    handled = []

    async def handler(entry):
        handled.append(entry.id)
        return {"status": "succeeded"}

    pool = make_pool(context, handler)
    pool.on(WorkerEvent.STARTED, lambda payload: 1 / 0)
    entry = await context.queue.enqueue(JOB_TYPE, payload())

    with capture_logs() as logs:
        await pool.process_next()

    assert handled == [entry.id]
    assert (await context.queue.retrieve(entry.id)).status == QueueEntryStatus.COMPLETED
    failures = [log for log in logs if log["event"] == "worker.listener.failed"]
    assert failures[0]["worker_event"] == "started"
    assert failures[0]["error_type"] == "ZeroDivisionError"


@pytest.mark.asyncio
async def test_failure_after_lost_lease_leaves_entry_to_new_owner(context):
    failures = []

    async def handler(entry):
        # The lease lapsed and another worker re-claimed the entry meanwhile
        async with await context.uow_factory() as uow:
            stored = await uow.queue_entries.get_by_id(entry.id)
            stored.lease_token = "other-worker-token"
            stored.worker_id = "other-worker"
        raise ProviderUnavailableError("Gemini API error: 503", status_code=503)

    pool = make_pool(context, handler)
    pool.on(WorkerEvent.FAILED, lambda payload: failures.append(payload))
    entry = await context.queue.enqueue(JOB_TYPE, payload(), EnqueueOptions(attempts=3))

    with capture_logs() as logs:
        await pool.process_next()

    stored = await context.queue.retrieve(entry.id)
    assert failures == []
    assert stored.status == QueueEntryStatus.ACTIVE
    assert stored.worker_id == "other-worker"
    assert stored.attempts_made == 0
    events = [log["event"] for log in logs]
    assert "worker.lease.lost" in events
    assert "worker.job.failed" not in events
