"""Reconciliation sweep tests: stalled entries, stuck jobs, due retries and cleanup."""

import asyncio
from datetime import timedelta
from uuid import uuid4

import httpx
import pytest
from conftest import PNG_BYTES, FakeAsyncProvider, FakeSyncProvider

from atelier.core.timezone import utcnow
from atelier.models.job import JobStatus
from atelier.models.queue_entry import QueueEntryStatus
from atelier.services.exceptions import ProviderUnavailableError
from atelier.services.job_service import create_generation_job, get_job
from atelier.services.queue.job_queue import StalledEntry
from atelier.services.webhook_completion import (
    CompletionResult,
    WebhookCompletionHandler,
    parse_callback,
)
from atelier.workers.job_processor import GenerationJobProcessor
from atelier.workers.reconciliation import (
    cleanup_old_jobs,
    fail_stuck_processing,
    handle_stalled_entry,
    reconcile_once,
    requeue_due_retries,
    stalled_listener,
)
from atelier.workers.worker_pool import WorkerEvent, WorkerPool


@pytest.fixture
def new_job(context, input_images, user_id):
    async def _create():
        assets = await input_images(user_id)
        return await create_generation_job(
            context, user_id, input_image_ids=[asset.id for asset in assets]
        )

    return _create


async def update_job(context, job_id, **values):
    async with await context.uow_factory() as uow:
        job = await uow.jobs.get_by_id_for_update(job_id)
        for name, value in values.items():
            setattr(job, name, value)


async def open_entry(context, job):
    async with await context.uow_factory() as uow:
        return await uow.queue_entries.get_open_for_job(job.job_type, job.id)


async def crash_worker_on(context, job, stalled_limit=1):
    """Claim the job's entry, start the attempt, then let the lease expire unheld."""
    pool = WorkerPool(context, job.job_type, handler=None, max_stalled_count=stalled_limit)
    pool.on(WorkerEvent.STALLED, stalled_listener(context))
    claimed = await context.queue.claim(job.job_type, "crashed-worker", lease_seconds=30)
    async with await context.uow_factory() as uow:
        locked = await uow.jobs.get_by_id_for_update(job.id)
        locked.mark_processing()
        claimed.lease_expires_at = utcnow() - timedelta(seconds=1)
        await uow.session.merge(claimed)
    return pool


@pytest.mark.asyncio
async def test_stalled_entry_fails_job_with_retry(context, new_job):
    job = await new_job()
    pool = await crash_worker_on(context, job)

    recovered = await pool.check_stalled()

    assert len(recovered) == 1
    stored = await get_job(context, job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "Worker stalled while processing"
    assert stored.error_details["worker_id"] == "crashed-worker"
    assert stored.retry_at is not None


@pytest.mark.asyncio
async def test_stalled_too_often_fails_job_for_good(context, new_job):
    job = await new_job()
    pool = await crash_worker_on(context, job, stalled_limit=0)

    await pool.check_stalled()

    stored = await get_job(context, job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.retry_at is None


@pytest.mark.asyncio
async def test_stalled_entry_leaves_callback_jobs_alone(context, new_job):
    job = await new_job()
    pool = await crash_worker_on(context, job)
    await update_job(context, job.id, provider_task_id="task-1")

    await pool.check_stalled()

    assert (await get_job(context, job.id)).status == JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_stuck_processing_job_is_failed(context, new_job):
    job = await new_job()
    await GenerationJobProcessor(context, FakeAsyncProvider()).process(job.id)
    await update_job(context, job.id, started_at=utcnow() - timedelta(hours=2))

    assert await fail_stuck_processing(context, max_age_seconds=3600) == 1

    stored = await get_job(context, job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "Job timed out waiting for completion"
    assert stored.error_details["category"] == "timeout"
    assert stored.retry_at is not None


@pytest.mark.asyncio
async def test_recent_processing_job_is_kept(context, new_job):
    job = await new_job()
    await GenerationJobProcessor(context, FakeAsyncProvider()).process(job.id)

    assert await fail_stuck_processing(context, max_age_seconds=3600) == 0
    assert (await get_job(context, job.id)).status == JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_due_retry_without_entry_is_requeued_once(context, new_job):
    job = await new_job()
    await context.queue.remove_pending(job.id)
    with pytest.raises(ProviderUnavailableError):
        await GenerationJobProcessor(
            context, FakeSyncProvider(error=ProviderUnavailableError("busy", 503))
        ).process(job.id)
    await update_job(context, job.id, retry_at=utcnow() - timedelta(seconds=1))

    assert await requeue_due_retries(context) == 1
    entry = await open_entry(context, job)
    assert entry is not None
    assert entry.status == QueueEntryStatus.WAITING

    assert await requeue_due_retries(context) == 0


@pytest.mark.asyncio
async def test_future_retry_is_not_requeued(context, new_job):
    job = await new_job()
    await context.queue.remove_pending(job.id)
    await update_job(
        context,
        job.id,
        status=JobStatus.FAILED,
        attempts=1,
        retry_at=utcnow() + timedelta(minutes=5),
    )

    assert await requeue_due_retries(context) == 0


@pytest.mark.asyncio
async def test_cleanup_deletes_only_old_terminal_jobs(context, new_job):
    old = await new_job()
    recent = await new_job()
    for job in (old, recent):
        await context.queue.remove_pending(job.id)
        await update_job(context, job.id, status=JobStatus.CANCELLED, completed_at=utcnow())
    await update_job(context, old.id, completed_at=utcnow() - timedelta(days=40))

    assert await cleanup_old_jobs(context, retention_days=30) == 1

    assert await get_job(context, old.id) is None
    assert await get_job(context, recent.id) is not None


@pytest.mark.asyncio
async def test_reconcile_once_reports_every_sweep(context, new_job):
    job = await new_job()
    await GenerationJobProcessor(context, FakeAsyncProvider()).process(job.id)
    await update_job(context, job.id, started_at=utcnow() - timedelta(days=1))

    report = await reconcile_once(context)

    assert report.stuck_failed == 1
    assert report.retries_requeued == 0
    assert report.jobs_deleted == 0


# Sweeps racing a provider callback

RESULT_URL = "https://cdn.nanobanana.test/result.png"


@pytest.fixture
def awaiting_job(context, new_job, http_routes):
    """A job handed to the asynchronous provider as "task-1", its result downloadable."""
    http_routes[("GET", RESULT_URL)] = httpx.Response(
        200, content=PNG_BYTES, headers={"content-type": "image/png"}
    )

    async def _submit():
        job = await new_job()
        await GenerationJobProcessor(context, FakeAsyncProvider()).process(job.id)
        return job

    return _submit


def success_callback():
    return parse_callback(
        {
            "taskId": "task-1",
            "code": 200,
            "data": {"successFlag": 1, "info": {"resultImageUrl": RESULT_URL}},
        }
    )


async def assert_single_terminal_state(context, job_id):
    stored = await get_job(context, job_id)
    async with await context.uow_factory() as uow:
        outputs = await uow.images.get_outputs_for_job(job_id)
    if stored.status == JobStatus.SUCCEEDED:
        assert [output.id for output in outputs] == [stored.output_image_id]
        assert stored.error is None
    else:
        assert stored.status == JobStatus.FAILED
        assert stored.output_image_id is None
        assert outputs == []
    return stored


@pytest.mark.asyncio
async def test_stuck_sweep_racing_success_callback(context, awaiting_job):
    job = await awaiting_job()
    await update_job(context, job.id, started_at=utcnow() - timedelta(hours=2))
    handler = WebhookCompletionHandler(context)

    failed_count, result = await asyncio.gather(
        fail_stuck_processing(context, max_age_seconds=3600),
        handler.on_callback("task-1", success_callback()),
    )

    stored = await assert_single_terminal_state(context, job.id)
    if stored.status == JobStatus.SUCCEEDED:
        assert result == CompletionResult.SUCCEEDED
        assert failed_count == 0
    else:
        assert result != CompletionResult.SUCCEEDED
        assert failed_count == 1


@pytest.mark.asyncio
async def test_stalled_sweep_racing_success_callback(context, awaiting_job):
    job = await awaiting_job()
    stalled = StalledEntry(
        entry_id=uuid4(),
        job_id=job.id,
        worker_id="crashed-worker",
        redelivered=False,
        stalled_count=1,
    )
    handler = WebhookCompletionHandler(context)

    marked_failed, result = await asyncio.gather(
        handle_stalled_entry(context, stalled),
        handler.on_callback("task-1", success_callback()),
    )

    stored = await assert_single_terminal_state(context, job.id)
    assert marked_failed is False
    assert result == CompletionResult.SUCCEEDED
    assert stored.status == JobStatus.SUCCEEDED
