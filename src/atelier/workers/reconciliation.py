"""Reconciliation sweeps that heal jobs the normal flow left behind.

- Stalled queue entries: the job of an entry whose lease expired is marked failed
  (retryable only if the queue re-delivers the entry)
- Stuck jobs: processing longer than PROCESSING_MAX_AGE_SECONDS (e.g. an async
  provider that never called back) are marked failed with a retry time
- Due retries: failed jobs whose retry_at has passed and that have no open queue
  entry are re-enqueued
- Cleanup: terminal jobs older than JOB_RETENTION_DAYS are deleted
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Optional
from uuid import UUID

import structlog

from atelier.context import EngineContext
from atelier.core.timezone import utcnow
from atelier.models.job import Job, JobStatus
from atelier.services.exceptions import QueueUnavailableError
from atelier.services.job_service import enqueue_job
from atelier.services.queue.job_queue import StalledEntry

logger = structlog.get_logger(__name__)

ERROR_BACKOFF_SECONDS = 5


@dataclass
class ReconciliationReport:
    """Counts from one reconciliation pass."""

    stuck_failed: int = 0
    retries_requeued: int = 0
    jobs_deleted: int = 0


async def _fail_job(
    context: EngineContext,
    job_id: UUID,
    message: str,
    retryable: bool,
    still_applies: Callable[[Job], bool],
    details: dict[str, Any],
) -> bool:
    async with context.locks.hold(job_id):
        async with await context.uow_factory() as uow:
            job = await uow.jobs.get_by_id_for_update(job_id)
            if job is None or not still_applies(job):
                return False
            job.mark_failed(
                message,
                details=details,
                retryable=retryable,
                base_delay_ms=context.settings.retry_base_delay_ms,
            )
            retry_at = job.retry_at

    logger.warning(
        "job.failed",
        job_id=str(job_id),
        error=message,
        retry_at=retry_at.isoformat() if retry_at else None,
        source="reconciliation",
    )
    return True


async def handle_stalled_entry(context: EngineContext, stalled: StalledEntry) -> bool:
    """Fail the job of a stalled queue entry.

    Jobs already handed to an asynchronous provider are left to the callback or the
    stuck-job sweep.

    Returns:
        True if the job was marked failed
    """
    if stalled.job_id is None:
        return False
    return await _fail_job(
        context,
        stalled.job_id,
        "Worker stalled while processing",
        retryable=stalled.redelivered,
        still_applies=lambda job: job.status == JobStatus.PROCESSING
        and not job.awaiting_callback,
        details={
            "category": "stalled",
            "worker_id": stalled.worker_id,
            "stalled_count": stalled.stalled_count,
        },
    )


def stalled_listener(context: EngineContext) -> Callable[[dict[str, Any]], Any]:
    """Worker pool listener for ``stalled`` events."""

    async def on_stalled(payload: dict[str, Any]) -> None:
        await handle_stalled_entry(context, payload["stalled"])

    return on_stalled


async def fail_stuck_processing(
    context: EngineContext, max_age_seconds: Optional[int] = None
) -> int:
    """Fail jobs left processing for longer than ``max_age_seconds``.

    Returns:
        Number of jobs marked failed
    """
    max_age = max_age_seconds or context.settings.processing_max_age_seconds
    cutoff = utcnow() - timedelta(seconds=max_age)
    async with await context.uow_factory() as uow:
        stuck_ids = [job.id for job in await uow.jobs.get_stuck_processing(cutoff)]

    failed = 0
    for job_id in stuck_ids:
        if await _fail_job(
            context,
            job_id,
            "Job timed out waiting for completion",
            retryable=True,
            still_applies=lambda job: job.status == JobStatus.PROCESSING
            and job.started_at is not None
            and job.started_at < cutoff,
            details={"category": "timeout", "max_age_seconds": max_age},
        ):
            failed += 1

    if failed:
        logger.info("reconcile.stuck_failed", count=failed, max_age_seconds=max_age)
    return failed


async def requeue_due_retries(context: EngineContext) -> int:
    """Re-enqueue failed jobs whose retry time has come and that nothing is delivering.

    Returns:
        Number of jobs handed back to the queue
    """
    due: list[Job] = []
    async with await context.uow_factory() as uow:
        for job in await uow.jobs.get_due_retries(utcnow()):
            if not job.can_retry:
                continue
            if await uow.queue_entries.get_open_for_job(job.job_type, job.id) is None:
                due.append(job)

    requeued = 0
    for job in due:
        try:
            await enqueue_job(context, job)
        except QueueUnavailableError as e:
            logger.error("reconcile.requeue.failed", job_id=str(job.id), error=str(e))
            break
        requeued += 1
        logger.info(
            "job.retry.requeued", job_id=str(job.id), attempts=job.attempts, source="reconciliation"
        )
    return requeued


async def cleanup_old_jobs(context: EngineContext, retention_days: Optional[int] = None) -> int:
    """Delete terminal jobs completed more than ``retention_days`` ago.

    Returns:
        Number of deleted jobs
    """
    days = retention_days or context.settings.job_retention_days
    async with await context.uow_factory() as uow:
        deleted = await uow.jobs.delete_terminal_before(utcnow() - timedelta(days=days))
    if deleted:
        logger.info("reconcile.jobs_deleted", count=deleted, retention_days=days)
    return deleted


async def reconcile_once(context: EngineContext) -> ReconciliationReport:
    """Run every sweep once."""
    report = ReconciliationReport(
        stuck_failed=await fail_stuck_processing(context),
        retries_requeued=await requeue_due_retries(context),
        jobs_deleted=await cleanup_old_jobs(context),
    )
    logger.debug(
        "reconcile.completed",
        stuck_failed=report.stuck_failed,
        retries_requeued=report.retries_requeued,
        jobs_deleted=report.jobs_deleted,
    )
    return report


async def run_reconciliation(context: EngineContext, interval: Optional[float] = None) -> None:
    """Run the sweeps every RECONCILE_INTERVAL_SECONDS until cancelled."""
    interval = interval or context.settings.reconcile_interval_seconds
    logger.info("reconcile.started", interval=interval)
    try:
        while True:
            try:
                await reconcile_once(context)
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "reconcile.error",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)
    except asyncio.CancelledError:
        logger.info("reconcile.stopped")
        raise
