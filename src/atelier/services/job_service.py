"""Job submission and management operations used by the HTTP layer and the CLI."""

from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError

from atelier.context import EngineContext
from atelier.models.image_asset import ImageKind
from atelier.models.job import Job
from atelier.services.audit import AuditEvent
from atelier.services.exceptions import JobValidationError, QueueUnavailableError
from atelier.services.image_generation.prompt_validator import validate_prompt
from atelier.services.queue.backoff import BackoffPolicy, BackoffType
from atelier.services.queue.job_queue import EnqueueOptions

logger = structlog.get_logger(__name__)

JOB_TYPE_GENERATE = "generate"
JOB_TYPE_QUILT_DESIGN = "quilt-design"
JOB_TYPES = (JOB_TYPE_GENERATE, JOB_TYPE_QUILT_DESIGN)

# Number of input images each job type consumes
REQUIRED_INPUTS = {JOB_TYPE_GENERATE: 2, JOB_TYPE_QUILT_DESIGN: 0}


def enqueue_options_for(context: EngineContext, job: Job) -> EnqueueOptions:
    """Queue delivery options matching the job's own retry budget."""
    return EnqueueOptions(
        attempts=job.max_attempts,
        backoff=BackoffPolicy(
            type=BackoffType.EXPONENTIAL, delay_ms=context.settings.retry_base_delay_ms
        ),
        priority=job.priority,
    )


async def enqueue_job(context: EngineContext, job: Job) -> None:
    """Hand a persisted job to its queue."""
    await context.queue.enqueue(
        job.job_type,
        {"job_id": job.id, "user_id": job.user_id},
        enqueue_options_for(context, job),
    )


async def create_generation_job(
    context: EngineContext,
    user_id: UUID,
    job_type: str = JOB_TYPE_GENERATE,
    input_image_ids: Optional[list[UUID]] = None,
    prompt: Optional[str] = None,
    options: Optional[dict[str, Any]] = None,
    priority: int = 5,
    provider: Optional[str] = None,
) -> Job:
    """Validate inputs, persist a queued job and hand it to the queue.

    Args:
        context: Engine context
        user_id: Owning user
        job_type: "generate" (two input images) or "quilt-design" (text only)
        input_image_ids: Input asset ids owned by the user
        prompt: Free-text prompt (defaults to GENERATION_PROMPT for "generate")
        options: Structured options (strength, style, seed, ...)
        priority: 1 (most urgent) to 10
        provider: Provider kind name (defaults to WORKER_PROVIDER)

    Returns:
        The persisted job

    Raises:
        JobValidationError: Unknown job type, missing or foreign inputs, invalid prompt
        QueueUnavailableError: Job persisted but the queue transport is down; the job is
            marked failed with a retry time so the requeue sweep picks it up
    """
    settings = context.settings
    if job_type not in JOB_TYPES:
        raise JobValidationError(f"Unknown job type: {job_type}")
    if not 1 <= priority <= 10:
        raise JobValidationError(f"Priority must be between 1 and 10 (got {priority})")

    input_image_ids = list(input_image_ids or [])
    if len(input_image_ids) != REQUIRED_INPUTS[job_type]:
        raise JobValidationError(
            f"{job_type} jobs need {REQUIRED_INPUTS[job_type]} input images "
            f"(got {len(input_image_ids)})"
        )

    if job_type == JOB_TYPE_GENERATE:
        prompt = prompt or settings.generation_prompt
    try:
        prompt = validate_prompt(prompt or "")
    except ValueError as e:
        raise JobValidationError(str(e)) from e

    async with await context.uow_factory() as uow:
        inputs = await uow.images.get_many(input_image_ids)
        if len(inputs) != len(input_image_ids) or any(
            asset.user_id != user_id or asset.kind != ImageKind.INPUT for asset in inputs
        ):
            raise JobValidationError("Input images not found or not owned by user")

        job = await uow.jobs.add(
            Job(
                user_id=user_id,
                job_type=job_type,
                provider=provider or settings.worker_provider,
                input_image_ids=[str(asset_id) for asset_id in input_image_ids],
                prompt=prompt,
                options=options or {},
                priority=priority,
                max_attempts=settings.max_attempts,
            )
        )

    try:
        await enqueue_job(context, job)
    except QueueUnavailableError as e:
        try:
            async with context.locks.hold(job.id):
                async with await context.uow_factory() as uow:
                    locked = await uow.jobs.get_by_id_for_update(job.id)
                    if locked is not None:
                        locked.mark_failed(
                            "Queue unavailable at submission",
                            details=e.to_details(),
                            base_delay_ms=settings.retry_base_delay_ms,
                        )
        except (SQLAlchemyError, OSError) as db_error:
            logger.error("job.enqueue.mark_failed_error", job_id=str(job.id), error=str(db_error))
        logger.error("job.enqueue.failed", job_id=str(job.id), error=str(e))
        raise

    logger.info(
        "job.created",
        job_id=str(job.id),
        user_id=str(user_id),
        job_type=job_type,
        provider=job.provider,
        priority=priority,
    )
    await context.audit.record(
        AuditEvent(
            action="job_created",
            user_id=user_id,
            resource_id=str(job.id),
            details={"job_type": job_type, "provider": job.provider, "priority": priority},
        )
    )
    return job


async def get_job(context: EngineContext, job_id: UUID) -> Optional[Job]:
    async with await context.uow_factory() as uow:
        return await uow.jobs.get_by_id(job_id)


async def cancel_job(context: EngineContext, job_id: UUID, user_id: Optional[UUID] = None) -> bool:
    """Cancel a job that has not been dispatched yet.

    Args:
        context: Engine context
        job_id: Job to cancel
        user_id: If given, only the owner may cancel

    Returns:
        True if the job was cancelled, False if it was not queued (or not found)
    """
    async with context.locks.hold(job_id):
        async with await context.uow_factory() as uow:
            job = await uow.jobs.get_by_id_for_update(job_id)
            if job is None or (user_id is not None and job.user_id != user_id):
                return False
            cancelled = job.cancel()

    if not cancelled:
        logger.info("job.cancel.rejected", job_id=str(job_id), status=job.status.value)
        return False

    await context.queue.remove_pending(job_id)
    logger.info("job.cancelled", job_id=str(job_id))
    await context.audit.record(
        AuditEvent(action="job_cancelled", user_id=job.user_id, resource_id=str(job_id))
    )
    return True


async def get_user_stats(context: EngineContext, user_id: UUID) -> dict:
    """Aggregate job counts, average processing time and success rate for a user."""
    async with await context.uow_factory() as uow:
        return await uow.jobs.stats_by_user(user_id)


async def retry_job(context: EngineContext, job_id: UUID) -> Job:
    """Manually re-queue a failed job with a fresh attempt budget.

    Raises:
        JobValidationError: If the job does not exist
        InvalidStateTransition: If the job is not failed
        QueueUnavailableError: If the queue transport is down
    """
    async with context.locks.hold(job_id):
        async with await context.uow_factory() as uow:
            job = await uow.jobs.get_by_id_for_update(job_id)
            if job is None:
                raise JobValidationError(f"Job {job_id} not found")
            job.reset_for_retry()

    await enqueue_job(context, job)
    logger.info("job.retry.requeued", job_id=str(job_id), job_type=job.job_type)
    return job

