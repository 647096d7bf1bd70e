"""Generation job processor: one attempt of one job, invoked by the worker pool.

Workflow:
1. Lock the job row, start the attempt (mark_processing) and commit before any
   external call, so a crash mid-call leaves an observable processing record
2. Load input artifacts (bytes for synchronous providers, URLs for asynchronous ones)
3. Call the provider resolved at worker start:
   - Sync: upload the artifact, then persist it and mark_succeeded in one transaction
   - Async: persist the provider task id; the webhook finalizes the job later
4. On error: mark_failed (retryable per error class) and re-raise so the worker pool
   does its retry bookkeeping

Every write after the provider call re-reads the job under the per-job lock and only
applies if the job is still in the attempt this processor started. A job failed by a
stall sweep in the meantime keeps its state.
"""

import time
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError

from atelier.context import EngineContext
from atelier.models.image_asset import ImageAsset, ImageKind
from atelier.models.job import Job, JobStatus
from atelier.models.queue_entry import QueueEntry
from atelier.services.audit import AuditEvent
from atelier.services.exceptions import (
    InfrastructureError,
    JobValidationError,
    PermanentError,
    ServiceError,
)
from atelier.services.image_generation.prompt_validator import build_quilt_prompt
from atelier.services.providers.base import (
    GeneratedImage,
    GenerationRequest,
    InputImage,
    Provider,
    ProviderMode,
    provider_mode,
)
from atelier.services.storage.object_storage import make_storage_key

logger = structlog.get_logger(__name__)

MIME_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp"}


class GenerationJobProcessor:
    """Worker pool handler for generation jobs.

    Args:
        context: Engine context
        provider: Adapter resolved once at worker start (sync or async)
    """

    def __init__(self, context: EngineContext, provider: Provider):
        self.context = context
        self.provider = provider
        self.mode = provider_mode(provider)

    async def __call__(self, entry: QueueEntry) -> dict[str, Any]:
        job_id = entry.payload.get("job_id")
        if not job_id:
            raise JobValidationError(f"Queue entry {entry.id} has no job_id")
        return await self.process(UUID(job_id))

    async def process(self, job_id: UUID) -> dict[str, Any]:
        """Run one attempt of a job.

        Returns:
            Result summary stored on the queue entry

        Raises:
            ServiceError: Provider, storage or validation failure (after the job
                was marked failed)
        """
        started_attempt = await self._start_attempt(job_id)
        if isinstance(started_attempt, dict):
            return started_attempt
        job, inputs = started_attempt

        attempt = job.attempts
        log = logger.bind(job_id=str(job.id), attempt=attempt, provider=self.provider.kind.value)
        started = time.monotonic()

        try:
            request = await self._build_request(job, inputs)
            if self.mode == ProviderMode.SYNC:
                image = await self.provider.generate(request)  # type: ignore[union-attr]
                return await self._finalize(job, attempt, image, started)

            task = await self.provider.submit(request)  # type: ignore[union-attr]
            await self._attach_task(job, attempt, task.task_id, task.request)
            log.info("job.provider.submitted", task_id=task.task_id)
            return {"status": "submitted", "job_id": str(job.id), "task_id": task.task_id}

        except ServiceError as e:
            await self._record_failure(job, attempt, e)
            raise
        except (SQLAlchemyError, OSError) as e:
            error = InfrastructureError(f"Infrastructure failure: {e}")
            await self._record_failure(job, attempt, error)
            raise error from e
        except Exception as e:
            # Unexpected errors are permanent to avoid retrying a bug
            error = PermanentError(f"Unexpected error: {e}")
            log.error(
                "job.processing.unexpected_error", error_type=type(e).__name__, exc_info=True
            )
            await self._record_failure(job, attempt, error)
            raise error from e

    async def _start_attempt(
        self, job_id: UUID
    ) -> tuple[Job, list[ImageAsset]] | dict[str, Any]:
        """Move the job into processing and commit.

        Returns:
            (job, input assets), or a skip summary when there is nothing to run
        """
        async with self.context.locks.hold(job_id):
            async with await self.context.uow_factory() as uow:
                job = await uow.jobs.get_by_id_for_update(job_id)
                if job is None:
                    raise JobValidationError(f"Job {job_id} not found")

                if job.awaiting_callback:
                    logger.info(
                        "job.processing.skipped", job_id=str(job_id), reason="awaiting_callback"
                    )
                    return {"status": "awaiting_callback", "job_id": str(job_id)}

                if job.status == JobStatus.PROCESSING:
                    # Redelivery of an attempt whose worker vanished
                    job.mark_failed(
                        "Previous attempt was abandoned",
                        details={"category": "stalled"},
                        base_delay_ms=self.context.settings.retry_base_delay_ms,
                    )
                    logger.warning(
                        "job.attempt.abandoned", job_id=str(job_id), attempt=job.attempts
                    )

                if job.status in (JobStatus.SUCCEEDED, JobStatus.CANCELLED) or (
                    job.status == JobStatus.FAILED and (not job.can_retry or job.retry_at is None)
                ):
                    logger.info(
                        "job.processing.skipped", job_id=str(job_id), status=job.status.value
                    )
                    return {
                        "status": "skipped",
                        "job_id": str(job_id),
                        "job_status": job.status.value,
                    }

                job.mark_processing()
                inputs = await uow.images.get_many([UUID(str(i)) for i in job.input_image_ids])

        logger.info(
            "job.processing.started",
            job_id=str(job.id),
            attempt=job.attempts,
            max_attempts=job.max_attempts,
            queue_time_ms=job.queue_time,
        )
        return job, inputs

    async def _build_request(self, job: Job, inputs: list[ImageAsset]) -> GenerationRequest:
        if len(inputs) != len(job.input_image_ids):
            raise JobValidationError(f"Input images for job {job.id} are missing")

        images = []
        for asset in inputs:
            if self.mode == ProviderMode.SYNC:
                data = await self.context.storage.get_object(asset.storage_key)
                images.append(InputImage(asset_id=asset.id, mime_type=asset.mime_type, data=data))
            else:
                url = await self.context.storage.get_download_url(asset.storage_key, 3600)
                images.append(InputImage(asset_id=asset.id, mime_type=asset.mime_type, url=url))

        prompt = job.prompt or self.context.settings.generation_prompt
        if job.job_type == "quilt-design":
            prompt = build_quilt_prompt(prompt, job.options or {})

        return GenerationRequest(
            job_id=job.id,
            user_id=job.user_id,
            job_type=job.job_type,
            prompt=prompt,
            images=images,
            options=job.options or {},
        )

    async def _finalize(
        self, job: Job, attempt: int, image: GeneratedImage, started: float
    ) -> dict[str, Any]:
        """Store the artifact, then record it and mark the job succeeded together."""
        extension = MIME_EXTENSIONS.get(image.mime_type, "bin")
        key = make_storage_key("outputs", f"output-{job.id}.{extension}", job.user_id)
        await self.context.storage.put_object(image.data, key, image.mime_type)
        url = await self.context.storage.get_download_url(key, 86400)
        duration_ms = int((time.monotonic() - started) * 1000)

        async with self.context.locks.hold(job.id):
            async with await self.context.uow_factory() as uow:
                locked = await uow.jobs.get_by_id_for_update(job.id)
                if locked is None or not self._same_attempt(locked, attempt):
                    logger.info(
                        "job.completion.duplicate",
                        job_id=str(job.id),
                        attempt=attempt,
                        source="worker",
                        orphaned_key=key,
                    )
                    return {"status": "duplicate", "job_id": str(job.id)}

                asset = await uow.images.add(
                    ImageAsset(
                        kind=ImageKind.OUTPUT,
                        user_id=locked.user_id,
                        job_id=locked.id,
                        storage_key=key,
                        url=url,
                        mime_type=image.mime_type,
                        size_bytes=image.size_bytes,
                        details={
                            "prompt": locked.prompt,
                            "options": locked.options,
                            "model": image.model,
                            "provider": self.provider.kind.value,
                            "processing_time": duration_ms,
                        },
                    )
                )
                locked.mark_succeeded(asset.id, processing_time_ms=duration_ms)

        logger.info(
            "job.succeeded",
            job_id=str(job.id),
            attempt=attempt,
            output_image_id=str(asset.id),
            size_bytes=image.size_bytes,
            processing_time_ms=duration_ms,
            source="worker",
        )
        await self.context.thumbnails.run(asset, image.data)
        await self.context.audit.record(
            AuditEvent(
                action="job_completed",
                user_id=job.user_id,
                resource_id=str(job.id),
                details={
                    "output_image_id": str(asset.id),
                    "processing_time": duration_ms,
                    "provider": self.provider.kind.value,
                },
            )
        )
        return {"status": "succeeded", "job_id": str(job.id), "output_image_id": str(asset.id)}

    async def _attach_task(
        self, job: Job, attempt: int, task_id: str, request: dict[str, Any]
    ) -> None:
        async with self.context.locks.hold(job.id):
            async with await self.context.uow_factory() as uow:
                locked = await uow.jobs.get_by_id_for_update(job.id)
                if locked is None or not self._same_attempt(locked, attempt):
                    logger.warning(
                        "job.provider.task_orphaned", job_id=str(job.id), task_id=task_id
                    )
                    return
                locked.attach_provider_task(task_id, request)

    async def _record_failure(self, job: Job, attempt: int, error: ServiceError) -> None:
        async with self.context.locks.hold(job.id):
            async with await self.context.uow_factory() as uow:
                locked = await uow.jobs.get_by_id_for_update(job.id)
                if locked is None or not self._same_attempt(locked, attempt):
                    logger.info(
                        "job.completion.duplicate",
                        job_id=str(job.id),
                        attempt=attempt,
                        source="worker",
                    )
                    return
                locked.mark_failed(
                    str(error),
                    details=error.to_details(),
                    retryable=error.retryable,
                    base_delay_ms=self.context.settings.retry_base_delay_ms,
                )
                retry_at = locked.retry_at

        logger.warning(
            "job.failed",
            job_id=str(job.id),
            attempt=attempt,
            error_type=type(error).__name__,
            error=str(error),
            retryable=error.retryable,
            retry_at=retry_at.isoformat() if retry_at else None,
            source="worker",
        )
        await self.context.audit.record(
            AuditEvent(
                action="job_failed",
                user_id=job.user_id,
                resource_id=str(job.id),
                details={
                    "error": str(error),
                    "category": error.category,
                    "attempt": attempt,
                    "will_retry": retry_at is not None,
                },
                is_success=False,
            )
        )

    @staticmethod
    def _same_attempt(job: Job, attempt: int) -> bool:
        return job.status == JobStatus.PROCESSING and job.attempts == attempt
