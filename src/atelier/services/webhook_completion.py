"""Completion of asynchronous provider jobs through inbound callbacks.

Callbacks are keyed by the provider's task id, may arrive zero, one or many times,
and can race with a reconciliation sweep failing the same job. Every write happens
under the per-job lock plus a row lock, after re-reading the job, so exactly one
terminal transition wins and the other is reported as a duplicate.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import structlog

from atelier.context import EngineContext
from atelier.models.image_asset import ImageAsset, ImageKind
from atelier.models.job import Job, JobStatus
from atelier.services.audit import AuditEvent
from atelier.services.exceptions import MalformedResponseError, ServiceError
from atelier.services.storage.downloads import fetch_bytes
from atelier.services.storage.object_storage import make_storage_key

logger = structlog.get_logger(__name__)

SUCCESS_CODES = frozenset({200, "200", "success", "succeeded", "completed"})


class CallbackParseError(ValueError):
    """Callback body cannot be interpreted (no task id)."""

    pass


class CompletionResult(str, Enum):
    """What a callback did to the job store."""

    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class CallbackOutcome:
    """Normalized provider callback."""

    task_id: str
    success: bool
    output_url: Optional[str] = None
    error: Optional[str] = None
    code: Any = None
    raw: dict = field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        """Provider failures with a 4xx code are request or content rejections."""
        try:
            code = int(self.code)
        except (TypeError, ValueError):
            return True
        return not 400 <= code < 500


def _first_url(data: dict) -> Optional[str]:
    info = data.get("info") if isinstance(data.get("info"), dict) else {}
    for candidate in (
        info.get("resultImageUrl"),
        data.get("resultImageUrl"),
        data.get("outputUrl"),
        data.get("imageUrl"),
    ):
        if isinstance(candidate, str) and candidate:
            return candidate
    urls = data.get("resultUrls") or info.get("resultUrls")
    if isinstance(urls, list) and urls and isinstance(urls[0], str):
        return urls[0]
    return None


def parse_callback(body: Any) -> CallbackOutcome:
    """Normalize a ``{taskId, code, data|error}`` callback body.

    The task id is read from ``taskId`` or ``data.taskId``.

    Raises:
        CallbackParseError: If the body is not an object or carries no task id
    """
    if not isinstance(body, dict):
        raise CallbackParseError("Callback body must be a JSON object")

    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    task_id = body.get("taskId") or data.get("taskId")
    if not task_id:
        raise CallbackParseError("Callback body has no taskId")

    code = body.get("code", body.get("status"))
    success_flag = data.get("successFlag")
    success = code in SUCCESS_CODES if success_flag is None else success_flag == 1

    error = body.get("error")
    if isinstance(error, dict):
        error = error.get("message") or error.get("msg")
    if not success and not error:
        error = data.get("errorMessage") or body.get("msg") or "External service failed"

    return CallbackOutcome(
        task_id=str(task_id),
        success=success,
        output_url=_first_url(data) or body.get("outputUrl"),
        error=error if isinstance(error, str) else str(error) if error else None,
        code=code,
        raw=body,
    )


class WebhookCompletionHandler:
    """Reconcile provider callbacks with pending jobs."""

    def __init__(self, context: EngineContext):
        self.context = context

    async def on_callback(
        self, provider_task_id: str, outcome: CallbackOutcome
    ) -> CompletionResult:
        """Apply a provider callback to the job it refers to.

        Args:
            provider_task_id: Provider's task handle
            outcome: Normalized callback

        Returns:
            IGNORED for unknown tasks, DUPLICATE for jobs already terminal (or
            superseded by a newer attempt), otherwise the terminal state reached
        """
        log = logger.bind(task_id=provider_task_id)

        async with await self.context.uow_factory() as uow:
            job = await uow.jobs.get_by_provider_task_id(provider_task_id)

        if job is None:
            log.warning("webhook.callback.orphaned")
            return CompletionResult.IGNORED

        log = log.bind(job_id=str(job.id))
        if job.status != JobStatus.PROCESSING:
            log.info("job.completion.duplicate", status=job.status.value, source="webhook")
            return CompletionResult.DUPLICATE

        if not outcome.success:
            return await self._fail(
                job,
                provider_task_id,
                outcome.error or "External service failed",
                {"source": "webhook", "provider_code": outcome.code},
                retryable=outcome.retryable,
            )

        if not outcome.output_url:
            error = MalformedResponseError(
                "Provider reported success without an output URL", {"keys": sorted(outcome.raw)}
            )
            log.error("webhook.callback.malformed", response_shape=error.response_shape)
            return await self._fail(
                job, provider_task_id, str(error), error.to_details(), retryable=True
            )

        # Slow I/O happens outside the job lock
        try:
            data, mime_type = await fetch_bytes(
                self.context.http_client,
                outcome.output_url,
                timeout=self.context.settings.download_timeout_seconds,
            )
            if not mime_type.startswith("image/"):
                mime_type = "image/jpeg"
            key = make_storage_key("outputs", f"output-{job.id}.jpg", job.user_id)
            await self.context.storage.put_object(data, key, mime_type)
            url = await self.context.storage.get_download_url(key, 86400)
        except ServiceError as e:
            log.error("webhook.artifact.failed", error=str(e), error_type=type(e).__name__)
            return await self._fail(
                job,
                provider_task_id,
                f"Failed to process generated image: {e}",
                e.to_details(),
                retryable=e.retryable,
            )

        return await self._succeed(job, provider_task_id, outcome, data, key, url, mime_type)

    async def _succeed(
        self,
        job: Job,
        provider_task_id: str,
        outcome: CallbackOutcome,
        data: bytes,
        key: str,
        url: str,
        mime_type: str,
    ) -> CompletionResult:
        async with self.context.locks.hold(job.id):
            async with await self.context.uow_factory() as uow:
                locked = await uow.jobs.get_by_id_for_update(job.id)
                if locked is None or not self._still_pending(locked, provider_task_id):
                    logger.info(
                        "job.completion.duplicate",
                        job_id=str(job.id),
                        task_id=provider_task_id,
                        source="webhook",
                        orphaned_key=key,
                    )
                    return CompletionResult.DUPLICATE

                asset = await uow.images.add(
                    ImageAsset(
                        kind=ImageKind.OUTPUT,
                        user_id=locked.user_id,
                        job_id=locked.id,
                        storage_key=key,
                        url=url,
                        mime_type=mime_type,
                        size_bytes=len(data),
                        provider_task_id=provider_task_id,
                        details={
                            "source_url": outcome.output_url,
                            "prompt": locked.prompt,
                            "provider": locked.provider,
                        },
                    )
                )
                locked.mark_succeeded(asset.id)
                processing_time = locked.processing_time
                user_id = locked.user_id

        logger.info(
            "job.succeeded",
            job_id=str(job.id),
            task_id=provider_task_id,
            output_image_id=str(asset.id),
            processing_time_ms=processing_time,
            source="webhook",
        )
        await self.context.thumbnails.run(asset, data)
        await self.context.audit.record(
            AuditEvent(
                action="webhook_received",
                user_id=user_id,
                resource_id=str(job.id),
                details={
                    "status": "succeeded",
                    "output_url": outcome.output_url,
                    "processing_time": processing_time,
                },
            )
        )
        return CompletionResult.SUCCEEDED

    async def _fail(
        self,
        job: Job,
        provider_task_id: str,
        message: str,
        details: dict,
        retryable: bool,
    ) -> CompletionResult:
        async with self.context.locks.hold(job.id):
            async with await self.context.uow_factory() as uow:
                locked = await uow.jobs.get_by_id_for_update(job.id)
                if locked is None or not self._still_pending(locked, provider_task_id):
                    logger.info(
                        "job.completion.duplicate",
                        job_id=str(job.id),
                        task_id=provider_task_id,
                        source="webhook",
                    )
                    return CompletionResult.DUPLICATE
                locked.mark_failed(
                    message,
                    details=details,
                    retryable=retryable,
                    base_delay_ms=self.context.settings.retry_base_delay_ms,
                )
                retry_at = locked.retry_at
                user_id = locked.user_id

        logger.warning(
            "job.failed",
            job_id=str(job.id),
            task_id=provider_task_id,
            error=message,
            retry_at=retry_at.isoformat() if retry_at else None,
            source="webhook",
        )
        await self.context.audit.record(
            AuditEvent(
                action="webhook_received",
                user_id=user_id,
                resource_id=str(job.id),
                details={"status": "failed", "error": message},
                is_success=False,
            )
        )
        return CompletionResult.FAILED

    @staticmethod
    def _still_pending(job: Job, provider_task_id: str) -> bool:
        return job.status == JobStatus.PROCESSING and job.provider_task_id == provider_task_id
