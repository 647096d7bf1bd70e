"""Job entity - Generation job with lifecycle status tracking."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from atelier.core.timezone import UTCDateTime, elapsed_ms, utcnow
from atelier.services.queue.backoff import backoff_delay_ms

MAX_ERROR_LENGTH = 2000


class JobStatus(str, Enum):
    """Job lifecycle status."""

    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED})


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job state transition."""

    pass


class Job(SQLModel, table=True):
    """Job is the persisted lifecycle record of one generation request.

    The ``status`` column is the single source of truth for whether a job finished.
    Queue entries only transport job ids to workers.
    """

    __tablename__ = "generation_jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(index=True)
    job_type: str = Field(default="generate", max_length=50)
    provider: str = Field(default="gemini", max_length=50)

    # Inputs
    input_image_ids: list = Field(default_factory=list, sa_column=Column(JSON))
    prompt: Optional[str] = Field(default=None, max_length=1000)
    options: dict = Field(default_factory=dict, sa_column=Column(JSON))

    # Lifecycle
    status: JobStatus = Field(default=JobStatus.QUEUED, index=True)
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    priority: int = Field(default=5, ge=1, le=10)
    retry_at: Optional[datetime] = Field(default=None, index=True, sa_type=UTCDateTime)
    started_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    # Asynchronous provider correlation
    provider_task_id: Optional[str] = Field(default=None, max_length=255, index=True)
    provider_request: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    # Outcome
    output_image_id: Optional[UUID] = Field(default=None, foreign_key="image_assets.id")
    error: Optional[str] = Field(default=None, max_length=MAX_ERROR_LENGTH)
    error_details: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    # Reporting (milliseconds, except estimated_time in seconds)
    queue_time: Optional[int] = Field(default=None)
    processing_time: Optional[int] = Field(default=None)
    estimated_time: int = Field(default=45)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def awaiting_callback(self) -> bool:
        """True while an asynchronous provider owns the job."""
        return self.status == JobStatus.PROCESSING and self.provider_task_id is not None

    @property
    def can_retry(self) -> bool:
        return self.status == JobStatus.FAILED and self.attempts < self.max_attempts

    def mark_processing(self, now: Optional[datetime] = None) -> None:
        """Transition from queued (or failed, as a new attempt) to processing.

        Must be persisted before any external call so a crash mid-call leaves an
        observable processing record for the reconciliation sweep.

        Args:
            now: Transition time (defaults to current UTC time)

        Raises:
            InvalidStateTransition: If the job is not queued, or is failed with no
                attempts left
        """
        if self.status == JobStatus.FAILED:
            if self.attempts >= self.max_attempts:
                raise InvalidStateTransition(
                    f"Cannot retry job {self.id}: attempts exhausted "
                    f"({self.attempts}/{self.max_attempts})."
                )
        elif self.status != JobStatus.QUEUED:
            raise InvalidStateTransition(
                f"Cannot mark processing from {self.status.value}. "
                "Job must be queued or failed with attempts remaining."
            )
        now = now or utcnow()
        self.attempts += 1
        self.queue_time = elapsed_ms(self.created_at, now)
        self.started_at = now
        self.retry_at = None
        self.completed_at = None
        self.provider_task_id = None
        self.provider_request = None
        self.status = JobStatus.PROCESSING
        self.updated_at = now

    def attach_provider_task(self, task_id: str, request: Optional[dict] = None) -> None:
        """Record the asynchronous provider's task handle.

        The job stays processing; completion arrives through the webhook.

        Raises:
            InvalidStateTransition: If the job is not processing
            ValueError: If task_id is empty
        """
        if self.status != JobStatus.PROCESSING:
            raise InvalidStateTransition(
                f"Cannot attach provider task from {self.status.value}. "
                "Job must be in processing state."
            )
        if not task_id:
            raise ValueError("task_id is required")
        self.provider_task_id = task_id
        self.provider_request = request
        self.updated_at = utcnow()

    def mark_succeeded(
        self,
        output_image_id: UUID,
        processing_time_ms: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Transition from processing to succeeded.

        A completion for an already terminal job is a no-op.

        Args:
            output_image_id: Primary output asset id
            processing_time_ms: Duration of the provider work (derived from started_at if omitted)
            now: Transition time (defaults to current UTC time)

        Returns:
            True if the job transitioned, False if it was already terminal

        Raises:
            InvalidStateTransition: If the job is queued (never started)
        """
        if self.is_terminal:
            return False
        if self.status != JobStatus.PROCESSING:
            raise InvalidStateTransition(
                f"Cannot mark succeeded from {self.status.value}. Job must be in processing state."
            )
        now = now or utcnow()
        if processing_time_ms is None:
            processing_time_ms = elapsed_ms(self.started_at, now) if self.started_at else 0
        self.output_image_id = output_image_id
        self.processing_time = max(int(processing_time_ms), 0)
        self.error = None
        self.error_details = None
        self.retry_at = None
        self.completed_at = now
        self.status = JobStatus.SUCCEEDED
        self.updated_at = now
        return True

    def mark_failed(
        self,
        message: str,
        details: Optional[dict] = None,
        retryable: bool = True,
        base_delay_ms: int = 30000,
        now: Optional[datetime] = None,
    ) -> bool:
        """Transition from any non-terminal state to failed.

        ``retry_at`` is set to ``now + base * 2^attempts`` only when the failure is
        retryable and attempts remain; otherwise the failure is final.

        Args:
            message: Error message surfaced to the user (truncated to 2000 chars)
            details: Structured error detail
            retryable: False for permanent failures such as content policy rejections
            base_delay_ms: Backoff base delay
            now: Transition time (defaults to current UTC time)

        Returns:
            True if the job transitioned, False if it was already terminal
        """
        if self.is_terminal:
            return False
        now = now or utcnow()
        self.error = (message or "Unknown error")[:MAX_ERROR_LENGTH]
        self.error_details = details
        if self.started_at is not None:
            self.processing_time = elapsed_ms(self.started_at, now)
        if retryable and self.attempts < self.max_attempts:
            delay_ms = backoff_delay_ms(self.attempts, base_delay_ms)
            self.retry_at = now + timedelta(milliseconds=delay_ms)
        else:
            self.retry_at = None
        self.completed_at = now
        self.status = JobStatus.FAILED
        self.updated_at = now
        return True

    def cancel(self, now: Optional[datetime] = None) -> bool:
        """Transition from queued to cancelled.

        A processing job may already have a provider call in flight and is never cancelled.

        Returns:
            True if cancelled, False if the job was not queued
        """
        if self.status != JobStatus.QUEUED:
            return False
        now = now or utcnow()
        self.completed_at = now
        self.status = JobStatus.CANCELLED
        self.updated_at = now
        return True

    def reset_for_retry(self) -> None:
        """Give a failed job a fresh attempt budget (manual operator retry).

        The job stays failed and becomes due immediately; the next queue delivery takes
        the failed -> processing edge.

        Raises:
            InvalidStateTransition: If the job is not failed
        """
        if self.status != JobStatus.FAILED:
            raise InvalidStateTransition(
                f"Cannot reset job from {self.status.value}. Only failed jobs can be retried."
            )
        now = utcnow()
        self.attempts = 0
        self.retry_at = now
        self.updated_at = now
