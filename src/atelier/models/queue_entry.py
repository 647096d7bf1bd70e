"""QueueEntry entity - Durable queue envelope around one job invocation."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from atelier.core.timezone import UTCDateTime, utcnow


class QueueEntryStatus(str, Enum):
    """Queue envelope outcome bucket."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


OPEN_ENTRY_STATUSES = (
    QueueEntryStatus.WAITING,
    QueueEntryStatus.DELAYED,
    QueueEntryStatus.ACTIVE,
)


class QueueEntry(SQLModel, table=True):
    """QueueEntry carries a job id to a worker with retry and lease bookkeeping.

    An active entry is owned by exactly one worker, identified by ``lease_token``.
    Acks that do not present the current token are ignored.
    """

    __tablename__ = "queue_entries"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    job_type: str = Field(max_length=50, index=True)
    job_id: Optional[UUID] = Field(default=None, index=True)
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON))
    status: QueueEntryStatus = Field(default=QueueEntryStatus.WAITING, index=True)
    priority: int = Field(default=5, ge=1, le=10)

    # Retry policy
    attempts_made: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    backoff_type: str = Field(default="exponential", max_length=20)
    backoff_delay_ms: int = Field(default=30000, ge=0)
    run_at: datetime = Field(default_factory=utcnow, index=True, sa_type=UTCDateTime)

    # Lease
    lease_token: Optional[str] = Field(default=None, max_length=64)
    lease_expires_at: Optional[datetime] = Field(default=None, index=True, sa_type=UTCDateTime)
    worker_id: Optional[str] = Field(default=None, max_length=255)
    stalled_count: int = Field(default=0, ge=0)

    # Outcome
    last_error: Optional[str] = Field(default=None, max_length=2000)
    result: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    started_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    finished_at: Optional[datetime] = Field(default=None, index=True, sa_type=UTCDateTime)
