"""RateLimitHit entity - One admitted job inside a rate-limit window."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlmodel import Field, SQLModel

from atelier.core.timezone import UTCDateTime, utcnow


class RateLimitHit(SQLModel, table=True):
    """RateLimitHit records when a worker was admitted to run a job of ``job_type``.

    Hits older than the window are pruned on the next acquisition.
    """

    __tablename__ = "rate_limit_hits"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    job_type: str = Field(max_length=50, index=True)
    acquired_at: datetime = Field(default_factory=utcnow, index=True, sa_type=UTCDateTime)
