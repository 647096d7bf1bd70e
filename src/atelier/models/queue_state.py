"""QueueState entity - Per job type admission flag."""

from datetime import datetime

from pydantic import field_validator
from sqlmodel import Field, SQLModel

from atelier.core.timezone import UTCDateTime, utcnow


class QueueState(SQLModel, table=True):
    """QueueState stores whether dispatch is paused for a job type."""

    __tablename__ = "queue_states"  # type: ignore[assignment]

    job_type: str = Field(primary_key=True, max_length=50)
    paused: bool = Field(default=False)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    @field_validator("job_type")
    @classmethod
    def validate_job_type(cls, v: str) -> str:
        """Validate job type is alphanumeric with dashes or underscores."""
        if not v.replace("_", "").replace("-", "").isalnum():
            raise ValueError("Job type must be alphanumeric with dashes or underscores only")
        return v
