"""AuditRecord entity - Usage audit trail."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from atelier.core.timezone import UTCDateTime, utcnow


class AuditRecord(SQLModel, table=True):
    """AuditRecord logs one user-visible action (job created, completed, failed, webhook)."""

    __tablename__ = "audit_records"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: Optional[UUID] = Field(default=None, index=True)
    type: str = Field(default="generation", max_length=50)
    action: str = Field(max_length=100, index=True)
    resource_type: str = Field(default="job", max_length=50)
    resource_id: Optional[str] = Field(default=None, max_length=255)
    details: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    is_success: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
