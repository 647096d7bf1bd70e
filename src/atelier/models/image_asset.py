"""ImageAsset entity - Stored input, output and thumbnail artifacts."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from atelier.core.timezone import UTCDateTime, utcnow


class ImageKind(str, Enum):
    """Role of an artifact in the pipeline."""

    INPUT = "input"
    OUTPUT = "output"
    THUMBNAIL = "thumbnail"


class ImageAsset(SQLModel, table=True):
    """ImageAsset references bytes held by object storage.

    A succeeded job owns exactly one OUTPUT asset; THUMBNAIL assets point back to it
    through ``original_image_id``.
    """

    __tablename__ = "image_assets"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    kind: ImageKind = Field(default=ImageKind.OUTPUT, index=True)
    user_id: UUID = Field(index=True)
    job_id: Optional[UUID] = Field(default=None, index=True)
    storage_key: str = Field(max_length=512, unique=True)
    url: Optional[str] = Field(default=None)
    mime_type: str = Field(default="image/jpeg", max_length=100)
    size_bytes: int = Field(default=0, ge=0)
    width: Optional[int] = Field(default=None)
    height: Optional[int] = Field(default=None)
    original_image_id: Optional[UUID] = Field(
        default=None, foreign_key="image_assets.id", index=True
    )
    provider_task_id: Optional[str] = Field(default=None, max_length=255)
    details: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
