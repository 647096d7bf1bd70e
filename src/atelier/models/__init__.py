"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from atelier.models.audit import AuditRecord
from atelier.models.image_asset import ImageAsset, ImageKind
from atelier.models.job import InvalidStateTransition, Job, JobStatus
from atelier.models.queue_entry import QueueEntry, QueueEntryStatus
from atelier.models.queue_state import QueueState
from atelier.models.rate_limit import RateLimitHit

__all__ = [
    "Job",
    "JobStatus",
    "InvalidStateTransition",
    "QueueEntry",
    "QueueEntryStatus",
    "QueueState",
    "RateLimitHit",
    "ImageAsset",
    "ImageKind",
    "AuditRecord",
]
