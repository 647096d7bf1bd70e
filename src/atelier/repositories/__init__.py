"""Repository layer for the generation job engine.

Provides data access abstractions for all domain entities.
Each repository is self-contained and bound to one AsyncSession.
"""

from atelier.repositories.audit import AuditRecordRepository
from atelier.repositories.image_asset import ImageAssetRepository
from atelier.repositories.job import JobRepository
from atelier.repositories.queue_entry import QueueEntryRepository
from atelier.repositories.queue_state import QueueStateRepository
from atelier.repositories.rate_limit import RateLimitRepository

__all__ = [
    "JobRepository",
    "QueueEntryRepository",
    "QueueStateRepository",
    "RateLimitRepository",
    "ImageAssetRepository",
    "AuditRecordRepository",
]
