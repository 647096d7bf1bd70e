"""Engine context constructed once at process start.

Everything the worker pool, job processor and webhook handler share is held here and
passed explicitly, so tests can swap any collaborator for a fake.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional
from uuid import UUID

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from atelier.core.config import Settings
from atelier.core.database import get_engine, setup_db_session
from atelier.services.audit import AuditRecorder
from atelier.services.queue.job_queue import JobQueue, RetentionPolicy
from atelier.services.storage.object_storage import LocalObjectStorage, ObjectStorage
from atelier.services.thumbnails import ThumbnailFanout, Thumbnailer
from atelier.uow import UnitOfWorkFactory, create_uow_factory

logger = structlog.get_logger(__name__)


class JobLockRegistry:
    """Per job id asyncio locks for writers that run outside the queue lease.

    Locks are created on demand and dropped when nobody holds or waits for them.
    Cross-process exclusion comes from the row lock taken under the same lock.
    """

    def __init__(self) -> None:
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._users: dict[UUID, int] = {}

    @asynccontextmanager
    async def hold(self, job_id: UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(job_id, asyncio.Lock())
        self._users[job_id] = self._users.get(job_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[job_id] -= 1
            if self._users[job_id] == 0:
                del self._users[job_id]
                del self._locks[job_id]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class EngineContext:
    """Shared collaborators of the job lifecycle engine."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    uow_factory: UnitOfWorkFactory
    queue: JobQueue
    storage: ObjectStorage
    audit: AuditRecorder
    http_client: httpx.AsyncClient
    thumbnails: ThumbnailFanout
    locks: JobLockRegistry = field(default_factory=JobLockRegistry)

    async def aclose(self) -> None:
        """Release the HTTP client and the database engine."""
        await self.http_client.aclose()
        await get_engine(self.session_factory).dispose()


def build_context(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    storage: Optional[ObjectStorage] = None,
    thumbnailer: Optional[Thumbnailer] = None,
) -> EngineContext:
    """Wire an EngineContext from settings.

    Args:
        settings: Application settings
        session_factory: Existing session factory (a new engine is created if omitted)
        http_client: Shared httpx client (created if omitted)
        storage: Object storage (local filesystem storage if omitted)
        thumbnailer: Resize implementation for the thumbnail fan-out (disabled if omitted)

    Returns:
        Ready-to-use context
    """
    session_factory = session_factory or setup_db_session(
        settings.database_url, pool_size=settings.db_pool_size
    )
    if thumbnailer is None:
        # Production wiring ships no resizer; outputs are stored without thumbnails
        logger.warning("thumbnails.fanout.disabled", sizes=settings.thumbnail_sizes_list)
    uow_factory = create_uow_factory(session_factory)
    storage = storage or LocalObjectStorage(settings.storage_root, settings.storage_public_base_url)
    queue = JobQueue(
        uow_factory,
        enqueue_timeout_seconds=settings.queue_enqueue_timeout_seconds,
        retention=RetentionPolicy(
            completed_age_seconds=settings.queue_remove_on_complete_age_seconds,
            completed_count=settings.queue_remove_on_complete_count,
            failed_age_seconds=settings.queue_remove_on_fail_age_seconds,
        ),
    )
    return EngineContext(
        settings=settings,
        session_factory=session_factory,
        uow_factory=uow_factory,
        queue=queue,
        storage=storage,
        audit=AuditRecorder(uow_factory),
        http_client=http_client or httpx.AsyncClient(),
        thumbnails=ThumbnailFanout(
            uow_factory, storage, thumbnailer, settings.thumbnail_sizes_list
        ),
    )
