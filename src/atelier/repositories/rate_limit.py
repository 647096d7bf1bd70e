"""RateLimitHit repository - Shared rolling window per job type."""

from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from atelier.models.rate_limit import RateLimitHit


class RateLimitRepository:
    """Repository for RateLimitHit entities.

    Callers must hold the job type's queue state lock (QueueStateRepository.lock)
    so that counting and recording a hit happen atomically across workers.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def prune(self, job_type: str, before: datetime) -> int:
        """Delete hits of ``job_type`` that left the window (acquired at or before ``before``)."""
        result = await self.session.execute(
            delete(RateLimitHit)
            .where(RateLimitHit.job_type == job_type)  # type: ignore[arg-type]
            .where(RateLimitHit.acquired_at <= before)  # type: ignore[arg-type]
        )
        return result.rowcount or 0

    async def window_usage(self, job_type: str) -> tuple[int, Optional[datetime]]:
        """Return the number of hits in the window and the oldest hit time."""
        result = await self.session.execute(
            select(
                func.count(RateLimitHit.id),  # type: ignore[arg-type]
                func.min(RateLimitHit.acquired_at),
            ).where(
                RateLimitHit.job_type == job_type  # type: ignore[arg-type]
            )
        )
        used, oldest = result.one()
        return int(used or 0), oldest

    async def add(self, hit: RateLimitHit) -> RateLimitHit:
        self.session.add(hit)
        await self.session.flush()
        return hit
