"""Job repository for the generation job engine.

Provides data access methods for Job entities, including row-locked reads used to
serialize the worker and webhook completion paths on the same job id.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from atelier.models.job import TERMINAL_STATUSES, Job, JobStatus


class JobRepository:
    """Repository for Job entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, job_id: UUID) -> Job | None:
        """Retrieve job by id.

        Args:
            job_id: Job's unique identifier

        Returns:
            Job if found, None otherwise
        """
        result = await self.session.execute(
            select(Job).where(Job.id == job_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_id_for_update(self, job_id: UUID) -> Job | None:
        """Retrieve job by id holding a row lock until the transaction ends.

        Uses FOR UPDATE (not SKIP LOCKED): a competing writer waits for the lock
        and then re-reads the committed state.

        Args:
            job_id: Job's unique identifier

        Returns:
            Job if found, None otherwise
        """
        result = await self.session.execute(
            select(Job)
            .where(Job.id == job_id)  # type: ignore[arg-type]
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_provider_task_id(self, provider_task_id: str) -> Job | None:
        """Retrieve job by the asynchronous provider's task handle.

        Args:
            provider_task_id: Task id returned by the provider on submission

        Returns:
            Job if found, None otherwise
        """
        result = await self.session.execute(
            select(Job).where(Job.provider_task_id == provider_task_id)  # type: ignore[arg-type]
        )
        return result.scalars().first()

    async def add(self, job: Job) -> Job:
        """Persist new job to database.

        Args:
            job: Job entity to persist

        Returns:
            Persisted job with generated ID
        """
        self.session.add(job)
        await self.session.flush()
        return job

    async def save(self, job: Job) -> None:
        """Flush pending changes of an already tracked job."""
        self.session.add(job)
        await self.session.flush()

    async def get_by_user(self, user_id: UUID, limit: int = 50, offset: int = 0) -> list[Job]:
        """Retrieve jobs of a user, newest first."""
        result = await self.session.execute(
            select(Job)
            .where(Job.user_id == user_id)  # type: ignore[arg-type]
            .order_by(Job.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def get_stuck_processing(self, older_than: datetime, limit: int = 100) -> list[Job]:
        """Retrieve jobs left processing since before ``older_than`` with row-level locking.

        Uses FOR UPDATE SKIP LOCKED so concurrent sweeps never pick the same job.

        Args:
            older_than: Cutoff on started_at
            limit: Maximum number of jobs to retrieve (default: 100)

        Returns:
            List of jobs locked for this sweep
        """
        result = await self.session.execute(
            select(Job)
            .where(Job.status == JobStatus.PROCESSING)  # type: ignore[arg-type]
            .where(Job.started_at < older_than)  # type: ignore[arg-type,operator]
            .order_by(Job.started_at.asc())  # type: ignore[union-attr]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def get_due_retries(self, now: datetime, limit: int = 100) -> list[Job]:
        """Retrieve failed jobs whose retry_at has passed.

        Query explanation:
        - WHERE status = 'failed' AND retry_at <= now: retryable and due
        - ORDER BY priority, retry_at: most urgent first
        - FOR UPDATE SKIP LOCKED: Lock rows, skip already locked ones

        Args:
            now: Current time
            limit: Maximum number of jobs to retrieve (default: 100)

        Returns:
            List of jobs locked for this sweep
        """
        result = await self.session.execute(
            select(Job)
            .where(Job.status == JobStatus.FAILED)  # type: ignore[arg-type]
            .where(Job.retry_at.is_not(None))  # type: ignore[union-attr]
            .where(Job.retry_at <= now)  # type: ignore[arg-type,operator]
            .order_by(
                Job.priority.asc(),  # type: ignore[attr-defined]
                Job.retry_at.asc(),  # type: ignore[union-attr]
            )
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def stats_by_user(self, user_id: UUID) -> dict:
        """Aggregate job counts per status for a user.

        Args:
            user_id: Owning user

        Returns:
            Dict with ``total``, one count per status, ``avg_processing_time`` (ms,
            succeeded jobs only, None when there are none) and ``success_rate`` (0-100)
        """
        count_result = await self.session.execute(
            select(Job.status, func.count(Job.id))  # type: ignore[arg-type]
            .where(Job.user_id == user_id)  # type: ignore[arg-type]
            .group_by(Job.status)
        )
        stats: dict = {status.value: 0 for status in JobStatus}
        for status, count in count_result.all():
            stats[JobStatus(status).value] = count
        total = sum(stats.values())

        avg_result = await self.session.execute(
            select(func.avg(Job.processing_time))
            .where(Job.user_id == user_id)  # type: ignore[arg-type]
            .where(Job.status == JobStatus.SUCCEEDED)  # type: ignore[arg-type]
        )
        avg = avg_result.scalar()

        stats["total"] = total
        stats["avg_processing_time"] = round(float(avg)) if avg is not None else None
        stats["success_rate"] = (
            round(stats[JobStatus.SUCCEEDED.value] / total * 100, 1) if total else 0.0
        )
        return stats

    async def delete_terminal_before(self, cutoff: datetime) -> int:
        """Delete terminal jobs completed before ``cutoff``.

        Failed jobs with a pending retry are kept.

        Returns:
            Number of deleted jobs
        """
        result = await self.session.execute(
            delete(Job)
            .where(Job.status.in_(TERMINAL_STATUSES))  # type: ignore[attr-defined]
            .where(Job.completed_at < cutoff)  # type: ignore[arg-type,operator]
            .where(Job.retry_at.is_(None))  # type: ignore[union-attr]
        )
        return result.rowcount or 0
