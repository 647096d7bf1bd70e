"""QueueEntry repository for the durable job queue.

Claims use FOR UPDATE SKIP LOCKED to find a candidate and a conditional UPDATE to take
the lease, so two workers can never own the same entry at once. Every ack is
conditional on the lease token handed out by the claim.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from atelier.models.queue_entry import OPEN_ENTRY_STATUSES, QueueEntry, QueueEntryStatus

PENDING_STATUSES = (QueueEntryStatus.WAITING, QueueEntryStatus.DELAYED)


class QueueEntryRepository:
    """Repository for QueueEntry entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, entry_id: UUID) -> QueueEntry | None:
        result = await self.session.execute(
            select(QueueEntry).where(QueueEntry.id == entry_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def add(self, entry: QueueEntry) -> QueueEntry:
        """Persist new queue entry.

        Args:
            entry: QueueEntry to persist

        Returns:
            Persisted entry with generated ID
        """
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_open_for_job(self, job_type: str, job_id: UUID) -> QueueEntry | None:
        """Find a waiting, delayed or active entry already carrying ``job_id``."""
        result = await self.session.execute(
            select(QueueEntry)
            .where(QueueEntry.job_type == job_type)  # type: ignore[arg-type]
            .where(QueueEntry.job_id == job_id)  # type: ignore[arg-type]
            .where(QueueEntry.status.in_(OPEN_ENTRY_STATUSES))  # type: ignore[attr-defined]
            .limit(1)
        )
        return result.scalars().first()

    async def claim_next(
        self,
        job_type: str,
        now: datetime,
        lease_token: str,
        lease_expires_at: datetime,
        worker_id: str,
    ) -> QueueEntry | None:
        """Lease the most urgent runnable entry of ``job_type``.

        Query explanation:
        - WHERE status IN ('waiting', 'delayed') AND run_at <= now: runnable entries
        - ORDER BY priority ASC, run_at ASC: priority 1 first, then oldest
        - FOR UPDATE SKIP LOCKED: skip candidates another worker is claiming

        The lease is taken with a conditional UPDATE on the candidate's status, so a
        lost race returns None instead of a double delivery.

        Args:
            job_type: Queue name
            now: Current time
            lease_token: Token identifying this delivery
            lease_expires_at: When the lease lapses without a heartbeat
            worker_id: Executor identifier for diagnostics

        Returns:
            The leased entry, or None if nothing is runnable
        """
        candidate = await self.session.execute(
            select(QueueEntry.id)  # type: ignore[call-overload]
            .where(QueueEntry.job_type == job_type)
            .where(QueueEntry.status.in_(PENDING_STATUSES))  # type: ignore[attr-defined]
            .where(QueueEntry.run_at <= now)
            .order_by(
                QueueEntry.priority.asc(),  # type: ignore[attr-defined]
                QueueEntry.run_at.asc(),  # type: ignore[attr-defined]
            )
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        entry_id = candidate.scalar_one_or_none()
        if entry_id is None:
            return None

        result = await self.session.execute(
            update(QueueEntry)
            .where(QueueEntry.id == entry_id)  # type: ignore[arg-type]
            .where(QueueEntry.status.in_(PENDING_STATUSES))  # type: ignore[attr-defined]
            .values(
                status=QueueEntryStatus.ACTIVE,
                lease_token=lease_token,
                lease_expires_at=lease_expires_at,
                worker_id=worker_id,
                started_at=now,
            )
        )
        if result.rowcount != 1:
            return None
        refreshed = await self.session.execute(
            select(QueueEntry)
            .where(QueueEntry.id == entry_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return refreshed.scalar_one()

    async def extend_lease(self, entry_id: UUID, lease_token: str, until: datetime) -> bool:
        """Push back the lease expiry of an active entry (heartbeat).

        Returns:
            False if the lease was lost (entry re-delivered or finished)
        """
        result = await self.session.execute(
            update(QueueEntry)
            .where(QueueEntry.id == entry_id)  # type: ignore[arg-type]
            .where(QueueEntry.lease_token == lease_token)  # type: ignore[arg-type]
            .where(QueueEntry.status == QueueEntryStatus.ACTIVE)  # type: ignore[arg-type]
            .values(lease_expires_at=until)
        )
        return result.rowcount == 1

    async def finish_leased(self, entry_id: UUID, lease_token: str, **values: Any) -> bool:
        """Apply an ack to an entry only if ``lease_token`` still owns it.

        Args:
            entry_id: Entry to update
            lease_token: Token handed out by claim_next
            **values: Column values to set (status, result, run_at, ...)

        Returns:
            True if the ack was applied, False if the lease is stale
        """
        values.setdefault("lease_token", None)
        values.setdefault("lease_expires_at", None)
        result = await self.session.execute(
            update(QueueEntry)
            .where(QueueEntry.id == entry_id)  # type: ignore[arg-type]
            .where(QueueEntry.lease_token == lease_token)  # type: ignore[arg-type]
            .where(QueueEntry.status == QueueEntryStatus.ACTIVE)  # type: ignore[arg-type]
            .values(**values)
        )
        return result.rowcount == 1

    async def get_stalled(self, job_type: str, now: datetime, limit: int = 100) -> list[QueueEntry]:
        """Retrieve active entries whose lease expired, with row-level locking.

        Args:
            job_type: Queue name
            now: Current time
            limit: Maximum number of entries (default: 100)

        Returns:
            List of stalled entries locked for this check
        """
        result = await self.session.execute(
            select(QueueEntry)
            .where(QueueEntry.job_type == job_type)  # type: ignore[arg-type]
            .where(QueueEntry.status == QueueEntryStatus.ACTIVE)  # type: ignore[arg-type]
            .where(QueueEntry.lease_expires_at < now)  # type: ignore[arg-type,operator]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def count_by_status(self, job_type: str) -> dict[QueueEntryStatus, int]:
        """Count entries of a queue per status."""
        result = await self.session.execute(
            select(QueueEntry.status, func.count(QueueEntry.id))  # type: ignore[arg-type]
            .where(QueueEntry.job_type == job_type)  # type: ignore[arg-type]
            .group_by(QueueEntry.status)
        )
        counts = {status: 0 for status in QueueEntryStatus}
        for status, count in result.all():
            counts[QueueEntryStatus(status)] = count
        return counts

    async def count_active(self, job_type: str) -> int:
        result = await self.session.execute(
            select(func.count(QueueEntry.id))  # type: ignore[arg-type]
            .where(QueueEntry.job_type == job_type)  # type: ignore[arg-type]
            .where(QueueEntry.status == QueueEntryStatus.ACTIVE)  # type: ignore[arg-type]
        )
        return result.scalar() or 0

    async def delete_pending_for_job(self, job_id: UUID) -> int:
        """Delete waiting or delayed entries of a job (cancellation).

        Returns:
            Number of deleted entries
        """
        result = await self.session.execute(
            delete(QueueEntry)
            .where(QueueEntry.job_id == job_id)  # type: ignore[arg-type]
            .where(QueueEntry.status.in_(PENDING_STATUSES))  # type: ignore[attr-defined]
        )
        return result.rowcount or 0

    async def prune(
        self,
        job_type: str,
        completed_before: datetime,
        completed_keep: int,
        failed_before: datetime,
    ) -> int:
        """Apply retention to finished entries.

        Completed entries are removed past their age, and beyond the newest
        ``completed_keep``. Failed entries are removed past their (longer) age.

        Returns:
            Number of deleted entries
        """
        deleted = 0
        result = await self.session.execute(
            delete(QueueEntry)
            .where(QueueEntry.job_type == job_type)  # type: ignore[arg-type]
            .where(
                or_(
                    (QueueEntry.status == QueueEntryStatus.COMPLETED)
                    & (QueueEntry.finished_at < completed_before),  # type: ignore[operator]
                    (QueueEntry.status == QueueEntryStatus.FAILED)
                    & (QueueEntry.finished_at < failed_before),  # type: ignore[operator]
                )
            )
        )
        deleted += result.rowcount or 0

        keep_ids = (
            select(QueueEntry.id)  # type: ignore[call-overload]
            .where(QueueEntry.job_type == job_type)
            .where(QueueEntry.status == QueueEntryStatus.COMPLETED)
            .order_by(QueueEntry.finished_at.desc())  # type: ignore[union-attr]
            .limit(completed_keep)
        )
        keep = [row for row in (await self.session.execute(keep_ids)).scalars().all()]
        overflow = (
            delete(QueueEntry)
            .where(QueueEntry.job_type == job_type)  # type: ignore[arg-type]
            .where(QueueEntry.status == QueueEntryStatus.COMPLETED)  # type: ignore[arg-type]
        )
        if keep:
            overflow = overflow.where(QueueEntry.id.not_in(keep))  # type: ignore[attr-defined]
        result = await self.session.execute(overflow)
        deleted += result.rowcount or 0
        return deleted
