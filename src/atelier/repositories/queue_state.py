"""QueueState repository - Per queue admission flag."""

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from atelier.core.timezone import utcnow
from atelier.models.queue_state import QueueState


class QueueStateRepository:
    """Repository for QueueState entities.

    One row per job type; a missing row means the queue is running.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def is_paused(self, job_type: str) -> bool:
        """Return whether dispatch is paused for ``job_type``."""
        result = await self.session.execute(
            select(QueueState.paused).where(
                QueueState.job_type == job_type  # type: ignore[arg-type]
            )
        )
        paused = result.scalar_one_or_none()
        return bool(paused)

    async def set_paused(self, job_type: str, paused: bool) -> None:
        """Set the admission flag, creating the row on first use.

        Args:
            job_type: Queue name
            paused: True to stop dispatch, False to resume
        """
        state = await self.session.get(QueueState, job_type)
        if state is None:
            state = QueueState(job_type=job_type, paused=paused)
        else:
            state.paused = paused
            state.updated_at = utcnow()
        self.session.add(state)
        await self.session.flush()

    async def lock(self, job_type: str) -> None:
        """Serialize writers of ``job_type``'s shared state until the transaction ends.

        A no-op UPDATE of the state row takes the row lock on PostgreSQL and the write
        lock on SQLite, where FOR UPDATE is ignored. The row is created on first use.
        """
        statement = (
            update(QueueState)
            .where(QueueState.job_type == job_type)  # type: ignore[arg-type]
            .values(paused=QueueState.paused)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(statement)
        if result.rowcount:
            return
        try:
            async with self.session.begin_nested():
                self.session.add(QueueState(job_type=job_type))
        except IntegrityError:
            # Created concurrently; wait for the other writer's lock
            await self.session.execute(statement)
