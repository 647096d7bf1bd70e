"""AuditRecord repository."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from atelier.models.audit import AuditRecord


class AuditRecordRepository:
    """Repository for AuditRecord entities."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, record: AuditRecord) -> AuditRecord:
        self.session.add(record)
        await self.session.flush()
        return record

    async def get_by_resource(self, resource_id: str) -> list[AuditRecord]:
        """Retrieve audit records of a resource in chronological order."""
        result = await self.session.execute(
            select(AuditRecord)
            .where(AuditRecord.resource_id == resource_id)  # type: ignore[arg-type]
            .order_by(AuditRecord.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def get_by_user(self, user_id: UUID, limit: int = 100) -> list[AuditRecord]:
        result = await self.session.execute(
            select(AuditRecord)
            .where(AuditRecord.user_id == user_id)  # type: ignore[arg-type]
            .order_by(AuditRecord.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())
