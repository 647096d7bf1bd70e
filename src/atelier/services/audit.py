"""Fire-and-forget audit recorder.

Audit failures are logged and swallowed: an audit outage must never fail a job.
"""

from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

import structlog
from sqlalchemy.exc import SQLAlchemyError

from atelier.models.audit import AuditRecord
from atelier.uow import UnitOfWorkFactory

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    """One usage audit entry."""

    action: str
    user_id: Optional[UUID] = None
    type: str = "generation"
    resource_type: str = "job"
    resource_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    is_success: bool = True


class AuditRecorder:
    """Persist audit events in their own short transaction."""

    def __init__(self, uow_factory: UnitOfWorkFactory):
        self.uow_factory = uow_factory

    async def record(self, event: AuditEvent) -> bool:
        """Persist an audit event.

        Returns:
            True if stored, False if the write failed (the failure is logged)
        """
        try:
            async with await self.uow_factory() as uow:
                await uow.audit.add(
                    AuditRecord(
                        user_id=event.user_id,
                        type=event.type,
                        action=event.action,
                        resource_type=event.resource_type,
                        resource_id=event.resource_id,
                        details=event.details,
                        is_success=event.is_success,
                    )
                )
        except (SQLAlchemyError, OSError) as e:
            logger.warning(
                "audit.record.failed",
                action=event.action,
                resource_id=event.resource_id,
                error=str(e),
            )
            return False
        return True
