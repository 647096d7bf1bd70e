"""UTC time helpers.

All timestamps are timezone-aware UTC datetimes. Columns use ``UTCDateTime``
(``timestamp with time zone`` on PostgreSQL). SQLite keeps no offset, so values
are written as UTC and tagged UTC again when read back.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator

# Set UTC timezone for the entire application
os.environ["TZ"] = "UTC"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def elapsed_ms(since: datetime, now: datetime | None = None) -> int:
    """Milliseconds elapsed since ``since``, never negative."""
    now = now or utcnow()
    return max(0, int((as_utc(now) - as_utc(since)) / timedelta(milliseconds=1)))


class UTCDateTime(TypeDecorator):
    """``DateTime(timezone=True)`` that always hands back aware UTC values."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        value = as_utc(value)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        if value is None:
            return None
        return as_utc(value)
