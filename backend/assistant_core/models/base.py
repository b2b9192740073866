"""
Shared model mixins and column types.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware DateTime that always round-trips as UTC.

    SQLite drops tzinfo on storage, so naive values read back are
    re-tagged as UTC. Values are normalized to UTC before binding so
    comparisons in SQL stay consistent across backends.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class TimestampMixin:
    """Adds created_at / updated_at columns maintained by the ORM."""

    created_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        comment="Row creation time (UTC)"
    )
    updated_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        comment="Last modification time (UTC)"
    )
