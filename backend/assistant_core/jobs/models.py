"""
Retry queue item model for deferred background work.

Each row is one unit of deferred work (e.g. "analyze this email") with
its attempt counter and next-eligible time. Rows are mutated only by the
drain loop and never deleted; completed and poison items stay for audit.
"""

import uuid
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, String, Integer, Enum, Text, JSON,
    Index, UniqueConstraint,
)

from assistant_core.db_base import Base
from assistant_core.models.base import UTCDateTime, utcnow

DEFAULT_PRIORITY = 5
DEFAULT_MAX_ATTEMPTS = 3


class QueueItemStatus(str, PyEnum):
    """Retry queue item status values."""
    QUEUED = "queued"  # Waiting for its first attempt
    PROCESSING = "processing"  # Claimed by a drain
    COMPLETED = "completed"  # Work succeeded
    FAILED = "failed"  # Retryable while attempts < max_attempts, terminal after


# Store lowercase values (e.g. 'queued') instead of member names
RETRY_QUEUE_STATUS_ENUM = Enum(
    QueueItemStatus,
    name="retry_queue_status",
    create_constraint=True,
    metadata=Base.metadata,
    validate_strings=True,
    values_callable=lambda enum: [e.value for e in enum],
)


class RetryQueueItem(Base):
    """
    Durable, priority-ordered unit of deferred work.

    Unique on (subject_id, payload_key) so producers can enqueue
    idempotently.
    """

    __tablename__ = "retry_queue_items"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )

    subject_id = Column(
        String(255),
        nullable=False,
        comment="Tenant/user the work belongs to"
    )
    payload_key = Column(
        String(255),
        nullable=False,
        comment="Deduplication key (e.g. provider message id)"
    )
    payload = Column(
        JSON,
        nullable=True,
        comment="Minimal context needed to perform the work"
    )

    priority = Column(
        Integer,
        nullable=False,
        default=DEFAULT_PRIORITY,
        comment="Higher runs sooner"
    )
    status = Column(
        RETRY_QUEUE_STATUS_ENUM,
        nullable=False,
        default=QueueItemStatus.QUEUED,
        comment="Current item status"
    )
    attempts = Column(
        Integer,
        nullable=False,
        default=0,
        comment="Number of attempts started"
    )
    max_attempts = Column(
        Integer,
        nullable=False,
        default=DEFAULT_MAX_ATTEMPTS,
        comment="Attempts allowed before the item becomes terminal"
    )
    next_retry_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="Earliest time a failed item may be retried"
    )
    last_error = Column(
        Text,
        nullable=True,
        comment="Truncated message of the most recent failure"
    )

    queued_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        comment="When the item was enqueued"
    )
    started_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="When the most recent attempt started"
    )
    completed_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="When the item completed successfully"
    )

    __table_args__ = (
        UniqueConstraint("subject_id", "payload_key", name="uq_retry_queue_subject_payload"),
        Index("ix_retry_queue_drain_order", "status", "priority", "queued_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<RetryQueueItem(id={self.id}, subject_id={self.subject_id}, "
            f"payload_key={self.payload_key}, status={self.status}, "
            f"attempts={self.attempts}/{self.max_attempts})>"
        )

    @property
    def is_terminal(self) -> bool:
        """Completed, or failed with the retry budget exhausted (poison item)."""
        if self.status == QueueItemStatus.COMPLETED:
            return True
        return self.status == QueueItemStatus.FAILED and self.attempts >= self.max_attempts

    def can_retry(self) -> bool:
        """Check if a failed item still has retry budget."""
        return self.attempts < self.max_attempts
