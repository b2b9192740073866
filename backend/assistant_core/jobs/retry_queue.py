"""
Durable background retry queue for deferred upstream work.

Producers enqueue work items (e.g. "analyze message X for user Y"); a
periodic drain claims a bounded batch, executes each item through the
resilient call wrapper and records the outcome on the row.

FLOW (per drain):
1. Select up to batch_size eligible items, priority DESC then queued_at ASC.
   Eligible = queued, or failed with attempts < max_attempts and
   next_retry_at <= now.
2. Claim each item with a conditional UPDATE (eligible -> processing,
   attempts + 1). A lost claim is skipped, so no item is processed twice.
3. Run the handler through ResilientCaller (exponential backoff for
   transient upstream errors within the attempt).
4. Success -> completed. Failure -> failed with
   next_retry_at = now + attempts * 60s. Once attempts == max_attempts the
   item is a poison item and is never selected again.

CONSTRAINTS:
- One drain in flight per queue (explicit DrainState, checked-and-set
  without yielding); an overlapping drain returns a skipped result
- Items within a batch run sequentially to respect shared rate limits
- One item's failure never aborts the rest of the batch
- Rows are never deleted

Usage:
    queue = RetryQueue(db_session, handler=analyze_message)
    await queue.enqueue("user-123", "msg-18c2", {"message_id": "18c2"}, priority=7)
    result = await queue.drain(batch_size=5)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from assistant_core.jobs.models import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PRIORITY,
    QueueItemStatus,
    RetryQueueItem,
)
from assistant_core.services.resilient_call import (
    Classifier,
    ResilientCaller,
    classify_upstream_error,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
# Linear backoff between queue attempts: attempts * RETRY_STEP
RETRY_STEP = timedelta(seconds=60)
MAX_ERROR_MESSAGE_LENGTH = 500


class DrainState(str, Enum):
    """Whether a drain is currently executing on this queue."""
    IDLE = "idle"
    RUNNING = "running"


@dataclass(frozen=True)
class QueueWorkItem:
    """Snapshot of a claimed item handed to the work handler."""
    id: str
    subject_id: str
    payload_key: str
    payload: Optional[Dict[str, Any]]
    priority: int
    attempt: int
    max_attempts: int


QueueHandler = Callable[[QueueWorkItem], Awaitable[Any]]


@dataclass
class DrainResult:
    """Outcome of one drain invocation."""
    processed: int = 0
    failed: int = 0
    terminal: int = 0
    lost_claims: int = 0
    skipped: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.started_at).total_seconds()
        return {
            "processed": self.processed,
            "failed": self.failed,
            "terminal": self.terminal,
            "lost_claims": self.lost_claims,
            "skipped": self.skipped,
            "duration_seconds": round(duration, 3),
        }


@dataclass
class QueueStatus:
    """Queue counts for observability."""
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed_retryable: int = 0
    failed_terminal: int = 0
    drain_state: DrainState = DrainState.IDLE

    @property
    def total(self) -> int:
        return (
            self.queued + self.processing + self.completed
            + self.failed_retryable + self.failed_terminal
        )

    def to_dict(self) -> dict:
        return {
            "queued": self.queued,
            "processing": self.processing,
            "completed": self.completed,
            "failed_retryable": self.failed_retryable,
            "failed_terminal": self.failed_terminal,
            "total": self.total,
            "drain_state": self.drain_state.value,
        }


class RetryQueue:
    """
    Priority-ordered queue of deferred work with per-item retry state.

    Mutations after enqueue happen only inside drain().
    """

    def __init__(
        self,
        db_session: Session,
        handler: QueueHandler,
        caller: Optional[ResilientCaller] = None,
        classify: Classifier = classify_upstream_error,
        retry_step: timedelta = RETRY_STEP,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        """
        Args:
            db_session: Database session holding queue state
            handler: Coroutine performing the work for one item
            caller: Resilient call wrapper used to run the handler
            classify: Failure classifier passed to the wrapper
            retry_step: Linear backoff step between queue attempts
            max_attempts: Default per-item attempt budget for enqueue()
        """
        self.db = db_session
        self.handler = handler
        self.caller = caller or ResilientCaller()
        self.classify = classify
        self.retry_step = retry_step
        self.max_attempts = max_attempts
        self._state = DrainState.IDLE

    @property
    def state(self) -> DrainState:
        return self._state

    @property
    def is_draining(self) -> bool:
        return self._state is DrainState.RUNNING

    async def enqueue(
        self,
        subject_id: str,
        payload_key: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: int = DEFAULT_PRIORITY,
        max_attempts: Optional[int] = None,
    ) -> Optional[RetryQueueItem]:
        """
        Enqueue work unless (subject_id, payload_key) is already queued.

        Returns:
            The new item, or None when an item with the same key exists
        """
        if not subject_id or not payload_key:
            raise ValueError("subject_id and payload_key are required")
        if max_attempts is None:
            max_attempts = self.max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        existing = self.get_item(subject_id, payload_key)
        if existing is not None:
            logger.debug(
                "Duplicate enqueue ignored",
                extra={"subject_id": subject_id, "payload_key": payload_key}
            )
            return None

        item = RetryQueueItem(
            subject_id=subject_id,
            payload_key=payload_key,
            payload=payload or {},
            priority=priority,
            status=QueueItemStatus.QUEUED,
            attempts=0,
            max_attempts=max_attempts,
            queued_at=datetime.now(timezone.utc),
        )
        self.db.add(item)
        try:
            self.db.commit()
        except IntegrityError:
            # Another producer inserted the same key between our check and insert
            self.db.rollback()
            logger.debug(
                "Duplicate enqueue ignored",
                extra={"subject_id": subject_id, "payload_key": payload_key}
            )
            return None

        logger.info(
            "Work item queued",
            extra={
                "item_id": item.id,
                "subject_id": subject_id,
                "payload_key": payload_key,
                "priority": priority,
            }
        )
        return item

    def get_item(self, subject_id: str, payload_key: str) -> Optional[RetryQueueItem]:
        return self.db.query(RetryQueueItem).filter(
            RetryQueueItem.subject_id == subject_id,
            RetryQueueItem.payload_key == payload_key,
        ).first()

    async def drain(self, batch_size: int = DEFAULT_BATCH_SIZE) -> DrainResult:
        """
        Claim and execute up to batch_size eligible items.

        Returns a skipped result without touching any row when another
        drain on this queue is still running.
        """
        # Check-and-set with no await in between
        if self._state is DrainState.RUNNING:
            logger.info("Queue drain already in progress; skipping")
            return DrainResult(skipped=True)
        self._state = DrainState.RUNNING

        result = DrainResult()
        try:
            batch = self._select_batch(datetime.now(timezone.utc), batch_size)
            if not batch:
                return result

            logger.info("Draining retry queue", extra={"batch_size": len(batch)})

            for item_id in batch:
                work = self._claim(item_id, datetime.now(timezone.utc))
                if work is None:
                    result.lost_claims += 1
                    continue
                await self._process(work, result)

            logger.info("Queue drain complete", extra=result.to_dict())
            return result
        finally:
            self._state = DrainState.IDLE

    def get_status(self, subject_id: Optional[str] = None) -> QueueStatus:
        """Count items by status (optionally for one subject)."""
        counts = self.db.query(RetryQueueItem.status, func.count(RetryQueueItem.id))
        terminal = self.db.query(func.count(RetryQueueItem.id)).filter(
            RetryQueueItem.status == QueueItemStatus.FAILED,
            RetryQueueItem.attempts >= RetryQueueItem.max_attempts,
        )
        if subject_id:
            counts = counts.filter(RetryQueueItem.subject_id == subject_id)
            terminal = terminal.filter(RetryQueueItem.subject_id == subject_id)

        by_status = {
            QueueItemStatus(item_status): count
            for item_status, count in counts.group_by(RetryQueueItem.status).all()
        }
        failed_terminal = terminal.scalar() or 0

        return QueueStatus(
            queued=by_status.get(QueueItemStatus.QUEUED, 0),
            processing=by_status.get(QueueItemStatus.PROCESSING, 0),
            completed=by_status.get(QueueItemStatus.COMPLETED, 0),
            failed_retryable=by_status.get(QueueItemStatus.FAILED, 0) - failed_terminal,
            failed_terminal=failed_terminal,
            drain_state=self._state,
        )

    def _eligible(self, now: datetime):
        return or_(
            RetryQueueItem.status == QueueItemStatus.QUEUED,
            and_(
                RetryQueueItem.status == QueueItemStatus.FAILED,
                RetryQueueItem.attempts < RetryQueueItem.max_attempts,
                RetryQueueItem.next_retry_at <= now,
            ),
        )

    def _select_batch(self, now: datetime, batch_size: int) -> List[str]:
        rows = (
            self.db.query(RetryQueueItem.id)
            .filter(self._eligible(now))
            .order_by(RetryQueueItem.priority.desc(), RetryQueueItem.queued_at.asc())
            .limit(batch_size)
            .all()
        )
        return [row.id for row in rows]

    def _claim(self, item_id: str, now: datetime) -> Optional[QueueWorkItem]:
        """Atomically move an eligible item to processing; None if lost."""
        claimed = (
            self.db.query(RetryQueueItem)
            .filter(RetryQueueItem.id == item_id, self._eligible(now))
            .update(
                {
                    RetryQueueItem.status: QueueItemStatus.PROCESSING,
                    RetryQueueItem.attempts: RetryQueueItem.attempts + 1,
                    RetryQueueItem.started_at: now,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()

        if claimed != 1:
            logger.info("Queue item claim lost", extra={"item_id": item_id})
            return None

        item = self.db.get(RetryQueueItem, item_id)
        return QueueWorkItem(
            id=item.id,
            subject_id=item.subject_id,
            payload_key=item.payload_key,
            payload=item.payload,
            priority=item.priority,
            attempt=item.attempts,
            max_attempts=item.max_attempts,
        )

    async def _process(self, work: QueueWorkItem, result: DrainResult) -> None:
        try:
            await self.caller.execute(
                lambda: self.handler(work),
                self.classify,
                operation_name=f"retry_queue:{work.payload_key}",
            )
        except Exception as e:
            terminal = self._mark_failed(work, str(e) or type(e).__name__)
            result.failed += 1
            if terminal:
                result.terminal += 1
            return

        self._mark_completed(work)
        result.processed += 1

    def _mark_completed(self, work: QueueWorkItem) -> None:
        item = self.db.get(RetryQueueItem, work.id)
        item.status = QueueItemStatus.COMPLETED
        item.completed_at = datetime.now(timezone.utc)
        item.last_error = None
        self.db.commit()

        logger.info(
            "Queue item completed",
            extra={
                "item_id": work.id,
                "subject_id": work.subject_id,
                "attempt": work.attempt,
            }
        )

    def _mark_failed(self, work: QueueWorkItem, error_message: str) -> bool:
        """Record a failed attempt. Returns True if the item is now terminal."""
        now = datetime.now(timezone.utc)
        item = self.db.get(RetryQueueItem, work.id)
        item.status = QueueItemStatus.FAILED
        item.last_error = error_message[:MAX_ERROR_MESSAGE_LENGTH]
        item.next_retry_at = now + self.retry_step * item.attempts
        self.db.commit()

        terminal = item.attempts >= item.max_attempts
        if terminal:
            logger.error(
                "Queue item failed permanently; retry budget exhausted",
                extra={
                    "item_id": work.id,
                    "subject_id": work.subject_id,
                    "attempts": item.attempts,
                    "max_attempts": item.max_attempts,
                }
            )
        else:
            logger.warning(
                "Queue item failed; retry scheduled",
                extra={
                    "item_id": work.id,
                    "subject_id": work.subject_id,
                    "attempts": item.attempts,
                    "next_retry_at": item.next_retry_at.isoformat(),
                }
            )
        return terminal
