"""
Tests for the background retry queue.

Covers:
- Enqueue: idempotent per (subject_id, payload_key)
- Drain: priority ordering, batch size, linear backoff, poison items
- Claims: overlapping drains never process an item twice
- Status: counts by status, retryable vs terminal failures
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from assistant_core.jobs.models import QueueItemStatus, RetryQueueItem
from assistant_core.jobs.retry_queue import (
    MAX_ERROR_MESSAGE_LENGTH,
    DrainState,
    QueueWorkItem,
    RetryQueue,
)
from assistant_core.platform.errors import PermanentUpstreamError, TransientUpstreamError
from assistant_core.services.resilient_call import ResilientCaller

SUBJECT_ID = "user-queue-test-001"


class RecordingHandler:
    """Work handler that records items and fails on demand."""

    def __init__(self, fail_with=None, pause=False):
        self.fail_with = fail_with
        self.pause = pause
        self.items = []

    async def __call__(self, item: QueueWorkItem):
        self.items.append(item)
        if self.pause:
            await asyncio.sleep(0)
            await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        return "done"

    @property
    def payload_keys(self):
        return [item.payload_key for item in self.items]


def _caller(max_attempts=1):
    return ResilientCaller(max_attempts=max_attempts, sleep=AsyncMock())


def _queue(db_session, handler, **kwargs):
    kwargs.setdefault("caller", _caller())
    return RetryQueue(db_session, handler, **kwargs)


def _item(db_session, payload_key) -> RetryQueueItem:
    db_session.expire_all()
    return db_session.query(RetryQueueItem).filter(
        RetryQueueItem.payload_key == payload_key
    ).one()


# =============================================================================
# Enqueue
# =============================================================================

class TestEnqueue:

    @pytest.mark.asyncio
    async def test_enqueue_creates_queued_item(self, db_session):
        queue = _queue(db_session, RecordingHandler())

        item = await queue.enqueue(SUBJECT_ID, "msg-1", {"message_id": "1"})

        assert item.status == QueueItemStatus.QUEUED
        assert item.attempts == 0
        assert item.priority == 5
        assert item.max_attempts == 3
        assert item.payload == {"message_id": "1"}

    @pytest.mark.asyncio
    async def test_duplicate_enqueue_is_noop(self, db_session):
        queue = _queue(db_session, RecordingHandler())

        first = await queue.enqueue(SUBJECT_ID, "msg-1", priority=5)
        second = await queue.enqueue(SUBJECT_ID, "msg-1", priority=9)

        assert first is not None
        assert second is None
        assert db_session.query(RetryQueueItem).count() == 1
        assert _item(db_session, "msg-1").priority == 5

    @pytest.mark.asyncio
    async def test_same_key_for_other_subject_is_separate(self, db_session):
        queue = _queue(db_session, RecordingHandler())

        await queue.enqueue("user-a", "msg-1")
        await queue.enqueue("user-b", "msg-1")

        assert db_session.query(RetryQueueItem).count() == 2

    @pytest.mark.asyncio
    async def test_queue_default_max_attempts(self, db_session):
        queue = _queue(db_session, RecordingHandler(), max_attempts=7)

        item = await queue.enqueue(SUBJECT_ID, "msg-1")

        assert item.max_attempts == 7

    @pytest.mark.asyncio
    async def test_invalid_enqueue_rejected(self, db_session):
        queue = _queue(db_session, RecordingHandler())

        with pytest.raises(ValueError):
            await queue.enqueue("", "msg-1")
        with pytest.raises(ValueError):
            await queue.enqueue(SUBJECT_ID, "msg-1", max_attempts=0)

    @pytest.mark.asyncio
    async def test_duplicate_after_completion_is_still_noop(self, db_session):
        queue = _queue(db_session, RecordingHandler())
        await queue.enqueue(SUBJECT_ID, "msg-1")
        await queue.drain()

        assert await queue.enqueue(SUBJECT_ID, "msg-1") is None


# =============================================================================
# Drain
# =============================================================================

class TestDrain:

    @pytest.mark.asyncio
    async def test_drain_completes_items(self, db_session):
        handler = RecordingHandler()
        queue = _queue(db_session, handler)
        await queue.enqueue(SUBJECT_ID, "msg-1", {"message_id": "1"})

        result = await queue.drain()

        assert result.processed == 1
        assert result.failed == 0
        item = _item(db_session, "msg-1")
        assert item.status == QueueItemStatus.COMPLETED
        assert item.attempts == 1
        assert item.completed_at is not None
        assert item.started_at is not None
        assert handler.items[0].payload == {"message_id": "1"}
        assert handler.items[0].attempt == 1

    @pytest.mark.asyncio
    async def test_priority_then_age_ordering(self, db_session):
        handler = RecordingHandler()
        queue = _queue(db_session, handler)
        await queue.enqueue(SUBJECT_ID, "low-old", priority=1)
        await queue.enqueue(SUBJECT_ID, "high", priority=9)
        await queue.enqueue(SUBJECT_ID, "mid-new", priority=5)
        await queue.enqueue(SUBJECT_ID, "mid-old", priority=5)

        items = {i.payload_key: i for i in db_session.query(RetryQueueItem).all()}
        base = datetime.now(timezone.utc) - timedelta(hours=1)
        for minutes, key in enumerate(["low-old", "high", "mid-old", "mid-new"]):
            items[key].queued_at = base + timedelta(minutes=minutes)
        db_session.commit()

        await queue.drain(batch_size=10)

        assert handler.payload_keys == ["high", "mid-old", "mid-new", "low-old"]

    @pytest.mark.asyncio
    async def test_batch_size_limits_work(self, db_session):
        handler = RecordingHandler()
        queue = _queue(db_session, handler)
        for n in range(7):
            await queue.enqueue(SUBJECT_ID, f"msg-{n}")

        first = await queue.drain(batch_size=5)
        second = await queue.drain(batch_size=5)

        assert first.processed == 5
        assert second.processed == 2
        assert len(set(handler.payload_keys)) == 7

    @pytest.mark.asyncio
    async def test_empty_queue(self, db_session):
        handler = RecordingHandler()
        queue = _queue(db_session, handler)

        result = await queue.drain()

        assert result.processed == 0
        assert result.skipped is False
        assert handler.items == []

    @pytest.mark.asyncio
    async def test_failure_records_error_and_linear_backoff(self, db_session):
        queue = _queue(db_session, RecordingHandler(fail_with=TransientUpstreamError("rate limited")))
        await queue.enqueue(SUBJECT_ID, "msg-1")

        before = datetime.now(timezone.utc)
        result = await queue.drain()

        assert result.failed == 1
        item = _item(db_session, "msg-1")
        assert item.status == QueueItemStatus.FAILED
        assert item.attempts == 1
        assert item.last_error == "rate limited"
        assert item.next_retry_at >= before + timedelta(seconds=60)
        assert item.next_retry_at <= datetime.now(timezone.utc) + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_backoff_grows_with_attempts(self, db_session):
        queue = _queue(db_session, RecordingHandler(fail_with=TransientUpstreamError("down")))
        await queue.enqueue(SUBJECT_ID, "msg-1")
        await queue.drain()

        # Make the item due again
        _item(db_session, "msg-1").next_retry_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        db_session.commit()

        before = datetime.now(timezone.utc)
        await queue.drain()

        item = _item(db_session, "msg-1")
        assert item.attempts == 2
        assert item.next_retry_at >= before + timedelta(seconds=120)

    @pytest.mark.asyncio
    async def test_failed_item_not_retried_before_next_retry_at(self, db_session):
        handler = RecordingHandler(fail_with=TransientUpstreamError("down"))
        queue = _queue(db_session, handler)
        await queue.enqueue(SUBJECT_ID, "msg-1")

        await queue.drain()
        await queue.drain()

        assert len(handler.items) == 1

    @pytest.mark.asyncio
    async def test_long_error_truncated(self, db_session):
        queue = _queue(db_session, RecordingHandler(fail_with=RuntimeError("x" * 2000)))
        await queue.enqueue(SUBJECT_ID, "msg-1")

        await queue.drain()

        assert len(_item(db_session, "msg-1").last_error) == MAX_ERROR_MESSAGE_LENGTH

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_batch(self, db_session):
        calls = []

        async def handler(item):
            calls.append(item.payload_key)
            if item.payload_key == "bad":
                raise PermanentUpstreamError("rejected")

        queue = _queue(db_session, handler)
        await queue.enqueue(SUBJECT_ID, "bad", priority=9)
        await queue.enqueue(SUBJECT_ID, "good", priority=1)

        result = await queue.drain()

        assert calls == ["bad", "good"]
        assert result.processed == 1
        assert result.failed == 1
        assert _item(db_session, "good").status == QueueItemStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_transient_errors_retried_within_attempt(self, db_session):
        calls = {"count": 0}

        async def flaky(item):
            calls["count"] += 1
            if calls["count"] < 3:
                raise TransientUpstreamError("429")

        queue = _queue(db_session, flaky, caller=_caller(max_attempts=3))
        await queue.enqueue(SUBJECT_ID, "msg-1")

        result = await queue.drain()

        assert result.processed == 1
        assert calls["count"] == 3
        item = _item(db_session, "msg-1")
        assert item.status == QueueItemStatus.COMPLETED
        assert item.attempts == 1

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried_within_attempt(self, db_session):
        handler = RecordingHandler(fail_with=PermanentUpstreamError("404"))
        queue = _queue(db_session, handler, caller=_caller(max_attempts=3))
        await queue.enqueue(SUBJECT_ID, "msg-1")

        await queue.drain()

        assert len(handler.items) == 1


# =============================================================================
# Poison items
# =============================================================================

class TestPoisonItems:

    @pytest.mark.asyncio
    async def test_exhausted_item_is_never_selected_again(self, db_session):
        handler = RecordingHandler(fail_with=PermanentUpstreamError("bad payload"))
        queue = _queue(db_session, handler, retry_step=timedelta(0))
        await queue.enqueue(SUBJECT_ID, "poison", max_attempts=2)

        first = await queue.drain()
        second = await queue.drain()
        third = await queue.drain()
        fourth = await queue.drain()

        assert len(handler.items) == 2
        assert first.terminal == 0
        assert second.terminal == 1
        assert third.processed == third.failed == 0
        assert fourth.processed == fourth.failed == 0

        item = _item(db_session, "poison")
        assert item.status == QueueItemStatus.FAILED
        assert item.attempts == 2
        assert item.is_terminal
        assert not item.can_retry()

    @pytest.mark.asyncio
    async def test_poison_item_does_not_block_others(self, db_session):
        async def handler(item):
            if item.payload_key == "poison":
                raise RuntimeError("always fails")

        queue = _queue(db_session, handler, retry_step=timedelta(0))
        await queue.enqueue(SUBJECT_ID, "poison", priority=10, max_attempts=1)
        await queue.drain(batch_size=1)

        await queue.enqueue(SUBJECT_ID, "healthy", priority=1)
        result = await queue.drain(batch_size=1)

        assert result.processed == 1
        assert _item(db_session, "healthy").status == QueueItemStatus.COMPLETED


# =============================================================================
# Overlap and claims
# =============================================================================

class TestOverlap:

    @pytest.mark.asyncio
    async def test_overlapping_drain_is_skipped(self, db_session):
        gate = asyncio.Event()

        async def slow(item):
            await gate.wait()

        queue = _queue(db_session, slow)
        await queue.enqueue(SUBJECT_ID, "msg-1")

        running = asyncio.ensure_future(queue.drain())
        await asyncio.sleep(0)
        assert queue.state is DrainState.RUNNING

        skipped = await queue.drain()
        assert skipped.skipped is True
        assert skipped.processed == 0

        gate.set()
        result = await running
        assert result.processed == 1
        assert queue.state is DrainState.IDLE

    @pytest.mark.asyncio
    async def test_state_reset_after_handler_error(self, db_session):
        queue = _queue(db_session, RecordingHandler(fail_with=RuntimeError("boom")))
        await queue.enqueue(SUBJECT_ID, "msg-1")

        await queue.drain()

        assert queue.state is DrainState.IDLE

    @pytest.mark.asyncio
    async def test_two_queues_never_double_process(self, session_factory):
        handled = []

        async def handler(item):
            handled.append(item.id)
            await asyncio.sleep(0)
            await asyncio.sleep(0)

        queue_a = RetryQueue(session_factory(), handler, caller=_caller())
        queue_b = RetryQueue(session_factory(), handler, caller=_caller())
        for n in range(6):
            await queue_a.enqueue(SUBJECT_ID, f"msg-{n}")

        result_a, result_b = await asyncio.gather(
            queue_a.drain(batch_size=10),
            queue_b.drain(batch_size=10),
        )

        assert len(handled) == len(set(handled)) == 6
        assert result_a.processed + result_b.processed == 6

        status = queue_a.get_status()
        assert status.completed == 6

    @pytest.mark.asyncio
    async def test_claim_of_already_claimed_item_is_lost(self, db_session):
        queue = _queue(db_session, RecordingHandler())
        item = await queue.enqueue(SUBJECT_ID, "msg-1")
        now = datetime.now(timezone.utc)

        assert queue._claim(item.id, now) is not None
        assert queue._claim(item.id, now) is None


# =============================================================================
# Status
# =============================================================================

class TestStatus:

    @pytest.mark.asyncio
    async def test_counts_by_status(self, db_session):
        async def handler(item):
            if item.payload_key.startswith("bad"):
                raise RuntimeError("fails")

        queue = _queue(db_session, handler)
        await queue.enqueue(SUBJECT_ID, "good-1", priority=9)
        await queue.enqueue(SUBJECT_ID, "bad-terminal", priority=8, max_attempts=1)
        await queue.enqueue(SUBJECT_ID, "bad-retryable", priority=7, max_attempts=3)
        await queue.drain(batch_size=3)
        await queue.enqueue(SUBJECT_ID, "waiting")
        await queue.enqueue("other-user", "waiting")

        status = queue.get_status()

        assert status.completed == 1
        assert status.failed_terminal == 1
        assert status.failed_retryable == 1
        assert status.queued == 2
        assert status.processing == 0
        assert status.total == 5
        assert status.to_dict()["drain_state"] == "idle"

    @pytest.mark.asyncio
    async def test_status_for_one_subject(self, db_session):
        queue = _queue(db_session, RecordingHandler())
        await queue.enqueue("user-a", "msg-1")
        await queue.enqueue("user-b", "msg-1")
        await queue.enqueue("user-b", "msg-2")

        assert queue.get_status("user-b").queued == 2
        assert queue.get_status().queued == 3
