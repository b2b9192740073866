"""
Interval processor for the background retry queue.

Fires RetryQueue.drain() every interval_seconds. Each tick is an
independent task, so a slow drain can overlap the next tick; the queue's
drain state rejects the overlap and the tick is counted as skipped.

CONSTRAINTS:
- start() is idempotent
- Errors inside a tick are logged; they never stop the loop
- stop() cancels the loop and waits for the current drain to finish

Usage (in-process):
    processor = QueueProcessor(queue, interval_seconds=30, batch_size=5)
    processor.start()
    ...
    await processor.stop()

Usage (cron style, one drain):
    python -m assistant_core.workers.queue_processor
"""

import asyncio
import logging
import sys
from typing import Optional, Set

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from assistant_core.config.settings import CoreSettings
from assistant_core.credentials.redaction import setup_credential_logging
from assistant_core.jobs.retry_queue import (
    DEFAULT_BATCH_SIZE,
    DrainResult,
    QueueWorkItem,
    RetryQueue,
)
from assistant_core.services.resilient_call import ResilientCaller

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 30


class QueueProcessor:
    """Runs periodic drains of one RetryQueue."""

    def __init__(
        self,
        queue: RetryQueue,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self.queue = queue
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.ticks = 0
        self.skipped_ticks = 0
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_tasks: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        """Start the interval loop on the running event loop."""
        if self.running:
            logger.info("Queue processor already running")
            return

        self._loop_task = asyncio.ensure_future(self._run())
        logger.info(
            "Queue processor started",
            extra={
                "interval_seconds": self.interval_seconds,
                "batch_size": self.batch_size,
            }
        )

    async def stop(self) -> None:
        """Stop the loop and wait for in-flight ticks."""
        if self._loop_task is None:
            return

        self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass
        self._loop_task = None

        if self._tick_tasks:
            await asyncio.wait(set(self._tick_tasks))

        logger.info("Queue processor stopped")

    async def tick(self) -> Optional[DrainResult]:
        """
        Run one drain.

        Returns:
            The drain result, or None if the drain raised
        """
        self.ticks += 1
        try:
            result = await self.queue.drain(batch_size=self.batch_size)
        except Exception as e:
            logger.error(
                "Queue processor tick failed",
                extra={"error": str(e), "error_type": type(e).__name__},
                exc_info=True,
            )
            return None

        if result.skipped:
            self.skipped_ticks += 1
        return result

    def status(self) -> dict:
        return {
            "running": self.running,
            "processing": self.queue.is_draining,
            "interval_seconds": self.interval_seconds,
            "batch_size": self.batch_size,
            "ticks": self.ticks,
            "skipped_ticks": self.skipped_ticks,
        }

    async def _run(self) -> None:
        # First drain fires immediately, then on a fixed interval
        while True:
            task = asyncio.ensure_future(self.tick())
            self._tick_tasks.add(task)
            task.add_done_callback(self._tick_tasks.discard)
            await asyncio.sleep(self.interval_seconds)


def _get_database_session(database_url: Optional[str]) -> Session:
    """Create database session for a one-shot drain."""
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    engine = create_engine(database_url, pool_pre_ping=True)
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return session_factory()


async def _log_only_handler(item: QueueWorkItem) -> None:
    logger.info(
        "Processing queued item",
        extra={
            "item_id": item.id,
            "subject_id": item.subject_id,
            "payload_key": item.payload_key,
            "attempt": item.attempt,
        }
    )


async def run_once_async(batch_size: Optional[int] = None) -> dict:
    """Drain the queue once against DATABASE_URL."""
    settings = CoreSettings.from_env()
    session = _get_database_session(settings.database_url)
    try:
        queue = RetryQueue(
            session,
            handler=_log_only_handler,
            caller=ResilientCaller.from_settings(settings),
            max_attempts=settings.retry_queue_max_attempts,
        )
        result = await queue.drain(batch_size=batch_size or settings.retry_queue_batch_size)
        return result.to_dict()
    finally:
        session.close()


def main():
    """Entry point for running one drain from the command line."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    setup_credential_logging()
    try:
        result = asyncio.run(run_once_async())
        logger.info("Queue drain finished", extra=result)
        sys.exit(0)
    except Exception as e:
        logger.error("Queue drain failed", extra={"error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
