"""
Retry queue observability route.

GET /api/retry-queue/status returns queue counts and processor state.
The application wires `app.state.retry_queue` (and optionally
`app.state.queue_processor`) at startup.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from assistant_core.api.schemas.retry_queue import (
    ProcessorStatusResponse,
    QueueCountsResponse,
    RetryQueueStatusResponse,
)
from assistant_core.jobs.retry_queue import RetryQueue
from assistant_core.platform.errors import ConfigurationError
from assistant_core.workers.queue_processor import QueueProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/retry-queue", tags=["retry-queue"])


def get_retry_queue(request: Request) -> RetryQueue:
    queue = getattr(request.app.state, "retry_queue", None)
    if queue is None:
        raise ConfigurationError("Retry queue is not configured", setting="retry_queue")
    return queue


def get_queue_processor(request: Request) -> Optional[QueueProcessor]:
    return getattr(request.app.state, "queue_processor", None)


@router.get("/status", response_model=RetryQueueStatusResponse)
def retry_queue_status(
    subject_id: Optional[str] = Query(None, description="Limit counts to one subject"),
    queue: RetryQueue = Depends(get_retry_queue),
    processor: Optional[QueueProcessor] = Depends(get_queue_processor),
):
    """Queue counts by status, plus the interval processor's state."""
    counts = queue.get_status(subject_id=subject_id)
    return RetryQueueStatusResponse(
        queue=QueueCountsResponse(**counts.to_dict()),
        processor=ProcessorStatusResponse(**processor.status()) if processor else None,
    )
