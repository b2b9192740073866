"""
Response schemas for the retry queue status endpoint.
"""

from typing import Optional

from pydantic import BaseModel


class QueueCountsResponse(BaseModel):
    queued: int
    processing: int
    completed: int
    failed_retryable: int
    failed_terminal: int
    total: int
    drain_state: str


class ProcessorStatusResponse(BaseModel):
    running: bool
    processing: bool
    interval_seconds: float
    batch_size: int
    ticks: int
    skipped_ticks: int


class RetryQueueStatusResponse(BaseModel):
    """Queue counts plus processor state (processor is absent when not wired)."""

    queue: QueueCountsResponse
    processor: Optional[ProcessorStatusResponse] = None
