"""
Resilient call wrapper for flaky or rate-limited upstream APIs.

Executes an async operation, asks a caller-supplied classifier whether a
failure is worth retrying, and retries transient failures with jittered
exponential backoff up to a fixed number of attempts.

PRINCIPLES:
- Provider-agnostic: all knowledge of error shapes lives in classify()
- Permanent failures are re-raised immediately, without retry
- After the last attempt the last error is re-raised with .attempts set
- The same closure is re-invoked, so wrapped operations must be idempotent
  (read-only calls, or calls carrying an idempotency key)

Usage:
    caller = ResilientCaller(max_attempts=3, base_delay=1.0)
    messages = await caller.execute(
        lambda: client.list_messages(token),
        classify_upstream_error,
    )

    @resilient(classify_upstream_error)
    async def fetch_event(event_id): ...
"""

import asyncio
import functools
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from assistant_core.config.settings import CoreSettings
from assistant_core.platform.errors import (
    AppError,
    PermanentUpstreamError,
    TransientUpstreamError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_JITTER_RATIO = 0.3

# 403 error codes that mean "slow down" rather than "forbidden"
RATE_LIMIT_ERROR_CODES = frozenset({
    "rateLimitExceeded",
    "userRateLimitExceeded",
    "quotaExceeded",
})


class CallClassification(str, Enum):
    """Whether a failed upstream call may be retried."""
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


Classifier = Callable[[BaseException], CallClassification]


def _status_and_code(error: BaseException) -> tuple[Optional[int], Optional[str]]:
    """Pull the upstream HTTP status and structured error code off an error."""
    if isinstance(error, UpstreamError):
        return error.upstream_status, error.error_code
    if isinstance(error, AppError):
        # status_code on our own errors is the HTTP mapping, not an upstream status
        return None, None
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code, extract_error_code(error.response)
    status_code = getattr(error, "status_code", None)
    if status_code is None:
        status_code = getattr(error, "status", None)
    return status_code, getattr(error, "error_code", None)


def extract_error_code(response: httpx.Response) -> Optional[str]:
    """
    Read the structured error code from a provider error body.

    Understands the Google shape ({"error": {"errors": [{"reason": ...}],
    "status": ...}}) and the OAuth token endpoint shape ({"error": "..."}).
    """
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None

    error = body.get("error")
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        errors = error.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            reason = errors[0].get("reason")
            if reason:
                return reason
        code = error.get("status") or error.get("code")
        return str(code) if code is not None else None
    return None


def classify_status(status_code: Optional[int], error_code: Optional[str] = None) -> CallClassification:
    """Classify an upstream HTTP status plus structured error code."""
    if status_code is None:
        return CallClassification.PERMANENT
    if status_code == 429:
        return CallClassification.RETRYABLE
    if status_code == 403 and error_code in RATE_LIMIT_ERROR_CODES:
        return CallClassification.RETRYABLE
    if 500 <= status_code < 600:
        return CallClassification.RETRYABLE
    return CallClassification.PERMANENT


def classify_upstream_error(error: BaseException) -> CallClassification:
    """
    Default classifier for HTTP providers.

    Retryable: 429, 403 with a rate/quota error code, any 5xx, timeouts,
    transport errors and TransientUpstreamError. Everything else
    (401, 404, malformed request, programming errors) is permanent.
    """
    if isinstance(error, TransientUpstreamError):
        return CallClassification.RETRYABLE
    if isinstance(error, PermanentUpstreamError):
        return CallClassification.PERMANENT
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException, httpx.TransportError)):
        return CallClassification.RETRYABLE

    status_code, error_code = _status_and_code(error)
    return classify_status(status_code, error_code)


def upstream_error_from_response(
    response: httpx.Response,
    provider: Optional[str] = None,
    message: Optional[str] = None,
) -> UpstreamError:
    """Build a Transient/PermanentUpstreamError from a failed provider response."""
    error_code = extract_error_code(response)
    text = message or f"{provider or 'Upstream'} request failed with HTTP {response.status_code}"

    if classify_status(response.status_code, error_code) is CallClassification.RETRYABLE:
        retry_after = None
        header = response.headers.get("Retry-After")
        if header and header.isdigit():
            retry_after = float(header)
        return TransientUpstreamError(
            text,
            provider=provider,
            upstream_status=response.status_code,
            error_code=error_code,
            retry_after=retry_after,
        )

    return PermanentUpstreamError(
        text,
        provider=provider,
        upstream_status=response.status_code,
        error_code=error_code,
    )


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS
    jitter_ratio: float = DEFAULT_JITTER_RATIO

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must not be negative")

    def calculate_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Delay before retrying after attempt `attempt` (0-indexed).

        base * 2**attempt plus up to jitter_ratio of that, uniformly drawn.
        A Retry-After value from the provider is a floor on the result.
        """
        delay = self.base_delay_seconds * (2 ** attempt)
        jitter = random.uniform(0, delay * self.jitter_ratio)
        if retry_after is not None:
            return max(delay + jitter, retry_after)
        return delay + jitter


class ResilientCaller:
    """
    Executes upstream calls with classification-driven retries.

    Stateless between calls; one instance can be shared by every caller.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
        jitter_ratio: float = DEFAULT_JITTER_RATIO,
        timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Args:
            max_attempts: Total attempts including the first one
            base_delay: Base backoff delay in seconds
            jitter_ratio: Max random jitter as a fraction of the delay
            timeout: Per-attempt timeout in seconds (None = rely on the client)
            sleep: Awaitable sleep used between attempts
        """
        self.policy = RetryPolicy(
            max_attempts=max_attempts,
            base_delay_seconds=base_delay,
            jitter_ratio=jitter_ratio,
        )
        self.timeout = timeout
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: CoreSettings) -> "ResilientCaller":
        """Caller configured from UPSTREAM_* settings."""
        return cls(
            max_attempts=settings.upstream_max_attempts,
            base_delay=settings.upstream_base_delay,
            timeout=settings.upstream_timeout_seconds,
        )

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        classify: Classifier = classify_upstream_error,
        max_attempts: Optional[int] = None,
        operation_name: Optional[str] = None,
    ) -> T:
        """
        Run `operation`, retrying while `classify` says RETRYABLE.

        Raises:
            The operation's own exception: immediately when permanent, or
            after the last attempt with `.attempts` set to the attempt count
        """
        attempts_allowed = max_attempts or self.policy.max_attempts
        name = operation_name or getattr(operation, "__name__", "upstream_call")

        for attempt in range(attempts_allowed):
            try:
                return await self._run_once(operation)
            except Exception as error:
                classification = classify(error)

                if classification is CallClassification.PERMANENT:
                    logger.warning(
                        "Upstream call failed (not retrying)",
                        extra={
                            "operation": name,
                            "attempt": attempt + 1,
                            "error_type": type(error).__name__,
                        }
                    )
                    raise

                if attempt + 1 >= attempts_allowed:
                    _annotate_attempts(error, attempt + 1)
                    logger.error(
                        "Upstream call failed after max attempts",
                        extra={
                            "operation": name,
                            "attempts": attempt + 1,
                            "error_type": type(error).__name__,
                        }
                    )
                    raise

                delay = self.policy.calculate_delay(
                    attempt, getattr(error, "retry_after", None)
                )
                logger.info(
                    "Retrying upstream call after delay",
                    extra={
                        "operation": name,
                        "attempt": attempt + 1,
                        "next_attempt": attempt + 2,
                        "max_attempts": attempts_allowed,
                        "delay_seconds": round(delay, 3),
                        "error_type": type(error).__name__,
                    }
                )
                await self._sleep(delay)

        # range() above always returns or raises
        raise RuntimeError("unreachable")

    async def _run_once(self, operation: Callable[[], Awaitable[T]]) -> T:
        if self.timeout is None:
            return await operation()
        try:
            return await asyncio.wait_for(operation(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransientUpstreamError(
                f"Upstream call timed out after {self.timeout}s"
            ) from e


def _annotate_attempts(error: BaseException, attempts: int) -> None:
    try:
        error.attempts = attempts
    except AttributeError:
        # Exceptions with __slots__ cannot take new attributes
        logger.debug("Could not annotate exception with attempt count")


async def execute(
    operation: Callable[[], Awaitable[T]],
    classify: Classifier = classify_upstream_error,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
) -> T:
    """One-off form of ResilientCaller.execute()."""
    caller = ResilientCaller(max_attempts=max_attempts, base_delay=base_delay)
    return await caller.execute(operation, classify)


def resilient(
    classify: Classifier = classify_upstream_error,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    timeout: Optional[float] = None,
):
    """Decorator form: retry the decorated coroutine function per the policy."""
    caller = ResilientCaller(max_attempts=max_attempts, base_delay=base_delay, timeout=timeout)

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await caller.execute(
                lambda: func(*args, **kwargs),
                classify,
                operation_name=func.__name__,
            )
        return wrapper

    return decorator
