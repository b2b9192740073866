"""
Error taxonomy for the credential and remote-call core.

All errors raised across a component boundary inherit from AppError so
they share one shape when rendered to callers. Stack traces are NEVER
returned to clients.

Taxonomy:
- ConfigurationError: bad/missing key material or tunables. Fatal at startup.
- DecryptionError: stored ciphertext is corrupted or was tampered with.
- ReauthorizationRequired: the user must reconnect the account. Not retryable.
- TransientUpstreamError: rate limit, 5xx or timeout. Retried automatically.
- PermanentUpstreamError: any other upstream 4xx. Surfaced immediately.
"""

import logging
import uuid
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

RECONNECT_ACCOUNT_ACTION = "reconnect_account"


class AppError(Exception):
    """
    Base application error with consistent error shape.

    All custom errors should inherit from this class.
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict:
        """Convert to API error response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ConfigurationError(AppError):
    """Missing or invalid configuration. The process must not start."""

    def __init__(self, message: str, setting: Optional[str] = None):
        details = {"setting": setting} if setting else {}
        super().__init__(
            code="CONFIGURATION_ERROR",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )
        self.setting = setting


class DecryptionError(AppError):
    """Stored ciphertext could not be authenticated or decoded."""

    def __init__(self, message: str = "Failed to decrypt stored secret"):
        super().__init__(
            code="DECRYPTION_ERROR",
            message=message,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


class ReauthorizationRequired(AppError):
    """
    The stored credential can no longer be used.

    Raised when the access token is near expiry and there is no refresh
    token, or when the provider rejected the refresh. The local credential
    has already been deleted. Callers must send the user back through the
    authorization flow ("reconnect your account"), never retry.
    """

    def __init__(
        self,
        subject_id: str,
        provider: str,
        reason: str,
        message: Optional[str] = None,
    ):
        super().__init__(
            code="REAUTHORIZATION_REQUIRED",
            message=message or f"Please reconnect your {provider} account",
            status_code=status.HTTP_401_UNAUTHORIZED,
            details={
                "provider": provider,
                "reason": reason,
                "action": RECONNECT_ACCOUNT_ACTION,
            },
        )
        self.subject_id = subject_id
        self.provider = provider
        self.reason = reason
        self.action = RECONNECT_ACCOUNT_ACTION


class UpstreamError(AppError):
    """
    Error returned by (or while reaching) a third-party provider.

    Carries the provider's HTTP status and structured error code so a
    classifier can decide whether the call is worth retrying.
    """

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int,
        provider: Optional[str] = None,
        upstream_status: Optional[int] = None,
        error_code: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=status_code,
            details={
                "provider": provider,
                "upstream_status": upstream_status,
                "error_code": error_code,
            },
        )
        self.provider = provider
        self.upstream_status = upstream_status
        self.error_code = error_code
        self.retry_after = retry_after
        self.attempts: Optional[int] = None


class TransientUpstreamError(UpstreamError):
    """Rate limit, server error or timeout. Safe to retry later (503)."""

    def __init__(
        self,
        message: str = "Upstream service temporarily unavailable",
        provider: Optional[str] = None,
        upstream_status: Optional[int] = None,
        error_code: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(
            message=message,
            code="UPSTREAM_UNAVAILABLE",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            provider=provider,
            upstream_status=upstream_status,
            error_code=error_code,
            retry_after=retry_after,
        )


class PermanentUpstreamError(UpstreamError):
    """Upstream rejected the request for a reason retrying cannot fix (502)."""

    def __init__(
        self,
        message: str = "Upstream service rejected the request",
        provider: Optional[str] = None,
        upstream_status: Optional[int] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            code="UPSTREAM_REJECTED",
            status_code=status.HTTP_502_BAD_GATEWAY,
            provider=provider,
            upstream_status=upstream_status,
            error_code=error_code,
        )


def generate_correlation_id() -> str:
    """Generate a unique correlation ID for request tracing."""
    return str(uuid.uuid4())


def get_correlation_id(request: Request) -> str:
    """Get correlation ID from the X-Correlation-ID header or generate one."""
    correlation_id = request.headers.get("X-Correlation-ID")
    if correlation_id:
        return correlation_id
    return generate_correlation_id()


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    correlation_id = get_correlation_id(request)
    logger.warning(
        "Application error",
        extra={
            "correlation_id": correlation_id,
            "error_code": exc.code,
            "status_code": exc.status_code,
            "path": request.url.path,
            "method": request.method,
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"X-Correlation-ID": correlation_id},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    correlation_id = get_correlation_id(request)
    # Full exception stays server-side
    logger.exception(
        "Unhandled exception",
        extra={
            "correlation_id": correlation_id,
            "error_type": type(exc).__name__,
            "path": request.url.path,
            "method": request.method,
        }
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
                "details": {"correlation_id": correlation_id},
            }
        },
        headers={"X-Correlation-ID": correlation_id},
    )


def register_error_handlers(app: FastAPI) -> None:
    """Install consistent error rendering on a FastAPI app."""
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
