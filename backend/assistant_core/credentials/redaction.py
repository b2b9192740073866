"""
Token scrubbing for logs, plus the credential audit trail.

SECURITY REQUIREMENTS:
- Access and refresh tokens never reach a log handler
- subject_id and provider stay readable so incidents can be traced
- Every store/refresh/revoke/delete leaves an audit record

Audit records go to the "assistant_core.audit" logger with event types
credential.stored, credential.refreshed, credential.revoked,
credential.deleted and credential.error.

Usage:
    audit = CredentialAuditLogger()
    audit.log(AuditEventType.CREDENTIAL_REVOKED, "user-123", "google")

    handler.addFilter(CredentialLoggingFilter())
"""

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

REDACTED_VALUE = "[REDACTED]"
AUDIT_LOGGER_NAME = "assistant_core.audit"

_MAX_DEPTH = 10


class AuditEventType(str, Enum):
    """Credential audit event types."""
    CREDENTIAL_STORED = "credential.stored"
    CREDENTIAL_REFRESHED = "credential.refreshed"
    CREDENTIAL_REVOKED = "credential.revoked"
    CREDENTIAL_DELETED = "credential.deleted"
    CREDENTIAL_ERROR = "credential.error"


# Token shapes issued by the providers we connect to
CREDENTIAL_SECRET_PATTERNS = [
    re.compile(r"ya29\.[\w\-]+"),  # Google access token
    re.compile(r"1//[\w\-]+"),  # Google refresh token
    re.compile(r"EwB[\w\-+/=]{20,}"),  # Microsoft access token
    re.compile(r"(?<=Bearer )[\w\-.~+/]+=*", re.IGNORECASE),
    re.compile(r"(?:access|refresh)_token=[^&\s]+", re.IGNORECASE),
]

# Key names that look secret but are not
_ALLOWED_KEYS = frozenset({"token_type", "auth_tag_length", "subject_id", "provider"})

_SECRET_KEY_FRAGMENTS = (
    "token", "secret", "credential", "bearer",
    "oauth", "api_key", "apikey", "password", "authorization",
)

# Standard LogRecord attributes; only extra= fields are scrubbed
_RESERVED_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime"}


def is_credential_secret_key(key: str) -> bool:
    """True if a dict/extra key name suggests its value is a secret."""
    name = key.lower()
    if name in _ALLOWED_KEYS:
        return False
    return any(fragment in name for fragment in _SECRET_KEY_FRAGMENTS)


def redact_credential_value(value: Any) -> Any:
    """Replace token-shaped substrings in a string. Other types pass through."""
    if isinstance(value, str):
        for pattern in CREDENTIAL_SECRET_PATTERNS:
            value = pattern.sub(REDACTED_VALUE, value)
    return value


def redact_credential_data(data: Any, _depth: int = 0) -> Any:
    """
    Scrub a nested structure before it is logged.

    Values under secret-looking keys are replaced wholesale; every other
    string is scanned for token shapes. Lists and tuples come back as lists.
    """
    if _depth > _MAX_DEPTH:
        return data
    if isinstance(data, dict):
        return {
            key: (
                REDACTED_VALUE
                if isinstance(key, str) and is_credential_secret_key(key)
                else redact_credential_data(value, _depth + 1)
            )
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_credential_data(item, _depth + 1) for item in data]
    return redact_credential_value(data)


class CredentialAuditLogger:
    """Writes credential lifecycle events. Metadata is scrubbed first."""

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME):
        self.logger = logging.getLogger(logger_name)

    def log(
        self,
        event_type: AuditEventType,
        subject_id: str,
        provider: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.logger.info(
            f"Credential audit: {event_type.value}",
            extra={
                "event_type": event_type.value,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "subject_id": subject_id,
                "provider": provider,
                "audit_metadata": redact_credential_data(metadata or {}),
            }
        )

    def log_error(self, subject_id: str, provider: str, error: str) -> None:
        self.log(
            AuditEventType.CREDENTIAL_ERROR,
            subject_id,
            provider,
            metadata={"error": redact_credential_value(error)},
        )


class CredentialLoggingFilter(logging.Filter):
    """
    Handler filter that scrubs the message, its args and extra= fields.

    Always returns True: records are cleaned, never dropped.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_credential_value(record.msg)

        if isinstance(record.args, dict):
            record.args = redact_credential_data(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(redact_credential_value(arg) for arg in record.args)

        for key, value in list(record.__dict__.items()):
            if key in _RESERVED_RECORD_ATTRS:
                continue
            if is_credential_secret_key(key):
                setattr(record, key, REDACTED_VALUE)
            elif isinstance(value, (str, dict, list)):
                setattr(record, key, redact_credential_data(value))

        return True


def setup_credential_logging() -> None:
    """Attach the redaction filter to every handler on the root logger."""
    redaction_filter = CredentialLoggingFilter()
    for handler in logging.getLogger().handlers:
        handler.addFilter(redaction_filter)

    logger.info("Log redaction enabled for credential secrets")
