"""
Environment-driven settings for the credential and retry-queue core.

Read once at startup with CoreSettings.from_env(). Malformed values raise
ConfigurationError so a misconfigured process fails before serving.
"""

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional

from assistant_core.platform.errors import ConfigurationError
from assistant_core.utils.encryption import ENCRYPTION_KEY_ENV

DEFAULT_TOKEN_REFRESH_BUFFER_SECONDS = 300
DEFAULT_UPSTREAM_MAX_ATTEMPTS = 3
DEFAULT_UPSTREAM_BASE_DELAY_MS = 1000
DEFAULT_UPSTREAM_TIMEOUT_SECONDS = 10
DEFAULT_RETRY_QUEUE_INTERVAL_SECONDS = 30
DEFAULT_RETRY_QUEUE_BATCH_SIZE = 5
DEFAULT_RETRY_QUEUE_MAX_ATTEMPTS = 3


def _int_setting(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}", setting=name)
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}", setting=name)
    return value


@dataclass(frozen=True)
class CoreSettings:
    """Resolved configuration. Secrets are excluded from repr."""

    encryption_key: Optional[str] = None
    token_refresh_buffer_seconds: int = DEFAULT_TOKEN_REFRESH_BUFFER_SECONDS
    upstream_max_attempts: int = DEFAULT_UPSTREAM_MAX_ATTEMPTS
    upstream_base_delay_ms: int = DEFAULT_UPSTREAM_BASE_DELAY_MS
    upstream_timeout_seconds: int = DEFAULT_UPSTREAM_TIMEOUT_SECONDS
    retry_queue_interval_seconds: int = DEFAULT_RETRY_QUEUE_INTERVAL_SECONDS
    retry_queue_batch_size: int = DEFAULT_RETRY_QUEUE_BATCH_SIZE
    retry_queue_max_attempts: int = DEFAULT_RETRY_QUEUE_MAX_ATTEMPTS
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    database_url: Optional[str] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "CoreSettings":
        """
        Build settings from environment variables.

        Raises:
            ConfigurationError: If a numeric variable is malformed or out of range
        """
        env = os.environ if env is None else env
        return cls(
            encryption_key=env.get(ENCRYPTION_KEY_ENV),
            token_refresh_buffer_seconds=_int_setting(
                env, "TOKEN_REFRESH_BUFFER_SECONDS", DEFAULT_TOKEN_REFRESH_BUFFER_SECONDS
            ),
            upstream_max_attempts=_int_setting(
                env, "UPSTREAM_MAX_ATTEMPTS", DEFAULT_UPSTREAM_MAX_ATTEMPTS, minimum=1
            ),
            upstream_base_delay_ms=_int_setting(
                env, "UPSTREAM_BASE_DELAY_MS", DEFAULT_UPSTREAM_BASE_DELAY_MS
            ),
            upstream_timeout_seconds=_int_setting(
                env, "UPSTREAM_TIMEOUT_SECONDS", DEFAULT_UPSTREAM_TIMEOUT_SECONDS, minimum=1
            ),
            retry_queue_interval_seconds=_int_setting(
                env, "RETRY_QUEUE_INTERVAL_SECONDS", DEFAULT_RETRY_QUEUE_INTERVAL_SECONDS, minimum=1
            ),
            retry_queue_batch_size=_int_setting(
                env, "RETRY_QUEUE_BATCH_SIZE", DEFAULT_RETRY_QUEUE_BATCH_SIZE, minimum=1
            ),
            retry_queue_max_attempts=_int_setting(
                env, "RETRY_QUEUE_MAX_ATTEMPTS", DEFAULT_RETRY_QUEUE_MAX_ATTEMPTS, minimum=1
            ),
            google_client_id=env.get("GOOGLE_CLIENT_ID"),
            google_client_secret=env.get("GOOGLE_CLIENT_SECRET"),
            database_url=env.get("DATABASE_URL"),
        )

    @property
    def token_refresh_buffer(self) -> timedelta:
        return timedelta(seconds=self.token_refresh_buffer_seconds)

    @property
    def upstream_base_delay(self) -> float:
        return self.upstream_base_delay_ms / 1000.0

    def __repr__(self) -> str:
        return (
            f"CoreSettings(encryption_key=[REDACTED], "
            f"token_refresh_buffer_seconds={self.token_refresh_buffer_seconds}, "
            f"upstream_max_attempts={self.upstream_max_attempts}, "
            f"retry_queue_interval_seconds={self.retry_queue_interval_seconds}, "
            f"retry_queue_batch_size={self.retry_queue_batch_size})"
        )
