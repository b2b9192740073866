"""
Wires the credential and retry-queue components from settings.

The encryption key is validated before anything else is built, so a
missing or malformed key stops the process at startup instead of at
the first token read.

Usage:
    settings = CoreSettings.from_env()
    core = build_core(
        db_session, GoogleOAuthClient.from_settings(settings), analyze_message, settings
    )
    core.processor.start()
    token = await core.token_manager.get_valid_token("user-123", "google")
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from assistant_core.config.settings import CoreSettings
from assistant_core.credentials.store import CredentialStore
from assistant_core.credentials.token_manager import OAuthProviderClient, TokenLifecycleManager
from assistant_core.integrations.google.oauth_client import GOOGLE_PROVIDER
from assistant_core.jobs.retry_queue import QueueHandler, RetryQueue
from assistant_core.services.resilient_call import ResilientCaller
from assistant_core.utils.encryption import ENCRYPTION_KEY_ENV, SecretCipher, validate_encryption_key
from assistant_core.workers.queue_processor import QueueProcessor

logger = logging.getLogger(__name__)


@dataclass
class CoreServices:
    """Components built by build_core()."""
    settings: CoreSettings
    cipher: SecretCipher
    store: CredentialStore
    token_manager: TokenLifecycleManager
    caller: ResilientCaller
    queue: RetryQueue
    processor: QueueProcessor


def build_core(
    db_session: Session,
    oauth_client: Optional[OAuthProviderClient],
    handler: QueueHandler,
    settings: Optional[CoreSettings] = None,
    provider: str = GOOGLE_PROVIDER,
) -> CoreServices:
    """
    Build cipher -> store -> token manager -> caller -> queue -> processor.

    Raises:
        ConfigurationError: If ENCRYPTION_KEY is missing or malformed
    """
    settings = settings or CoreSettings.from_env()

    # Fail fast before any component exists
    validate_encryption_key(settings.encryption_key)
    cipher = SecretCipher(settings.encryption_key)

    store = CredentialStore(db_session, cipher)
    token_manager = TokenLifecycleManager(
        store,
        {provider: oauth_client} if oauth_client is not None else None,
        refresh_buffer=settings.token_refresh_buffer,
    )
    caller = ResilientCaller.from_settings(settings)
    queue = RetryQueue(
        db_session,
        handler,
        caller=caller,
        max_attempts=settings.retry_queue_max_attempts,
    )
    processor = QueueProcessor(
        queue,
        interval_seconds=settings.retry_queue_interval_seconds,
        batch_size=settings.retry_queue_batch_size,
    )

    logger.info(
        "Credential core initialized",
        extra={
            "key_source": ENCRYPTION_KEY_ENV,
            "refresh_buffer_seconds": settings.token_refresh_buffer_seconds,
            "upstream_max_attempts": settings.upstream_max_attempts,
            "queue_interval_seconds": settings.retry_queue_interval_seconds,
            "queue_batch_size": settings.retry_queue_batch_size,
        }
    )

    return CoreServices(
        settings=settings,
        cipher=cipher,
        store=store,
        token_manager=token_manager,
        caller=caller,
        queue=queue,
        processor=processor,
    )
