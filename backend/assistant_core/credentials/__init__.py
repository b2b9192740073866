"""
Credentials module for encrypted OAuth token management.

This module provides:
- Encrypted storage for OAuth tokens (one credential per subject/provider)
- Transparent, single-flight token refresh
- Revocation on disconnect
- Audit logging with automatic redaction

SECURITY:
- Tokens are encrypted at rest using ENCRYPTION_KEY
- No plaintext tokens outside process memory
- Tokens NEVER appear in logs or API responses

Usage:
    from assistant_core.credentials import CredentialStore, TokenLifecycleManager

    store = CredentialStore(db_session, cipher)
    manager = TokenLifecycleManager(store, {"google": GoogleOAuthClient()})
    token = await manager.get_valid_token("user-123", "google")
"""

from assistant_core.credentials.store import (
    Credential,
    CredentialStore,
    TokenGrant,
    TokenInfo,
)
from assistant_core.credentials.token_manager import (
    OAuthProviderClient,
    TokenLifecycleManager,
)
from assistant_core.credentials.redaction import (
    redact_credential_data,
    CredentialAuditLogger,
    CredentialLoggingFilter,
    AuditEventType,
)

__all__ = [
    # Store
    "Credential",
    "CredentialStore",
    "TokenGrant",
    "TokenInfo",
    # Lifecycle
    "OAuthProviderClient",
    "TokenLifecycleManager",
    # Redaction
    "redact_credential_data",
    "CredentialAuditLogger",
    "CredentialLoggingFilter",
    "AuditEventType",
]
