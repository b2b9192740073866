"""
Token lifecycle manager: hands out valid access tokens.

States per (subject_id, provider):

    Absent -> Valid -> NearExpiry -> Refreshing -> Valid | Revoked (row deleted)

- Valid tokens (expiry beyond the refresh buffer) are returned straight
  from the store with no network call. This is the common path.
- Near-expiry tokens are refreshed through the provider client. Refreshes
  are single-flight per (subject_id, provider): concurrent callers share
  one in-flight refresh and its result, so a rotating refresh token is
  never spent twice.
- A missing refresh token, or any refresh failure, revokes what is left
  upstream (best effort), deletes the local credential and raises
  ReauthorizationRequired. Refresh is never retried silently; the user has
  to reconnect.
- Refresh, revoke and store_tokens for one key run under one per-key
  lock, so a refresh never writes back a credential a disconnect removed.

Single-node only: the in-flight map lives on the manager instance, so
several processes sharing one database each refresh independently.

Usage:
    manager = TokenLifecycleManager(store, {"google": GoogleOAuthClient()})

    token = await manager.get_valid_token("user-123", "google")
    if token is None:
        ...  # never connected
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol, Tuple

from assistant_core.credentials.redaction import AuditEventType, CredentialAuditLogger
from assistant_core.credentials.store import Credential, CredentialStore, TokenGrant, TokenInfo
from assistant_core.platform.errors import (
    AppError,
    ConfigurationError,
    DecryptionError,
    ReauthorizationRequired,
)

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_BUFFER = timedelta(minutes=5)

REASON_REFRESH_TOKEN_MISSING = "refresh_token_missing"
REASON_REFRESH_FAILED = "refresh_failed"


class OAuthProviderClient(Protocol):
    """Token endpoint of one OAuth provider."""

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token."""
        ...

    async def revoke(self, token: str) -> bool:
        """Revoke a token upstream. Returns False when the provider refused."""
        ...


CredentialKey = Tuple[str, str]


class TokenLifecycleManager:
    """
    Returns currently-valid access tokens, refreshing transparently.

    Owns the per-key single-flight map; create one manager per process
    (or per test) and share it between callers.
    """

    def __init__(
        self,
        store: CredentialStore,
        oauth_clients: Optional[Dict[str, OAuthProviderClient]] = None,
        refresh_buffer: timedelta = DEFAULT_REFRESH_BUFFER,
    ):
        """
        Args:
            store: Credential store (the only writer path to credentials)
            oauth_clients: Provider name -> token endpoint client
            refresh_buffer: Refresh tokens expiring within this window
        """
        self.store = store
        self.oauth_clients: Dict[str, OAuthProviderClient] = dict(oauth_clients or {})
        self.refresh_buffer = refresh_buffer
        self.audit = CredentialAuditLogger()
        self._inflight: Dict[CredentialKey, asyncio.Task] = {}
        self._locks: Dict[CredentialKey, asyncio.Lock] = {}

    def register_provider(self, provider: str, client: OAuthProviderClient) -> None:
        """Register the token endpoint client for a provider."""
        self.oauth_clients[provider] = client

    async def store_tokens(
        self,
        subject_id: str,
        provider: str,
        tokens: TokenGrant,
    ) -> Credential:
        """
        Persist tokens from a completed authorization flow.

        Waits for any in-flight refresh or revoke of the same key so the
        fresher grant is the one left in the store.
        """
        async with self._lock_for((subject_id, provider)):
            return await self.store.save(subject_id, provider, tokens)

    async def get_valid_token(self, subject_id: str, provider: str) -> Optional[str]:
        """
        Return a currently-valid access token for (subject_id, provider).

        Returns:
            The access token, or None if the subject never connected

        Raises:
            ReauthorizationRequired: Refresh token missing or refresh rejected;
                the local credential has been deleted
            DecryptionError: Stored credential is corrupted
        """
        credential = await self.store.load(subject_id, provider)
        if credential is None:
            return None

        if not self._needs_refresh(credential):
            return credential.access_token

        return await self._refresh_single_flight(subject_id, provider)

    async def has_valid_token(self, subject_id: str, provider: str) -> bool:
        """True if a usable token is (or can be made) available. Never raises."""
        try:
            return await self.get_valid_token(subject_id, provider) is not None
        except AppError:
            return False

    async def get_token_info(self, subject_id: str, provider: str) -> Optional[TokenInfo]:
        """Connection status metadata (no token values)."""
        return await self.store.get_token_info(subject_id, provider)

    async def revoke(self, subject_id: str, provider: str) -> None:
        """
        Disconnect: revoke tokens upstream (best effort) and delete locally.

        Upstream failures are logged and swallowed. The local credential is
        always deleted.
        """
        async with self._lock_for((subject_id, provider)):
            try:
                credential = await self.store.load(subject_id, provider)
            except DecryptionError:
                logger.warning(
                    "Stored credential unreadable; skipping upstream revocation",
                    extra={"subject_id": subject_id, "provider": provider}
                )
                credential = None

            await self._revoke_and_delete(subject_id, provider, credential)

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_REVOKED,
            subject_id=subject_id,
            provider=provider,
            metadata={"reason": "disconnect"},
        )

    def is_refreshing(self, subject_id: str, provider: str) -> bool:
        return (subject_id, provider) in self._inflight

    def _needs_refresh(self, credential: Credential) -> bool:
        now = datetime.now(timezone.utc)
        return now >= credential.expires_at - self.refresh_buffer

    async def _refresh_single_flight(self, subject_id: str, provider: str) -> Optional[str]:
        key = (subject_id, provider)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(subject_id, provider))
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        else:
            logger.debug(
                "Joining in-flight token refresh",
                extra={"subject_id": subject_id, "provider": provider}
            )
        # A cancelled caller must not cancel the refresh other callers await
        return await asyncio.shield(task)

    def _forget(self, key: CredentialKey, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def _lock_for(self, key: CredentialKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def _refresh(self, subject_id: str, provider: str) -> Optional[str]:
        async with self._lock_for((subject_id, provider)):
            return await self._refresh_locked(subject_id, provider)

    async def _refresh_locked(self, subject_id: str, provider: str) -> Optional[str]:
        # Re-read: an earlier flight or a revoke may have changed this key
        credential = await self.store.load(subject_id, provider)
        if credential is None:
            return None
        if not self._needs_refresh(credential):
            return credential.access_token

        if not credential.refresh_token:
            logger.warning(
                "Token expired with no refresh token available",
                extra={"subject_id": subject_id, "provider": provider}
            )
            await self._revoke_and_delete(subject_id, provider, credential)
            raise ReauthorizationRequired(
                subject_id=subject_id,
                provider=provider,
                reason=REASON_REFRESH_TOKEN_MISSING,
            )

        client = self.oauth_clients.get(provider)
        if client is None:
            raise ConfigurationError(
                f"No OAuth client registered for provider: {provider}",
                setting=provider,
            )

        try:
            grant = await client.refresh(credential.refresh_token)
        except Exception as e:
            logger.error(
                "Token refresh failed",
                extra={
                    "subject_id": subject_id,
                    "provider": provider,
                    "error_type": type(e).__name__,
                }
            )
            self.audit.log_error(subject_id, provider, str(e))
            await self._revoke_and_delete(subject_id, provider, credential)
            raise ReauthorizationRequired(
                subject_id=subject_id,
                provider=provider,
                reason=REASON_REFRESH_FAILED,
            ) from e

        refreshed = await self.store.save(
            subject_id,
            provider,
            TokenGrant(
                access_token=grant.access_token,
                # Providers usually do not reissue the refresh token
                refresh_token=grant.refresh_token or credential.refresh_token,
                expires_in=grant.expires_in,
                scope=grant.scope or credential.scope,
                token_type=grant.token_type or credential.token_type or "Bearer",
            ),
            update_only=True,
        )
        if refreshed is None:
            logger.warning(
                "Credential removed during refresh; discarding new grant",
                extra={"subject_id": subject_id, "provider": provider}
            )
            await self._revoke_upstream(client, credential, "access_token", grant.access_token)
            return None

        self.audit.log(
            event_type=AuditEventType.CREDENTIAL_REFRESHED,
            subject_id=subject_id,
            provider=provider,
            metadata={
                "new_expires_at": refreshed.expires_at.isoformat(),
                "rotated": bool(grant.refresh_token),
            },
        )
        logger.info(
            "Token refreshed successfully",
            extra={
                "subject_id": subject_id,
                "provider": provider,
                "new_expires_at": refreshed.expires_at.isoformat(),
            }
        )

        return refreshed.access_token

    async def _revoke_and_delete(
        self,
        subject_id: str,
        provider: str,
        credential: Optional[Credential],
    ) -> None:
        client = self.oauth_clients.get(provider)
        if credential is not None and client is not None:
            await self._revoke_upstream(client, credential, "access_token", credential.access_token)
            await self._revoke_upstream(client, credential, "refresh_token", credential.refresh_token)
        elif credential is not None:
            logger.warning(
                "No OAuth client registered; skipping upstream revocation",
                extra={"subject_id": subject_id, "provider": provider}
            )

        await self.store.delete(subject_id, provider)

    async def _revoke_upstream(
        self,
        client: OAuthProviderClient,
        credential: Credential,
        token_kind: str,
        token: Optional[str],
    ) -> None:
        if not token:
            return
        try:
            revoked = await client.revoke(token)
        except Exception as e:
            logger.warning(
                "Error revoking token upstream",
                extra={
                    "subject_id": credential.subject_id,
                    "provider": credential.provider,
                    "part": token_kind,
                    "error_type": type(e).__name__,
                }
            )
            return

        if revoked:
            logger.info(
                "Token revoked upstream",
                extra={
                    "subject_id": credential.subject_id,
                    "provider": credential.provider,
                    "part": token_kind,
                }
            )
        else:
            logger.warning(
                "Upstream token revocation returned false",
                extra={
                    "subject_id": credential.subject_id,
                    "provider": credential.provider,
                    "part": token_kind,
                }
            )
