"""
Google OAuth token endpoint client.

Implements the refresh/revoke half of the provider contract used by
TokenLifecycleManager. Authorization-code exchange and consent screens
belong to the route layer.

Every request carries an explicit timeout.
"""

import logging
import os
from typing import Optional

import httpx

from assistant_core.config.settings import CoreSettings
from assistant_core.credentials.store import TokenGrant
from assistant_core.platform.errors import ConfigurationError, TransientUpstreamError
from assistant_core.services.resilient_call import upstream_error_from_response

logger = logging.getLogger(__name__)

GOOGLE_PROVIDER = "google"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

DEFAULT_TIMEOUT_SECONDS = 10.0


class GoogleOAuthClient:
    """
    Client for Google's OAuth 2.0 token and revocation endpoints.

    Usage:
        async with GoogleOAuthClient() as client:
            grant = await client.refresh(refresh_token)
    """

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            client_id: OAuth client ID (GOOGLE_CLIENT_ID if not provided)
            client_secret: OAuth client secret (GOOGLE_CLIENT_SECRET if not provided)
            timeout: Per-request timeout in seconds
            http_client: Pre-built client (tests inject a MockTransport here)

        Raises:
            ConfigurationError: If client credentials are not configured
        """
        self.client_id = client_id or os.getenv("GOOGLE_CLIENT_ID")
        self.client_secret = client_secret or os.getenv("GOOGLE_CLIENT_SECRET")

        if not self.client_id or not self.client_secret:
            raise ConfigurationError(
                "Google OAuth credentials not configured. "
                "Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET.",
                setting="GOOGLE_CLIENT_ID",
            )

        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(
        cls,
        settings: CoreSettings,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "GoogleOAuthClient":
        """Client configured from GOOGLE_CLIENT_ID/SECRET and UPSTREAM_TIMEOUT_SECONDS."""
        return cls(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            timeout=settings.upstream_timeout_seconds,
            http_client=http_client,
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """
        Exchange a refresh token for a new access token.

        Raises:
            TransientUpstreamError: Network failure, 429 or 5xx
            PermanentUpstreamError: Refresh token expired/revoked (400 invalid_grant) etc.
        """
        try:
            response = await self._client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise TransientUpstreamError(
                f"Google token refresh request failed: {type(e).__name__}",
                provider=GOOGLE_PROVIDER,
            ) from e

        if response.status_code != 200:
            error = upstream_error_from_response(
                response,
                provider=GOOGLE_PROVIDER,
                message=f"Google token refresh failed: {response.status_code}",
            )
            logger.warning(
                "Google token refresh rejected",
                extra={
                    "status_code": response.status_code,
                    "error_code": error.error_code,
                }
            )
            raise error

        data = response.json()
        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),  # Usually not returned
            expires_in=data.get("expires_in", 3600),
            scope=data.get("scope"),
            token_type=data.get("token_type", "Bearer"),
        )

    async def revoke(self, token: str) -> bool:
        """
        Revoke an access or refresh token.

        Returns:
            True if Google accepted the revocation, False otherwise
        """
        try:
            response = await self._client.post(
                GOOGLE_REVOKE_URL,
                params={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            logger.warning(
                "Google token revocation request failed",
                extra={"error_type": type(e).__name__}
            )
            return False

        if response.status_code != 200:
            logger.warning(
                "Google token revocation rejected",
                extra={"status_code": response.status_code}
            )
            return False

        return True
