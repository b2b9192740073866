"""
Google OAuth client tests (httpx.MockTransport, no network).
"""

import json
from urllib.parse import parse_qs

import httpx
import pytest

from assistant_core.config.settings import CoreSettings
from assistant_core.integrations.google.oauth_client import (
    GOOGLE_REVOKE_URL,
    GOOGLE_TOKEN_URL,
    GoogleOAuthClient,
)
from assistant_core.platform.errors import (
    ConfigurationError,
    PermanentUpstreamError,
    TransientUpstreamError,
)

CLIENT_ID = "test-client-id.apps.googleusercontent.com"
CLIENT_SECRET = "test-client-secret-not-real"


def _client(handler) -> GoogleOAuthClient:
    return GoogleOAuthClient(
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestConfiguration:

    def test_missing_credentials_raise(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_CLIENT_ID", raising=False)
        monkeypatch.delenv("GOOGLE_CLIENT_SECRET", raising=False)

        with pytest.raises(ConfigurationError):
            GoogleOAuthClient()

    @pytest.mark.asyncio
    async def test_credentials_from_env(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_CLIENT_ID", CLIENT_ID)
        monkeypatch.setenv("GOOGLE_CLIENT_SECRET", CLIENT_SECRET)

        async with GoogleOAuthClient() as client:
            assert client.client_id == CLIENT_ID

    @pytest.mark.asyncio
    async def test_from_settings(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_CLIENT_ID", raising=False)
        monkeypatch.delenv("GOOGLE_CLIENT_SECRET", raising=False)
        settings = CoreSettings.from_env({
            "GOOGLE_CLIENT_ID": CLIENT_ID,
            "GOOGLE_CLIENT_SECRET": CLIENT_SECRET,
        })

        async with GoogleOAuthClient.from_settings(settings) as client:
            assert client.client_id == CLIENT_ID
            assert client.client_secret == CLIENT_SECRET


class TestRefresh:

    @pytest.mark.asyncio
    async def test_refresh_posts_form_and_parses_grant(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={
                "access_token": "test_access_not_real",
                "expires_in": 3599,
                "scope": "https://www.googleapis.com/auth/gmail.readonly",
                "token_type": "Bearer",
            })

        async with _client(handler) as client:
            grant = await client.refresh("test_refresh_not_real")

        assert seen["url"] == GOOGLE_TOKEN_URL
        assert seen["form"]["grant_type"] == ["refresh_token"]
        assert seen["form"]["refresh_token"] == ["test_refresh_not_real"]
        assert seen["form"]["client_id"] == [CLIENT_ID]
        assert grant.access_token == "test_access_not_real"
        assert grant.refresh_token is None
        assert grant.expires_in == 3599

    @pytest.mark.asyncio
    async def test_invalid_grant_is_permanent(self):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant"})

        async with _client(handler) as client:
            with pytest.raises(PermanentUpstreamError) as exc_info:
                await client.refresh("revoked-refresh")

        assert exc_info.value.error_code == "invalid_grant"
        assert exc_info.value.upstream_status == 400
        assert exc_info.value.provider == "google"

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        def handler(request):
            return httpx.Response(503, text="unavailable")

        async with _client(handler) as client:
            with pytest.raises(TransientUpstreamError):
                await client.refresh("refresh")

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(TransientUpstreamError) as exc_info:
                await client.refresh("refresh")

        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_error_message_never_contains_token(self):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant"})

        async with _client(handler) as client:
            with pytest.raises(PermanentUpstreamError) as exc_info:
                await client.refresh("test_refresh_secret_xxxx")

        assert "test_refresh_secret_xxxx" not in json.dumps(exc_info.value.to_dict())


class TestRevoke:

    @pytest.mark.asyncio
    async def test_revoke_success(self):
        seen = {}

        def handler(request):
            seen["url"] = request.url
            return httpx.Response(200)

        async with _client(handler) as client:
            assert await client.revoke("test_token") is True

        assert str(seen["url"]).startswith(GOOGLE_REVOKE_URL)
        assert seen["url"].params["token"] == "test_token"

    @pytest.mark.asyncio
    async def test_revoke_rejected_returns_false(self):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_token"})

        async with _client(handler) as client:
            assert await client.revoke("already-revoked") is False

    @pytest.mark.asyncio
    async def test_revoke_network_error_returns_false(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with _client(handler) as client:
            assert await client.revoke("token") is False
