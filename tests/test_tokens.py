"""
Tests for OAuth token management.

These tests verify:
- Expiry buffer and refresh-on-demand
- A single refresh per expiry cycle, including concurrent callers
- Classification of token endpoint failures
- One refresh-and-retry on a 401
- Refresh token storage and the authorization code exchange
"""

import asyncio
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from metrics_collector.auth import (
    EXPIRY_BUFFER_SECONDS,
    GOOGLE_TOKEN_URL,
    RefreshTokenStore,
    TokenManager,
    build_consent_url,
    exchange_code,
)
from metrics_collector.errors import APIError, AuthError, AuthErrorKind

API_URL = "https://www.googleapis.com/webmasters/v3/sites"


class FakeGoogle:
    """MockTransport handler for the token endpoint and one API endpoint."""

    def __init__(self, token_responses=None, api_responses=None):
        self.token_responses = list(token_responses or [])
        self.api_responses = list(api_responses or [])
        self.token_requests = []
        self.api_requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == GOOGLE_TOKEN_URL:
            self.token_requests.append(parse_qs(request.content.decode()))
            if self.token_responses:
                return self.token_responses.pop(0)
            n = len(self.token_requests)
            return httpx.Response(200, json={"access_token": f"access-{n}", "expires_in": 3600})

        self.api_requests.append(request)
        if self.api_responses:
            return self.api_responses.pop(0)
        return httpx.Response(200, json={"siteEntry": []})


def make_manager(store, handler, clock=None, **kwargs) -> TokenManager:
    options = {"transport": httpx.MockTransport(handler)}
    if clock is not None:
        options["clock"] = clock
    options.update(kwargs)
    return TokenManager("client-id", "client-secret", store, **options)


# =============================================================================
# EXPIRY TESTS
# =============================================================================

class TestExpiry:
    """Test refresh timing around the safety buffer."""

    @pytest.mark.asyncio
    async def test_token_reused_while_valid(self, token_store, fake_clock):
        google = FakeGoogle()
        manager = make_manager(token_store, google, clock=fake_clock)

        assert await manager.get_access_token() == "access-1"
        fake_clock.advance(3600 - EXPIRY_BUFFER_SECONDS - 1)
        assert await manager.get_access_token() == "access-1"
        assert len(google.token_requests) == 1

        await manager.close()

    @pytest.mark.asyncio
    async def test_refresh_inside_buffer(self, token_store, fake_clock):
        """A token 30s from expiry is treated as expired."""
        google = FakeGoogle()
        manager = make_manager(token_store, google, clock=fake_clock)

        await manager.get_access_token()
        fake_clock.advance(3600 - 30)

        assert manager.is_expired()
        assert await manager.get_access_token() == "access-2"
        assert len(google.token_requests) == 2

        await manager.close()

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, token_store, fake_clock):
        google = FakeGoogle()
        manager = make_manager(token_store, google, clock=fake_clock)

        tokens = await asyncio.gather(*(manager.get_access_token() for _ in range(5)))

        assert set(tokens) == {"access-1"}
        assert len(google.token_requests) == 1

        await manager.close()

    @pytest.mark.asyncio
    async def test_force_refresh_refreshes_every_call(self, token_store, fake_clock):
        google = FakeGoogle()
        manager = make_manager(token_store, google, clock=fake_clock, force_refresh=True)

        await manager.get_access_token()
        await manager.get_access_token()

        assert len(google.token_requests) == 2
        await manager.close()

    @pytest.mark.asyncio
    async def test_refresh_request_is_form_encoded(self, token_store):
        google = FakeGoogle()
        manager = make_manager(token_store, google)

        await manager.refresh()

        form = google.token_requests[0]
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["stored-refresh-token"]
        assert form["client_id"] == ["client-id"]
        await manager.close()

    @pytest.mark.asyncio
    async def test_missing_expires_in_defaults_to_one_hour(self, token_store, fake_clock):
        google = FakeGoogle(token_responses=[httpx.Response(200, json={"access_token": "a"})])
        manager = make_manager(token_store, google, clock=fake_clock)

        await manager.refresh()

        assert manager.token.expires_at == fake_clock.now + 3600
        await manager.close()


# =============================================================================
# FAILURE CLASSIFICATION TESTS
# =============================================================================

class TestRefreshFailures:
    """Test token endpoint failure kinds."""

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, tmp_path):
        google = FakeGoogle()
        manager = make_manager(RefreshTokenStore(str(tmp_path / "none.json")), google)

        with pytest.raises(AuthError) as exc_info:
            await manager.get_access_token()

        assert exc_info.value.kind is AuthErrorKind.MISSING_REFRESH_TOKEN
        assert exc_info.value.fatal
        assert google.token_requests == []
        await manager.close()

    @pytest.mark.asyncio
    async def test_invalid_client_is_bad_credentials(self, token_store):
        google = FakeGoogle(token_responses=[
            httpx.Response(401, json={"error": "invalid_client"}),
        ])
        manager = make_manager(token_store, google)

        with pytest.raises(AuthError) as exc_info:
            await manager.refresh()

        assert exc_info.value.kind is AuthErrorKind.BAD_CREDENTIALS
        assert exc_info.value.status_code == 401
        await manager.close()

    @pytest.mark.asyncio
    async def test_invalid_grant_is_revoked(self, token_store):
        google = FakeGoogle(token_responses=[
            httpx.Response(400, json={"error": "invalid_grant", "error_description": "Token has been expired or revoked."}),
        ])
        manager = make_manager(token_store, google)

        with pytest.raises(AuthError) as exc_info:
            await manager.refresh()

        assert exc_info.value.kind is AuthErrorKind.REVOKED_GRANT
        assert exc_info.value.fatal
        await manager.close()

    @pytest.mark.asyncio
    async def test_other_failures_are_unknown_and_not_fatal(self, token_store):
        google = FakeGoogle(token_responses=[httpx.Response(503, text="unavailable")])
        manager = make_manager(token_store, google)

        with pytest.raises(AuthError) as exc_info:
            await manager.refresh()

        assert exc_info.value.kind is AuthErrorKind.UNKNOWN
        assert not exc_info.value.fatal
        await manager.close()


# =============================================================================
# AUTHENTICATED REQUEST TESTS
# =============================================================================

class TestAuthenticatedRequest:
    """Test the 401 refresh-and-retry path."""

    @pytest.mark.asyncio
    async def test_bearer_header_sent(self, token_store):
        google = FakeGoogle()
        manager = make_manager(token_store, google)

        await manager.request("GET", API_URL)

        assert google.api_requests[0].headers["Authorization"] == "Bearer access-1"
        await manager.close()

    @pytest.mark.asyncio
    async def test_401_refreshes_and_retries_once(self, token_store):
        google = FakeGoogle(api_responses=[
            httpx.Response(401, json={"error": {"code": 401}}),
            httpx.Response(200, json={"siteEntry": [{"siteUrl": "sc-domain:example.com"}]}),
        ])
        manager = make_manager(token_store, google)

        data = await manager.request("GET", API_URL)

        assert data["siteEntry"][0]["siteUrl"] == "sc-domain:example.com"
        assert len(google.token_requests) == 2
        assert len(google.api_requests) == 2
        assert google.api_requests[1].headers["Authorization"] == "Bearer access-2"
        await manager.close()

    @pytest.mark.asyncio
    async def test_second_401_is_raised(self, token_store):
        google = FakeGoogle(api_responses=[
            httpx.Response(401, json={}),
            httpx.Response(401, json={}),
        ])
        manager = make_manager(token_store, google)

        with pytest.raises(APIError) as exc_info:
            await manager.request("GET", API_URL)

        assert exc_info.value.status_code == 401
        assert len(google.api_requests) == 2
        await manager.close()

    @pytest.mark.asyncio
    async def test_403_is_not_retried(self, token_store):
        google = FakeGoogle(api_responses=[httpx.Response(403, json={})])
        manager = make_manager(token_store, google)

        with pytest.raises(APIError) as exc_info:
            await manager.request("GET", API_URL)

        assert exc_info.value.status_code == 403
        assert len(google.token_requests) == 1
        await manager.close()


# =============================================================================
# STORAGE AND AUTHORIZATION TESTS
# =============================================================================

class TestRefreshTokenStore:
    """Test the durable refresh token file."""

    def test_save_creates_directories(self, tmp_path):
        store = RefreshTokenStore(str(tmp_path / "a" / "b" / "token.json"))
        store.save("refresh-me")

        payload = json.loads(store.path.read_text())
        assert payload["refresh_token"] == "refresh-me"
        assert "created_at" in payload
        assert store.load().refresh_token == "refresh-me"

    def test_missing_file(self, tmp_path):
        store = RefreshTokenStore(str(tmp_path / "missing.json"))
        assert store.load() is None
        assert not store.exists()

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "token.json"
        path.write_text("{not json")
        assert RefreshTokenStore(str(path)).load() is None


class TestAuthorization:
    """Test the one-time consent flow."""

    def test_consent_url_requests_offline_access(self):
        url = build_consent_url(
            "client-id",
            "urn:ietf:wg:oauth:2.0:oob",
            ["https://www.googleapis.com/auth/webmasters.readonly"],
        )
        query = parse_qs(urlparse(url).query)

        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["response_type"] == ["code"]
        assert query["scope"] == ["https://www.googleapis.com/auth/webmasters.readonly"]

    @pytest.mark.asyncio
    async def test_exchange_code_saves_refresh_token(self, tmp_path):
        seen = []

        def handler(request):
            seen.append(parse_qs(request.content.decode()))
            return httpx.Response(200, json={"access_token": "a", "refresh_token": "new-refresh"})

        store = RefreshTokenStore(str(tmp_path / "token.json"))
        record = await exchange_code(
            "auth-code", "client-id", "client-secret", "urn:ietf:wg:oauth:2.0:oob",
            store, transport=httpx.MockTransport(handler),
        )

        assert record.refresh_token == "new-refresh"
        assert store.load().refresh_token == "new-refresh"
        assert seen[0]["grant_type"] == ["authorization_code"]
        assert seen[0]["code"] == ["auth-code"]

    @pytest.mark.asyncio
    async def test_exchange_without_refresh_token_fails(self, tmp_path):
        def handler(request):
            return httpx.Response(200, json={"access_token": "a"})

        store = RefreshTokenStore(str(tmp_path / "token.json"))
        with pytest.raises(AuthError) as exc_info:
            await exchange_code(
                "auth-code", "client-id", "client-secret", "urn:ietf:wg:oauth:2.0:oob",
                store, transport=httpx.MockTransport(handler),
            )

        assert exc_info.value.kind is AuthErrorKind.MISSING_REFRESH_TOKEN
        assert not store.exists()
