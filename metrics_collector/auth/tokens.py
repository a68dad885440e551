"""
OAuth Access Token Management

Owns one provider's access-token lifecycle:
- Refresh on demand (no token, near expiry, or forced)
- Expiry tracking with a 60 second safety buffer
- Durable refresh-token storage in a JSON file
- One refresh-and-retry on a 401 response
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import BaseModel, ValidationError

from metrics_collector.collector.client import send_request
from metrics_collector.errors import APIError, AuthError, AuthErrorKind

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
EXPIRY_BUFFER_SECONDS = 60.0
DEFAULT_TOKEN_TTL = 3600


class RefreshTokenRecord(BaseModel):
    """What the out-of-band authorization step writes to disk."""
    refresh_token: str
    created_at: datetime


class RefreshTokenStore:
    """JSON file holding a RefreshTokenRecord."""

    def __init__(self, path: str):
        self.path = Path(path).expanduser().resolve()

    def load(self) -> Optional[RefreshTokenRecord]:
        """Read the record; None when the file is missing or unreadable."""
        if not self.path.exists():
            return None
        try:
            return RefreshTokenRecord.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.error(f"Could not read refresh token from {self.path}: {e}")
            return None

    def exists(self) -> bool:
        record = self.load()
        return bool(record and record.refresh_token)

    def save(self, refresh_token: str) -> RefreshTokenRecord:
        """Write a new record, creating parent directories as needed."""
        record = RefreshTokenRecord(
            refresh_token=refresh_token,
            created_at=datetime.now(timezone.utc),
        )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(record.model_dump(mode="json"), indent=2),
            encoding="utf-8",
        )
        logger.info(f"Refresh token saved to {self.path}")
        return record


@dataclass
class Token:
    """In-memory access token."""
    access_token: str
    expires_at: float


class TokenManager:
    """
    Access-token manager for one OAuth provider.

    Usage:
        manager = TokenManager(client_id, client_secret, RefreshTokenStore(path))

        data = await manager.request("GET", "https://www.googleapis.com/webmasters/v3/sites")

        await manager.close()
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        store: RefreshTokenStore,
        token_url: str = GOOGLE_TOKEN_URL,
        force_refresh: bool = False,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.store = store
        self.token_url = token_url
        self.force_refresh = force_refresh
        self._clock = clock
        self._token: Optional[Token] = None
        self._lock = asyncio.Lock()
        self._http = httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport)

    @property
    def token(self) -> Optional[Token]:
        return self._token

    def is_expired(self) -> bool:
        """True when there is no token or it is within the safety buffer of expiry."""
        if self._token is None:
            return True
        return self._clock() >= self._token.expires_at - EXPIRY_BUFFER_SECONDS

    async def get_access_token(self) -> str:
        """Return a valid access token, refreshing first if needed."""
        async with self._lock:
            if self.force_refresh or self.is_expired():
                await self._refresh()
            return self._token.access_token

    async def refresh(self) -> str:
        """Exchange the stored refresh token for a new access token."""
        async with self._lock:
            return await self._refresh()

    async def _refresh(self) -> str:
        logger.info("Refreshing access token...")

        record = self.store.load()
        if not record or not record.refresh_token:
            raise AuthError(
                AuthErrorKind.MISSING_REFRESH_TOKEN,
                f"Refresh token not found at {self.store.path}. Run the authorize command first.",
            )

        try:
            response = await self._http.post(
                self.token_url,
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": record.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise AuthError(AuthErrorKind.UNKNOWN, f"Token refresh failed: {e}") from e

        if not response.is_success:
            raise self._classify_failure(response)

        payload = response.json()
        access_token = payload.get("access_token")
        if not access_token:
            raise AuthError(AuthErrorKind.UNKNOWN, "Token response did not include an access_token")

        expires_in = payload.get("expires_in") or DEFAULT_TOKEN_TTL
        self._token = Token(access_token=access_token, expires_at=self._clock() + float(expires_in))
        logger.info(f"Access token refreshed, valid for {expires_in}s")
        return access_token

    @staticmethod
    def _classify_failure(response: httpx.Response) -> AuthError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        code = body.get("error") if isinstance(body, dict) else None
        description = body.get("error_description", "") if isinstance(body, dict) else ""

        logger.error(f"Token endpoint returned {response.status_code}: {body}")

        if code == "invalid_client":
            return AuthError(
                AuthErrorKind.BAD_CREDENTIALS,
                "Invalid OAuth client id or secret - check configuration",
                status_code=response.status_code,
            )
        if code == "invalid_grant":
            return AuthError(
                AuthErrorKind.REVOKED_GRANT,
                "Refresh token is invalid or revoked - run the authorize command again",
                status_code=response.status_code,
            )
        return AuthError(
            AuthErrorKind.UNKNOWN,
            f"Token refresh failed ({response.status_code}): {code or 'unknown'} {description}".strip(),
            status_code=response.status_code,
        )

    async def auth_headers(self) -> Dict[str, str]:
        token = await self.get_access_token()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    async def request(self, method: str, url: str, headers: Optional[Dict[str, str]] = None, **kwargs) -> Any:
        """
        Make an authenticated request.

        On a 401 the token is refreshed once and the request retried once;
        a second 401 is raised as APIError.
        """
        try:
            return await send_request(
                self._http, method, url,
                headers={**await self.auth_headers(), **(headers or {})},
                **kwargs,
            )
        except APIError as e:
            if e.status_code != 401:
                raise

        logger.warning("Access token rejected (401), refreshing and retrying once...")
        await self.refresh()
        return await send_request(
            self._http, method, url,
            headers={**await self.auth_headers(), **(headers or {})},
            **kwargs,
        )

    async def send(self, descriptor) -> Any:
        """Execute a RequestDescriptor with authentication."""
        return await self.request(descriptor.method, descriptor.url, **descriptor.request_kwargs())

    async def close(self):
        await self._http.aclose()
