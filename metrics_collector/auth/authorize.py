"""
Out-of-band OAuth authorization.

Run once per installation: the operator opens the consent URL, approves
access, and pastes back the authorization code. The code is exchanged for a
refresh token which is written to the durable token store that
TokenManager reads on every refresh.
"""

import logging
from typing import Iterable, Optional
from urllib.parse import urlencode

import httpx

from metrics_collector.errors import AuthError, AuthErrorKind

from .tokens import GOOGLE_TOKEN_URL, RefreshTokenRecord, RefreshTokenStore

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"


def build_consent_url(
    client_id: str,
    redirect_uri: str,
    scopes: Iterable[str],
    auth_url: str = GOOGLE_AUTH_URL,
) -> str:
    """
    Build the consent URL.

    access_type=offline and prompt=consent are both needed for the provider
    to issue a refresh token.
    """
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(s for s in scopes if s),
        "access_type": "offline",
        "prompt": "consent",
    }
    return f"{auth_url}?{urlencode(params)}"


async def exchange_code(
    code: str,
    client_id: str,
    client_secret: str,
    redirect_uri: str,
    store: RefreshTokenStore,
    token_url: str = GOOGLE_TOKEN_URL,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> RefreshTokenRecord:
    """Exchange an authorization code and persist the refresh token."""
    async with httpx.AsyncClient(transport=transport, timeout=30.0) as client:
        try:
            response = await client.post(
                token_url,
                data={
                    "code": code,
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "redirect_uri": redirect_uri,
                    "grant_type": "authorization_code",
                },
            )
        except httpx.HTTPError as e:
            raise AuthError(AuthErrorKind.UNKNOWN, f"Code exchange failed: {e}") from e

    if not response.is_success:
        logger.error(f"Code exchange returned {response.status_code}: {response.text}")
        raise AuthError(
            AuthErrorKind.UNKNOWN,
            f"Code exchange failed ({response.status_code})",
            status_code=response.status_code,
        )

    refresh_token = response.json().get("refresh_token")
    if not refresh_token:
        raise AuthError(
            AuthErrorKind.MISSING_REFRESH_TOKEN,
            "Provider did not return a refresh token; revoke the app's access and authorize again",
        )

    logger.info("Authorization completed")
    return store.save(refresh_token)
