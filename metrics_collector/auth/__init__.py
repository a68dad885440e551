"""OAuth token lifecycle and one-time authorization."""

from .tokens import (
    GOOGLE_TOKEN_URL,
    EXPIRY_BUFFER_SECONDS,
    RefreshTokenRecord,
    RefreshTokenStore,
    Token,
    TokenManager,
)
from .authorize import build_consent_url, exchange_code

__all__ = [
    "GOOGLE_TOKEN_URL",
    "EXPIRY_BUFFER_SECONDS",
    "RefreshTokenRecord",
    "RefreshTokenStore",
    "Token",
    "TokenManager",
    "build_consent_url",
    "exchange_code",
]
