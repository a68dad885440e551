"""
Error taxonomy shared by every collector.

Per-record errors (RecordError and its subclasses) never escalate beyond the
record being processed. Everything else that escapes a run is fatal for
that run.
"""

import enum
from typing import Any, Dict, Optional


class CollectorError(Exception):
    """Base error for the collection system."""

    def __init__(self, message: str, stats: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.stats = stats


class ConfigError(CollectorError):
    """Required configuration or credentials are missing."""


class ConnectivityError(CollectorError):
    """A source API failed its connection check."""


class AuthErrorKind(enum.Enum):
    """Why an OAuth token exchange failed."""
    MISSING_REFRESH_TOKEN = "missing_refresh_token"
    BAD_CREDENTIALS = "bad_credentials"
    REVOKED_GRANT = "revoked_grant"
    UNKNOWN = "unknown"


class AuthError(CollectorError):
    """Token exchange failure."""

    def __init__(self, kind: AuthErrorKind, message: str, status_code: int = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def fatal(self) -> bool:
        """Fatal errors need operator action and are never retried."""
        return self.kind is not AuthErrorKind.UNKNOWN


class APIError(CollectorError):
    """Non-success response from a source API."""

    def __init__(self, message: str, status_code: int = None, response: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class TransientAPIError(APIError):
    """Timeouts, 5xx and 429 responses."""


class RecordError(CollectorError):
    """A single record failed validation or reconciliation."""


class DimensionMappingError(RecordError):
    """A composite key has no configured mapping."""

    def __init__(self, namespace: str, key: Any):
        super().__init__(f"No mapping configured for {namespace} key {key!r}")
        self.namespace = namespace
        self.key = key


class PersistenceError(CollectorError):
    """Storage failure (connect, schema, or statement)."""
