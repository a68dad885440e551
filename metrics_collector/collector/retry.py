"""
Retry policy shared by the batch fetcher and OAuth-protected requests.

A policy is a plain value: how many attempts, and how long to wait after a
failed attempt. Waits are a pure function of (attempt, error) so tests can
fast-forward a fake clock and assert the exact schedule.
"""

from dataclasses import dataclass
from typing import Callable

from metrics_collector.errors import APIError, AuthError

RATE_LIMIT_STATUS = 429


def default_backoff(attempt: int, error: Exception) -> float:
    """10s, 20s, 30s... after a 429; a flat 5s after anything else."""
    if isinstance(error, APIError) and error.status_code == RATE_LIMIT_STATUS:
        return attempt * 10.0
    return 5.0


def no_backoff(attempt: int, error: Exception) -> float:
    return 0.0


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    backoff: Callable[[int, Exception], float] = default_backoff

    def should_retry(self, attempt: int, error: Exception) -> bool:
        """True if another attempt should follow the failed `attempt` (1-based)."""
        if isinstance(error, AuthError) and error.fatal:
            return False
        return attempt < self.max_attempts

    def delay(self, attempt: int, error: Exception) -> float:
        return max(0.0, float(self.backoff(attempt, error)))


DEFAULT_RETRY_POLICY = RetryPolicy()
NO_RETRY = RetryPolicy(max_attempts=1, backoff=no_backoff)
