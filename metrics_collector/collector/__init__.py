"""
Collection machinery shared by every source:
- ApiClient: httpx transport with status classification
- BatchFetcher: batched, rate-limited, retrying request execution
- ReconciliationEngine: surrogate keys, content dedup, upsert decisions
- CollectorRuntime: the run lifecycle
"""

from .retry import RetryPolicy, DEFAULT_RETRY_POLICY, NO_RETRY, default_backoff
from .client import ApiClient, send_request, raise_for_response
from .fetcher import BatchFetcher, RequestDescriptor, FetchOutcome
from .reconcile import (
    ReconciliationEngine,
    ReconcileOutcome,
    EMPTY_CONTENT_ID,
    content_digest,
)
from .runtime import (
    CollectorRuntime,
    CollectionRun,
    RunContext,
    RunOptions,
    RunState,
    RunStats,
    SourceAdapter,
)

__all__ = [
    # Retry
    "RetryPolicy",
    "DEFAULT_RETRY_POLICY",
    "NO_RETRY",
    "default_backoff",
    # Client
    "ApiClient",
    "send_request",
    "raise_for_response",
    # Fetcher
    "BatchFetcher",
    "RequestDescriptor",
    "FetchOutcome",
    # Reconciliation
    "ReconciliationEngine",
    "ReconcileOutcome",
    "EMPTY_CONTENT_ID",
    "content_digest",
    # Runtime
    "CollectorRuntime",
    "CollectionRun",
    "RunContext",
    "RunOptions",
    "RunState",
    "RunStats",
    "SourceAdapter",
]
