"""
Batch Fetcher

Executes a list of outbound requests in fixed-size concurrent batches with a
pause between batches and a per-request retry policy. A failing request never
cancels its siblings; it is reported as a failed FetchOutcome.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from metrics_collector.errors import AuthError

from .retry import DEFAULT_RETRY_POLICY, RetryPolicy

logger = logging.getLogger(__name__)

Sender = Callable[["RequestDescriptor"], Awaitable[Any]]
Sleeper = Callable[[float], Awaitable[None]]


@dataclass
class RequestDescriptor:
    """One outbound API request."""
    name: str
    url: str
    method: str = "POST"
    json: Optional[Any] = None
    params: Optional[Dict[str, Any]] = None
    headers: Optional[Dict[str, str]] = None
    timeout: Optional[float] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def request_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {}
        if self.json is not None:
            kwargs["json"] = self.json
        if self.params:
            kwargs["params"] = self.params
        if self.headers:
            kwargs["headers"] = self.headers
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout
        return kwargs


@dataclass
class FetchOutcome:
    """Result of one descriptor after all attempts."""
    descriptor: RequestDescriptor
    data: Any = None
    error: Optional[Exception] = None
    attempts: int = 0

    @property
    def success(self) -> bool:
        return self.error is None


class BatchFetcher:
    """
    Rate-limited, batched, retrying request executor.

    Defaults stay under a provider ceiling of 5 concurrent requests per
    second: batches of 4 with a 5 second pause between them.
    """

    def __init__(
        self,
        batch_size: int = 4,
        batch_delay: float = 5.0,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Sleeper = asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.retry_policy = retry_policy
        self._sleep = sleep

    async def fetch_all(
        self,
        descriptors: List[RequestDescriptor],
        send: Sender,
    ) -> List[FetchOutcome]:
        """
        Execute every descriptor and return outcomes in input order.

        Raises:
            AuthError: a request hit a fatal auth failure; raised once the
                batch containing it has finished
        """
        batches = [
            descriptors[i:i + self.batch_size]
            for i in range(0, len(descriptors), self.batch_size)
        ]
        outcomes: List[FetchOutcome] = []

        for index, batch in enumerate(batches):
            logger.info(f"Processing batch {index + 1}/{len(batches)} ({len(batch)} requests)")

            results = await asyncio.gather(
                *(self.fetch_one(descriptor, send) for descriptor in batch)
            )
            outcomes.extend(results)

            for outcome in results:
                if isinstance(outcome.error, AuthError) and outcome.error.fatal:
                    raise outcome.error

            if index < len(batches) - 1:
                logger.info(f"Pausing {self.batch_delay}s between batches...")
                await self._sleep(self.batch_delay)

        failed = sum(1 for o in outcomes if not o.success)
        logger.info(f"Fetched {len(outcomes) - failed}/{len(outcomes)} requests successfully")
        return outcomes

    async def fetch_one(self, descriptor: RequestDescriptor, send: Sender) -> FetchOutcome:
        """Run one descriptor under the retry policy; never raises."""
        policy = self.retry_policy
        attempt = 0

        while True:
            attempt += 1
            try:
                logger.info(f"Request '{descriptor.name}' (attempt {attempt}/{policy.max_attempts})")
                data = await send(descriptor)
                return FetchOutcome(descriptor=descriptor, data=data, attempts=attempt)

            except Exception as e:
                if not policy.should_retry(attempt, e):
                    logger.error(
                        f"Request '{descriptor.name}' failed after {attempt} attempt(s): {e}"
                    )
                    return FetchOutcome(descriptor=descriptor, error=e, attempts=attempt)

                wait = policy.delay(attempt, e)
                logger.warning(
                    f"Request '{descriptor.name}' failed (attempt {attempt}/{policy.max_attempts}): {e}. "
                    f"Retrying in {wait}s..."
                )
                await self._sleep(wait)
