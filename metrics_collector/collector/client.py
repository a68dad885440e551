"""
Source API Client

Async HTTP client with:
- Connection pooling
- Status classification (transient vs. permanent failures)
- Request/response logging

Retrying is not done here; BatchFetcher applies a RetryPolicy around send().
"""

import logging
from typing import Any, Dict, Optional

import httpx

from metrics_collector.errors import APIError, TransientAPIError

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = (429, 500, 502, 503, 504)


def _response_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def raise_for_response(response: httpx.Response) -> None:
    """Raise APIError/TransientAPIError for any non-2xx response."""
    if response.is_success:
        return

    status = response.status_code
    body = _response_body(response)
    message = f"API request failed: {status} {response.request.method} {response.request.url}"

    if status in TRANSIENT_STATUS_CODES:
        raise TransientAPIError(message, status_code=status, response=body)
    raise APIError(message, status_code=status, response=body)


async def send_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    **kwargs,
) -> Any:
    """Issue one request and return the decoded JSON body."""
    logger.debug(f"{method} {url}")

    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise TransientAPIError(f"Request timed out: {e}") from e
    except httpx.HTTPError as e:
        raise TransientAPIError(f"HTTP error: {e}") from e

    raise_for_response(response)
    return _response_body(response)


class ApiClient:
    """
    Async client for a JSON API with static credentials.

    Usage:
        client = ApiClient(headers={"Authorization": "Bearer ..."})

        data = await client.request("POST", "https://api.example.com/v2/x", json={...})

        await client.close()
    """

    def __init__(
        self,
        base_url: str = "",
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        max_connections: int = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Prefix for relative request URLs
            headers: Headers sent with every request
            timeout: Request timeout in seconds
            max_connections: Maximum concurrent connections
            transport: Custom transport (tests use httpx.MockTransport)
        """
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Content-Type": "application/json", **(headers or {})},
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max(1, max_connections // 2),
            ),
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self._closed = False

    async def request(self, method: str, url: str, **kwargs) -> Any:
        """
        Make a request and return the decoded body.

        Raises:
            TransientAPIError: timeouts, network errors, 429 and 5xx
            APIError: any other non-2xx response
        """
        if self._closed:
            raise APIError("Client is closed")
        return await send_request(self._client, method, url, **kwargs)

    async def send(self, descriptor) -> Any:
        """Execute a RequestDescriptor."""
        return await self.request(descriptor.method, descriptor.url, **descriptor.request_kwargs())

    async def close(self):
        """Close the HTTP client."""
        if not self._closed:
            await self._client.aclose()
            self._closed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
