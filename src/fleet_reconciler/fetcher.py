"""HTTP fetcher for the vehicle feed and route table, with retry logic."""

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from urllib.parse import parse_qs, urlparse, urlunparse

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from fleet_reconciler.models import AuthType, FeedSource


class FetchError(Exception):
    """Base class for fetch failures raised by this module."""


class NonRetryableError(FetchError):
    """Error that should not be retried (e.g., 4xx client errors)."""

    def __init__(self, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}")


class InvalidPayloadError(FetchError):
    """The response body was not a JSON document."""


@dataclass
class FetchResult:
    """Result of a successful document fetch."""

    payload: Any
    headers: dict[str, str]
    status_code: int
    fetch_timestamp: datetime
    duration_ms: float
    content_length: int

    @property
    def content_type(self) -> str | None:
        """Get the content-type header if present."""
        return self.headers.get("content-type")


# HTTP status codes that should not be retried
NON_RETRYABLE_STATUS_CODES = {
    400,  # Bad request (our fault)
    401,  # Unauthorized (config issue)
    403,  # Forbidden (config issue)
    404,  # Not found (URL changed)
    410,  # Gone (feed discontinued)
}

# Exception types that warrant a retry
RETRYABLE_EXCEPTIONS = (
    httpx.TransportError,  # Connection errors and timeouts
    httpx.HTTPStatusError,  # 5xx server errors (after raise_for_status)
)


def create_retrying(source: FeedSource) -> AsyncRetrying:
    """Create a tenacity AsyncRetrying instance for a source.

    Waits are fixed rather than exponential; the poll interval already
    spaces out retries across cycles.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(source.retry.max_attempts),
        wait=wait_fixed(source.retry.wait_seconds),
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
        reraise=True,
    )


def _build_request(source: FeedSource) -> tuple[str, dict[str, str], dict[str, str] | None]:
    """Split the source URL and merge auth into query params or headers."""
    parsed_url = urlparse(str(source.url))
    params: dict[str, str] = {}
    if parsed_url.query:
        params = {k: v[0] for k, v in parse_qs(parsed_url.query).items()}

    headers: dict[str, str] | None = None
    if source.auth is not None:
        if source.auth.type == AuthType.HEADER:
            headers = {source.auth.key: source.auth.value}
        elif source.auth.type == AuthType.QUERY:
            params[source.auth.key] = source.auth.value

    # httpx rebuilds the query string from params
    clean_url = urlunparse((
        parsed_url.scheme,
        parsed_url.netloc,
        parsed_url.path,
        parsed_url.params,
        "",
        parsed_url.fragment,
    ))
    return clean_url, params, headers


async def _do_fetch(
    client: httpx.AsyncClient,
    source: FeedSource,
) -> FetchResult:
    """Perform a single HTTP fetch and decode the JSON body.

    Raises:
        NonRetryableError: For 4xx client errors that should not be retried.
        InvalidPayloadError: If the body is not JSON.
        httpx.HTTPStatusError: For 5xx server errors.
        httpx.TransportError: For network errors and timeouts.
    """
    fetch_start = datetime.now(UTC)
    url, params, headers = _build_request(source)

    response = await client.get(
        url,
        params=params or None,
        headers=headers,
        timeout=source.timeout_seconds,
    )

    duration_ms = (datetime.now(UTC) - fetch_start).total_seconds() * 1000

    if response.status_code in NON_RETRYABLE_STATUS_CODES:
        raise NonRetryableError(
            response.status_code,
            f"Non-retryable error for {source.kind.value}",
        )

    response.raise_for_status()

    try:
        payload = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidPayloadError(f"{source.kind.value} did not return JSON: {e}") from e

    return FetchResult(
        payload=payload,
        headers=dict(response.headers),
        status_code=response.status_code,
        fetch_timestamp=fetch_start,
        duration_ms=duration_ms,
        content_length=len(response.content),
    )


async def fetch_document(
    client: httpx.AsyncClient,
    source: FeedSource,
) -> FetchResult:
    """Fetch and decode one JSON document with retry logic.

    Args:
        client: Async HTTP client to use for the request.
        source: Resolved source configuration.

    Returns:
        FetchResult carrying the decoded payload and response metadata.

    Raises:
        NonRetryableError: For 4xx client errors that should not be retried.
        InvalidPayloadError: If the body is not JSON.
        httpx.HTTPStatusError: For 5xx server errors (after retry exhaustion).
        httpx.TransportError: For network errors (after retry exhaustion).
    """
    retrying = create_retrying(source)

    async for attempt in retrying:
        with attempt:
            return await _do_fetch(client, source)

    # This should never be reached due to reraise=True
    raise RuntimeError("Retry loop exited without returning or raising")


def create_http_client(max_connections: int = 10) -> httpx.AsyncClient:
    """Create an async HTTP client with connection pooling.

    Args:
        max_connections: Maximum number of concurrent connections.

    Returns:
        Configured httpx.AsyncClient instance.
    """
    limits = httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=max(max_connections // 2, 1),
    )

    return httpx.AsyncClient(
        limits=limits,
        follow_redirects=True,
    )
