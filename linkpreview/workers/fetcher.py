"""Async HTTP fetcher.

Responsible solely for retrieving remote resources (pages and images) as
streamed responses.

Uses httpx.AsyncClient which is meant to be long-lived and reused.
A single shared client is managed by the module; see ``get_http_client``
and ``close_http_client`` for lifecycle hooks.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from tenacity import (
    RetryError,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    wait_exponential,
)

from linkpreview.core.config import settings

logger = logging.getLogger(__name__)

HTML_ACCEPT = "text/html,application/xhtml+xml;q=0.9,*/*;q=0.5"
IMAGE_ACCEPT = "image/avif,image/webp,image/png,image/jpeg,image/gif;q=0.9,*/*;q=0.5"

# Module-level shared client
_http_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    """Return the shared AsyncClient.  Creates one if missing."""
    global _http_client  # noqa: PLW0603
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.http_timeout),
            follow_redirects=True,
            verify=settings.http_verify_ssl,
            headers={"User-Agent": settings.http_user_agent},
        )
    return _http_client


async def close_http_client() -> None:
    """Close the shared AsyncClient gracefully."""
    global _http_client  # noqa: PLW0603
    if _http_client is not None and not _http_client.is_closed:
        await _http_client.aclose()
        _http_client = None
        logger.info("HTTP client closed.")


class FetchError(Exception):
    """Raised when a remote resource cannot be retrieved.

    ``status_code`` is set when the origin answered with a non-success
    status, and is ``None`` for transport-level failures.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@retry(
    retry=retry_if_exception_type((httpx.TimeoutException, httpx.ConnectError)),
    stop=lambda rs: rs.attempt_number >= settings.http_max_retries + 1,
    wait=wait_exponential(multiplier=0.5, min=0.5, max=10),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=False,
)
async def _send_with_retry(url: str, accept: str) -> httpx.Response:
    """Single send attempt; tenacity retries on transient errors."""
    return await _do_send(url, accept)


async def _do_send(url: str, accept: str) -> httpx.Response:
    """Send a GET for *url* and return the response with its body unread."""
    client = get_http_client()
    request = client.build_request("GET", url, headers={"Accept": accept})
    try:
        return await client.send(request, stream=True)
    except httpx.InvalidURL as exc:
        raise FetchError(f"Invalid URL '{url}': {exc}") from exc
    except httpx.TimeoutException:
        raise  # propagate for retry logic
    except httpx.ConnectError:
        raise  # propagate for retry logic
    except httpx.RequestError as exc:
        raise FetchError(f"Request error for '{url}': {exc}") from exc


@asynccontextmanager
async def open_stream(url: str, accept: str = HTML_ACCEPT) -> AsyncIterator[httpx.Response]:
    """Open a streamed GET for *url*; the body is closed on exit.

    Retries are controlled by ``settings.http_max_retries`` (read per
    attempt, so patches in tests work as expected).

    Raises:
        FetchError: on transport failure, exhausted retries, or a
            non-success status (``status_code`` set).
    """
    try:
        response = await _send_with_retry(url, accept)
    except RetryError as exc:
        raise FetchError(
            f"Failed to fetch {url} after {settings.http_max_retries + 1} attempts: "
            f"{exc.last_attempt.exception()}"
        ) from exc

    try:
        if not response.is_success:
            raise FetchError(
                f"Origin responded {response.status_code} for {url}",
                status_code=response.status_code,
            )
        yield response
    finally:
        await response.aclose()


async def iter_body(response: httpx.Response, limit: int) -> AsyncIterator[bytes]:
    """Yield decoded body chunks, stopping after *limit* bytes.

    A transport or content-decoding error mid-body ends the stream instead
    of propagating: callers work with whatever arrived.
    """
    remaining = limit
    try:
        async for chunk in response.aiter_bytes():
            if remaining <= 0:
                logger.debug("Body of %s exceeded %d bytes; truncating", response.url, limit)
                return
            chunk = chunk[:remaining]
            remaining -= len(chunk)
            yield chunk
    except (httpx.TransportError, httpx.DecodingError) as exc:
        logger.warning("Body read of %s interrupted: %s", response.url, exc)


async def read_body(response: httpx.Response, limit: int) -> bytes | None:
    """Read the whole body, or return ``None`` if it is larger than *limit*."""
    declared = response.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > limit:
        return None

    buffer = bytearray()
    async for chunk in response.aiter_bytes():
        buffer.extend(chunk)
        if len(buffer) > limit:
            return None
    return bytes(buffer)
