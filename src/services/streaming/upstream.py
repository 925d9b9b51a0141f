"""HTTP client side of the pipeline: open a generation stream and read it.

Only connection establishment is retried. Once bytes have started flowing a
failure is handed to the reader, which falls back to the last checkpoint.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.config import get_settings
from services.streaming.exceptions import UpstreamStreamError
from services.streaming.reader import StreamOutcome, StreamReader
from services.streaming.state import ReaderStatus


logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"


class RetryableUpstreamStatus(Exception):
    """A 429 or 5xx answer to the connect request."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"upstream answered HTTP {status_code}")
        self.status_code = status_code


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def build_upstream_client(**kwargs: Any) -> httpx.AsyncClient:
    """Create an ``httpx.AsyncClient`` with the configured read timeout.

    Generation streams stay open for a long time, so the read timeout is the
    generous ``UPSTREAM_TIMEOUT_SECONDS`` while connects still fail fast.
    """
    settings = get_settings()
    timeout = httpx.Timeout(settings.UPSTREAM_TIMEOUT_SECONDS, connect=10.0)
    return httpx.AsyncClient(timeout=timeout, **kwargs)


@asynccontextmanager
async def open_generation_stream(
    client: httpx.AsyncClient,
    url: str,
    payload: dict[str, Any],
    *,
    headers: dict[str, str] | None = None,
    attempts: int | None = None,
    initial_delay: float | None = None,
) -> AsyncIterator[AsyncIterator[bytes]]:
    """POST ``payload`` to ``url`` and yield the response body as byte chunks.

    The connect request is retried with exponential backoff on transport
    errors and on 429/5xx responses. Other 4xx responses fail immediately.

    Raises:
        UpstreamStreamError: the stream could not be opened.
    """
    settings = get_settings()
    attempts = attempts or settings.UPSTREAM_CONNECT_ATTEMPTS
    if initial_delay is None:
        initial_delay = settings.UPSTREAM_RETRY_INITIAL_DELAY_SECONDS

    request_headers = {"Accept": NDJSON_MEDIA_TYPE, **(headers or {})}
    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=initial_delay, max=initial_delay * 8),
        retry=retry_if_exception_type((httpx.TransportError, RetryableUpstreamStatus)),
        reraise=True,
    )

    response: httpx.Response | None = None
    try:
        async for attempt in retrying:
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                if attempt_number > 1:
                    logger.info(
                        "Retrying generation stream connect (attempt %d/%d)",
                        attempt_number,
                        attempts,
                    )
                request = client.build_request(
                    "POST", url, json=payload, headers=request_headers
                )
                response = await client.send(request, stream=True)
                if response.status_code >= 400:
                    status_code = response.status_code
                    await response.aclose()
                    response = None
                    if _is_retryable_status(status_code):
                        raise RetryableUpstreamStatus(status_code)
                    raise UpstreamStreamError(
                        f"Generation backend rejected the request (HTTP {status_code})"
                    )
    except (httpx.TransportError, RetryableUpstreamStatus) as exc:
        logger.error(
            "Could not open generation stream after %d attempts: %s",
            attempts,
            exc.__class__.__name__,
        )
        raise UpstreamStreamError("Could not open generation stream") from exc

    assert response is not None
    try:
        yield response.aiter_bytes()
    finally:
        await response.aclose()


async def run_generation(
    client: httpx.AsyncClient,
    url: str,
    payload: dict[str, Any],
    reader: StreamReader,
    *,
    cancel_event: asyncio.Event | None = None,
    headers: dict[str, str] | None = None,
    attempts: int | None = None,
    initial_delay: float | None = None,
) -> StreamOutcome:
    """Open the upstream stream and drive ``reader`` over it.

    A stream that cannot be opened at all gets the same checkpoint fallback
    as one that breaks halfway.
    """
    try:
        async with open_generation_stream(
            client,
            url,
            payload,
            headers=headers,
            attempts=attempts,
            initial_delay=initial_delay,
        ) as chunks:
            return await reader.consume(chunks, cancel_event)
    except UpstreamStreamError as exc:
        if reader.status is not ReaderStatus.IDLE:
            raise
        return await reader.recover_or_raise(exc)
