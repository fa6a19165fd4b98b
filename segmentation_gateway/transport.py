"""
transport.py - HTTP resources owned by a SegmentationClient.

Three objects, each wrapping the previous one:

    connection handler   httpx.AsyncHTTPTransport (or an injected one)
    retry wrapper        RetryTransport, exponential backoff + jitter
    request issuer       httpx.AsyncClient with base URL, timeout, auth header

TransportResources.create() acquires them in that order; if any step
fails the ones already acquired are closed before the error propagates.
aclose() releases them in reverse order and may be called more than once.

The backoff formula is:

    delay = min(base_delay * 2^attempt + uniform(0, 1), max_delay)
"""

import asyncio
import logging
import random
from contextlib import AsyncExitStack
from typing import Awaitable, Callable, Mapping, Optional

import httpx

logger = logging.getLogger(__name__)

# Gateway / availability errors worth another attempt.
RETRY_STATUS_CODES = frozenset({502, 503, 504})


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Seconds to wait before retry number *attempt* (0-based)."""
    jitter = random.uniform(0, 1) if max_delay > 0 else 0.0
    return min(base_delay * (2 ** attempt) + jitter, max_delay)


class RetryTransport(httpx.AsyncBaseTransport):
    """
    Retry transient failures of the wrapped transport.

    A request is retried when the wrapped transport raises
    ``httpx.TransportError`` (connection errors, timeouts) or answers with
    one of RETRY_STATUS_CODES.  After *max_attempts* the last exception is
    re-raised, or the last response returned, unchanged.

    The wrapped transport is not closed here; it belongs to whoever
    created it.
    """

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._transport = transport
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._closed = False

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        for attempt in range(self.max_attempts):
            last_attempt = attempt + 1 == self.max_attempts
            try:
                response = await self._transport.handle_async_request(request)
            except httpx.TransportError as exc:
                if last_attempt:
                    logger.error(
                        "All %d attempts failed for %s %s: %s",
                        self.max_attempts, request.method, request.url.path, exc,
                    )
                    raise
                reason = type(exc).__name__
            else:
                if last_attempt or response.status_code not in RETRY_STATUS_CODES:
                    return response
                await response.aclose()
                reason = f"HTTP {response.status_code}"

            delay = backoff_delay(attempt, self.base_delay, self.max_delay)
            logger.warning(
                "Attempt %d/%d for %s %s failed (%s). Retrying in %.2fs…",
                attempt + 1, self.max_attempts, request.method, request.url.path, reason, delay,
            )
            await self._sleep(delay)

        raise AssertionError("unreachable")  # pragma: no cover

    async def aclose(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed


class TransportResources:
    """Owning container for the connection handler, retry wrapper and request issuer."""

    def __init__(
        self,
        handler: httpx.AsyncBaseTransport,
        retry: RetryTransport,
        client: httpx.AsyncClient,
        stack: AsyncExitStack,
    ):
        self.handler = handler
        self.retry = retry
        self.client = client
        self._stack = stack
        self._closed = False

    @classmethod
    async def create(
        cls,
        base_url: str,
        headers: Mapping[str, str],
        timeout_s: float = 600.0,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "TransportResources":
        """
        Acquire handler -> retry wrapper -> request issuer.

        Parameters
        ----------
        transport : httpx.AsyncBaseTransport, optional
            Connection handler to use instead of a new AsyncHTTPTransport
            (httpx.MockTransport in tests).  It is owned, and closed, by
            the container from then on.
        """
        async with AsyncExitStack() as stack:
            handler = transport if transport is not None else httpx.AsyncHTTPTransport()
            stack.push_async_callback(handler.aclose)

            retry = RetryTransport(
                handler,
                max_attempts=max_attempts,
                base_delay=base_delay,
                max_delay=max_delay,
            )
            stack.push_async_callback(retry.aclose)

            client = httpx.AsyncClient(
                base_url=base_url,
                transport=retry,
                timeout=httpx.Timeout(timeout_s),
                headers=dict(headers),
            )
            stack.push_async_callback(client.aclose)

            # Success: hand the callbacks over so leaving the block closes nothing.
            resources = cls(handler, retry, client, stack.pop_all())

        logger.debug("Transport resources opened for %s", base_url)
        return resources

    async def aclose(self) -> None:
        """Close issuer, retry wrapper and handler, in that order."""
        if self._closed:
            return
        self._closed = True
        await self._stack.aclose()
        logger.debug("Transport resources closed")

    @property
    def closed(self) -> bool:
        return self._closed
