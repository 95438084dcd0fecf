"""
Non-blocking HTTP requests with deadline supervision and bounded retry.

Transport failures never raise to callers: they surface as sentinel status
codes in the same `HttpResponse` that carries real HTTP statuses. Each
request runs as its own asyncio task; `send_async` and `send_with_retry`
return immediately with a handle and report through a callback that fires
exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, NamedTuple, Optional

import httpx
from pydantic import BaseModel, Field

from config import settings
from monitoring.metrics import http_request_latency, http_retry_counter

logger = logging.getLogger(__name__)

# Client-side sentinels, distinct from any real HTTP status
TIMEOUT_STATUS = -1
STALL_STATUS = -2
CANCELLED_STATUS = -3
# Unexpected error while sending or inside a background task
FAILED_STATUS = -4


class HttpResponse(NamedTuple):
    """Response text, status code and headers."""

    text: str
    status: int
    headers: Dict[str, str]

    @property
    def ok(self) -> bool:
        return self.status == 200


CompletionCallback = Callable[[str, int, Dict[str, str]], Any]


class RetryPolicy(BaseModel):
    """
    Retry schedule for non-200 responses.

    The delay before retry `attempt` (0-based) is
    `base_delay_ms * backoff_factor ** attempt` plus up to `jitter_ms`
    of random jitter.
    """

    max_retries: int = Field(default=2, ge=0)
    base_delay_ms: float = Field(default=400.0, ge=0.0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    jitter_ms: float = Field(default=100.0, ge=0.0)

    def delay_ms(self, attempt: int) -> float:
        """Delay in milliseconds before the given retry attempt."""
        return self.base_delay_ms * (self.backoff_factor ** attempt) + random.uniform(0, self.jitter_ms)

    @classmethod
    def from_settings(cls, cfg=None) -> "RetryPolicy":
        """Policy built from MAX_RETRIES / RETRY_BASE_DELAY_MS / RETRY_BACKOFF_FACTOR."""
        cfg = cfg or settings
        return cls(
            max_retries=cfg.MAX_RETRIES,
            base_delay_ms=cfg.RETRY_BASE_DELAY_MS,
            backoff_factor=cfg.RETRY_BACKOFF_FACTOR,
        )


def request_kwargs(body: Any) -> Dict[str, Any]:
    if body is None:
        return {}
    if isinstance(body, (dict, list)):
        return {"json": body}
    return {"content": body}


async def _perform(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    headers: Optional[Dict[str, str]],
    body: Any,
) -> HttpResponse:
    response = await client.request(method, url, headers=headers, **request_kwargs(body))
    return HttpResponse(response.text, response.status_code, dict(response.headers))


async def request(
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    body: Any = None,
    *,
    timeout_ms: Optional[int] = None,
    poll_interval_ms: Optional[int] = None,
    client: Optional[httpx.AsyncClient] = None,
    provider: str = "",
) -> HttpResponse:
    """
    Perform one request under an absolute deadline.

    The deadline is computed once. The in-flight request is checked every
    `poll_interval_ms`; once the deadline passes it is cancelled and the
    timeout sentinel is returned. Send failures (unreachable host, invalid
    URL, broken connection) return the same sentinel immediately; any other
    error while sending (e.g. a header that cannot be encoded) is logged and
    returns `FAILED_STATUS`.

    Args:
        method: HTTP method.
        url: Request URL.
        headers: Request headers.
        body: dict/list (sent as JSON), str or bytes.
        timeout_ms: Deadline. Defaults to settings.TIMEOUT_MS.
        poll_interval_ms: Readiness check interval. Defaults to settings.POLL_INTERVAL_MS.
        client: Shared client; a private one is created and closed if omitted.
        provider: Provider label for metrics.

    Returns:
        The response, `("", TIMEOUT_STATUS, {})` or `("", FAILED_STATUS, {})`.
    """
    loop = asyncio.get_running_loop()
    timeout_s = (timeout_ms if timeout_ms is not None else settings.TIMEOUT_MS) / 1000
    poll_s = (poll_interval_ms or settings.POLL_INTERVAL_MS) / 1000
    deadline = loop.time() + timeout_s
    started = time.time()

    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(timeout=None)

    task = asyncio.ensure_future(_perform(client, method, url, headers, body))
    try:
        while not task.done():
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"{method} {url} timed out after {timeout_s * 1000:.0f}ms")
                return HttpResponse("", TIMEOUT_STATUS, {})
            await asyncio.wait({task}, timeout=min(poll_s, remaining))

        try:
            response = task.result()
        except (httpx.HTTPError, httpx.InvalidURL, OSError) as e:
            logger.warning(f"{method} {url} failed to send: {e}")
            return HttpResponse("", TIMEOUT_STATUS, {})
        except Exception as e:
            logger.error(f"{method} {url} failed: {e!r}", exc_info=True)
            return HttpResponse("", FAILED_STATUS, {})

        http_request_latency.labels(provider=provider or "unknown").observe(time.time() - started)
        return response
    finally:
        if not task.done():
            task.cancel()
            await asyncio.wait({task})
        if own_client:
            await client.aclose()


async def request_with_retry(
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    body: Any = None,
    *,
    policy: Optional[RetryPolicy] = None,
    timeout_ms: Optional[int] = None,
    poll_interval_ms: Optional[int] = None,
    client: Optional[httpx.AsyncClient] = None,
    provider: str = "",
) -> HttpResponse:
    """
    Perform a request, retrying non-200 responses with backoff.

    Args:
        policy: Retry schedule. Defaults to the settings-derived policy.
        (remaining arguments as for `request`)

    Returns:
        The first 200 response, or the last response once retries run out.
    """
    policy = policy or RetryPolicy.from_settings()
    attempt = 0

    while True:
        response = await request(
            method, url, headers, body,
            timeout_ms=timeout_ms,
            poll_interval_ms=poll_interval_ms,
            client=client,
            provider=provider,
        )
        if response.status == 200 or attempt >= policy.max_retries:
            return response

        delay = policy.delay_ms(attempt)
        http_retry_counter.labels(kind="request").inc()
        logger.warning(
            f"{method} {url} returned {response.status}; "
            f"retry {attempt + 1}/{policy.max_retries} in {delay:.0f}ms"
        )
        await asyncio.sleep(delay / 1000)
        attempt += 1


class RequestHandle:
    """
    Handle of a background operation, e.g. one scheduled with `send_async`.

    Awaiting the handle yields the operation's final result (an
    `HttpResponse` for requests). Cancelling reports `CANCELLED_STATUS`
    through the completion callback.
    """

    __slots__ = ('_task',)

    def __init__(self, task: asyncio.Task) -> None:
        self._task = task

    def cancel(self) -> None:
        """Cancel the request; the callback still fires once."""
        # deferred so the task body has started and can report the cancellation
        self._task.get_loop().call_soon(self._task.cancel)

    def done(self) -> bool:
        return self._task.done()

    def __await__(self):
        return self._task.__await__()


def deliver(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    """Invoke a caller callback, logging instead of propagating its errors."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception as e:
        logger.error(f"Completion callback raised: {e}", exc_info=True)


def schedule(
    operation: Callable[[], Awaitable[HttpResponse]],
    on_complete: Optional[CompletionCallback],
) -> RequestHandle:
    """Run `operation` as a task and report its response exactly once."""

    async def runner() -> HttpResponse:
        try:
            response = await operation()
        except asyncio.CancelledError:
            response = HttpResponse("", CANCELLED_STATUS, {})
        except Exception as e:
            logger.error(f"Background request failed: {e!r}", exc_info=True)
            response = HttpResponse("", FAILED_STATUS, {})
        deliver(on_complete, response.text, response.status, response.headers)
        return response

    return RequestHandle(asyncio.ensure_future(runner()))


def send_async(
    method: str,
    url: str,
    headers: Optional[Dict[str, str]],
    body: Any,
    on_complete: Optional[CompletionCallback],
    **kwargs: Any,
) -> RequestHandle:
    """
    Dispatch a request and return immediately.

    Must be called from a running event loop. `on_complete(text, status,
    headers)` fires exactly once. Keyword arguments are passed to `request`.
    """
    return schedule(lambda: request(method, url, headers, body, **kwargs), on_complete)


def send_with_retry(
    method: str,
    url: str,
    headers: Optional[Dict[str, str]],
    body: Any,
    on_complete: Optional[CompletionCallback],
    **kwargs: Any,
) -> RequestHandle:
    """Callback form of `request_with_retry`; returns immediately."""
    return schedule(lambda: request_with_retry(method, url, headers, body, **kwargs), on_complete)
