"""
Incremental streaming of chat completions.

Reads a streaming response as it arrives, cuts complete frames out of a
running buffer with the provider's frame parser, and forwards every text
fragment once, in arrival order. Two watchdogs supervise each stream: an
absolute deadline and a stall timer that aborts when no bytes have arrived
for a while. Both complete with the text received so far.

Frame formats:
- SSE (OpenAI-compatible, Gemini): blocks separated by a blank line, JSON
  payloads on `data:` lines, `[DONE]` ignored.
- NDJSON (Ollama): one JSON object per line.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple

import httpx

from config import settings
from monitoring.metrics import http_retry_counter, stream_abort_counter
from transport.http import (
    CANCELLED_STATUS,
    FAILED_STATUS,
    STALL_STATUS,
    TIMEOUT_STATUS,
    RequestHandle,
    RetryPolicy,
    deliver,
    request_kwargs,
)

logger = logging.getLogger(__name__)

ParsedFrames = Tuple[List[str], str]
DeltaCallback = Callable[[str], Any]
StreamCallback = Callable[[str, int], Any]


class StreamResult(NamedTuple):
    """Accumulated text and final status of a stream."""

    text: str
    status: int


# ----------------------------------------------------------------------
# Per-provider text extraction
# ----------------------------------------------------------------------

def _part_texts(parts: Any) -> List[str]:
    if not isinstance(parts, list):
        return []
    return [
        p["text"] for p in parts
        if isinstance(p, dict) and isinstance(p.get("text"), str) and p["text"]
    ]


def extract_openai_delta(payload: Any) -> List[str]:
    """Text of `choices[0].delta.content`."""
    try:
        content = payload["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError):
        return []
    return [content] if isinstance(content, str) and content else []


def extract_gemini_delta(payload: Any) -> List[str]:
    """
    Text fragments of a Gemini stream event.

    For each candidate, `delta.parts[].text` is preferred over `delta.text`;
    `content.parts[].text` is also collected for servers that send full
    content blocks instead of deltas.
    """
    if not isinstance(payload, dict):
        return []

    fragments: List[str] = []
    for candidate in payload.get("candidates") or []:
        if not isinstance(candidate, dict):
            continue

        delta = candidate.get("delta")
        if isinstance(delta, dict):
            parts = _part_texts(delta.get("parts"))
            if parts:
                fragments.extend(parts)
            elif isinstance(delta.get("text"), str) and delta["text"]:
                fragments.append(delta["text"])

        content = candidate.get("content")
        if isinstance(content, dict):
            fragments.extend(_part_texts(content.get("parts")))

    return fragments


def extract_ollama_delta(payload: Any) -> List[str]:
    """Text of `message.content`."""
    try:
        content = payload["message"]["content"]
    except (KeyError, TypeError):
        return []
    return [content] if isinstance(content, str) and content else []


_EXTRACTORS: Dict[str, Callable[[Any], List[str]]] = {
    "openai": extract_openai_delta,
    "openai-compatible": extract_openai_delta,
    "gemini": extract_gemini_delta,
    "ollama": extract_ollama_delta,
}


def get_delta_extractor(provider: str) -> Callable[[Any], List[str]]:
    """Delta extractor for a provider; unknown providers use the OpenAI shape."""
    return _EXTRACTORS.get(provider, extract_openai_delta)


# ----------------------------------------------------------------------
# Frame parsers
# ----------------------------------------------------------------------

def _normalise_newlines(buffer: str) -> str:
    # A trailing CR may be the first half of a CRLF split across reads
    tail = ""
    if buffer.endswith("\r"):
        buffer, tail = buffer[:-1], "\r"
    return buffer.replace("\r\n", "\n").replace("\r", "\n") + tail


def _decode(payload: str) -> Optional[Any]:
    try:
        return json.loads(payload)
    except ValueError:
        logger.debug(f"Skipping malformed stream frame: {payload[:200]!r}")
        return None


def parse_sse(buffer: str, provider: str = "openai") -> ParsedFrames:
    """
    Consume complete SSE blocks from a buffer.

    Args:
        buffer: Unparsed stream text.
        provider: Selects the JSON shape that carries the text.

    Returns:
        Tuple of (text fragments in order, unconsumed remainder).
    """
    extract = get_delta_extractor(provider)
    buffer = _normalise_newlines(buffer)
    fragments: List[str] = []

    while True:
        end = buffer.find("\n\n")
        if end < 0:
            break
        block, buffer = buffer[:end], buffer[end + 2:]

        data_lines = [
            line[5:].lstrip(" ") for line in block.split("\n") if line.startswith("data:")
        ]
        payload = "\n".join(data_lines).strip()
        if not payload or payload == "[DONE]":
            continue

        decoded = _decode(payload)
        if decoded is not None:
            fragments.extend(extract(decoded))

    return fragments, buffer


def parse_ndjson(buffer: str, provider: str = "ollama") -> ParsedFrames:
    """
    Consume complete newline-terminated JSON lines from a buffer.

    Returns:
        Tuple of (text fragments in order, unconsumed remainder).
    """
    extract = get_delta_extractor(provider)
    buffer = _normalise_newlines(buffer)
    fragments: List[str] = []

    while True:
        end = buffer.find("\n")
        if end < 0:
            break
        line, buffer = buffer[:end].strip(), buffer[end + 1:]
        if not line:
            continue

        decoded = _decode(line)
        if decoded is not None:
            fragments.extend(extract(decoded))

    return fragments, buffer


def uses_ndjson(provider: str) -> bool:
    return provider == "ollama"


def get_frame_parser(provider: str) -> Callable[[str], ParsedFrames]:
    """Frame parser bound to a provider."""
    if uses_ndjson(provider):
        return functools.partial(parse_ndjson, provider=provider)
    return functools.partial(parse_sse, provider=provider)


# ----------------------------------------------------------------------
# Stream session
# ----------------------------------------------------------------------

class StreamSession:
    """
    One supervised streaming request.

    The response is read by a reader task while `run` watches the deadline
    and the stall timer. All state (buffer, accumulated text, last activity
    time) belongs to the session.

    Attributes:
        full_text: Text of every fragment delivered so far.
    """

    def __init__(
        self,
        provider: str,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        on_delta: Optional[DeltaCallback] = None,
        *,
        timeout_ms: Optional[int] = None,
        stall_ms: Optional[int] = None,
        poll_interval_ms: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.provider = provider
        self.method = method
        self.url = url
        self.headers = headers
        self.body = body
        self.on_delta = on_delta
        self.timeout_s = (timeout_ms if timeout_ms is not None else settings.TIMEOUT_MS) / 1000
        self.stall_s = (stall_ms if stall_ms is not None else settings.STREAM_STALL_MS) / 1000
        self.poll_s = (poll_interval_ms or settings.POLL_INTERVAL_MS) / 1000
        self.client = client

        self.full_text = ""
        self._buffer = ""
        self._parse = get_frame_parser(provider)
        self._started = 0.0
        self._last_activity = 0.0

    async def run(self) -> StreamResult:
        """
        Run the stream to completion.

        Returns:
            `(full_text, status)` for a 200 response, `("", status)` for any
            other HTTP status, `(partial_text, TIMEOUT_STATUS)` when the
            deadline passes or the connection fails, and
            `(partial_text, STALL_STATUS)` when the stall timer fires, and
            `(partial_text, FAILED_STATUS)` for any other send or read error.
        """
        loop = asyncio.get_running_loop()
        self._started = self._last_activity = loop.time()
        deadline = self._started + self.timeout_s

        own_client = self.client is None
        client = self.client or httpx.AsyncClient(timeout=None)

        reader = asyncio.ensure_future(self._read(client))
        try:
            while not reader.done():
                now = loop.time()
                if now >= deadline:
                    stream_abort_counter.labels(reason="timeout").inc()
                    logger.warning(f"Stream {self.url} timed out after {self.timeout_s * 1000:.0f}ms")
                    return StreamResult(self.full_text, TIMEOUT_STATUS)

                idle = now - self._last_activity
                if idle >= self.stall_s:
                    stream_abort_counter.labels(reason="stall").inc()
                    logger.warning(f"Stream {self.url} stalled ({idle * 1000:.0f}ms without data)")
                    return StreamResult(self.full_text, STALL_STATUS)

                wait_s = min(self.poll_s, deadline - now, self.stall_s - idle)
                await asyncio.wait({reader}, timeout=max(wait_s, 0.001))

            try:
                status = reader.result()
            except (httpx.HTTPError, httpx.InvalidURL, OSError) as e:
                logger.warning(f"Stream {self.url} failed: {e}")
                return StreamResult(self.full_text, TIMEOUT_STATUS)
            except Exception as e:
                logger.error(f"Stream {self.url} failed: {e!r}", exc_info=True)
                return StreamResult(self.full_text, FAILED_STATUS)

            if status != 200:
                return StreamResult("", status)
            return StreamResult(self.full_text, status)
        finally:
            if not reader.done():
                reader.cancel()
                await asyncio.wait({reader})
            if own_client:
                await client.aclose()

    async def _read(self, client: httpx.AsyncClient) -> int:
        loop = asyncio.get_running_loop()
        async with client.stream(
            self.method, self.url, headers=self.headers, **request_kwargs(self.body)
        ) as response:
            self._last_activity = loop.time()

            if response.status_code != 200:
                error_body = (await response.aread()).decode("utf-8", errors="replace")
                logger.warning(
                    f"Stream {self.url} returned {response.status_code}: {error_body[:500]}"
                )
                return response.status_code

            async for text in response.aiter_text():
                self._last_activity = loop.time()
                self._feed(text)

            self._flush()
            return response.status_code

    def _feed(self, text: str) -> None:
        self._buffer += text
        fragments, self._buffer = self._parse(self._buffer)
        self._emit(fragments)

    def _flush(self) -> None:
        """Parse a trailing frame the server did not terminate."""
        if not self._buffer.strip():
            return
        terminator = "\n" if uses_ndjson(self.provider) else "\n\n"
        fragments, self._buffer = self._parse(self._buffer + terminator)
        self._emit(fragments)

    def _emit(self, fragments: Iterable[str]) -> None:
        for fragment in fragments:
            self.full_text += fragment
            deliver(self.on_delta, fragment)


class StreamHandle(RequestHandle):
    """
    Handle of a running stream.

    Awaiting the handle yields the final `StreamResult`. `cancel()` aborts
    the stream; the completion callback then fires with the partial text
    and `CANCELLED_STATUS`.
    """

    __slots__ = ('_progress',)

    def __init__(self, task: asyncio.Task, progress: Callable[[], str]) -> None:
        super().__init__(task)
        self._progress = progress

    @property
    def text(self) -> str:
        """Text received so far."""
        return self._progress()


def stream_async(
    provider: str,
    method: str,
    url: str,
    headers: Optional[Dict[str, str]],
    body: Any,
    on_delta: Optional[DeltaCallback],
    on_complete: Optional[StreamCallback],
    **kwargs: Any,
) -> StreamHandle:
    """
    Start a supervised stream and return immediately.

    Must be called from a running event loop. `on_delta(fragment)` fires once
    per text fragment in arrival order; `on_complete(full_text, status)`
    fires exactly once. Keyword arguments are passed to `StreamSession`.
    """
    session = StreamSession(provider, method, url, headers, body, on_delta, **kwargs)

    async def runner() -> StreamResult:
        try:
            result = await session.run()
        except asyncio.CancelledError:
            stream_abort_counter.labels(reason="cancelled").inc()
            result = StreamResult(session.full_text, CANCELLED_STATUS)
        except Exception as e:
            logger.error(f"Stream {url} failed: {e!r}", exc_info=True)
            result = StreamResult(session.full_text, FAILED_STATUS)
        deliver(on_complete, result.text, result.status)
        return result

    return StreamHandle(asyncio.ensure_future(runner()), lambda: session.full_text)


# ----------------------------------------------------------------------
# Retry
# ----------------------------------------------------------------------

class _AttemptText:
    """
    Text of the current retry attempt.

    Fragments are forwarded as they arrive. A new attempt starts again from
    the beginning, so callers that keep a preview clear it on `on_retry`;
    the deltas after the last `on_retry` concatenate to the final text.
    """

    __slots__ = ('on_delta', 'text')

    def __init__(self, on_delta: Optional[DeltaCallback]) -> None:
        self.on_delta = on_delta
        self.text = ""

    def start_attempt(self) -> None:
        self.text = ""

    def __call__(self, fragment: str) -> None:
        self.text += fragment
        deliver(self.on_delta, fragment)


async def _stream_attempts(
    current: _AttemptText,
    provider: str,
    method: str,
    url: str,
    headers: Optional[Dict[str, str]],
    body: Any,
    policy: RetryPolicy,
    on_retry: Optional[Callable[[int], Any]],
    session_kwargs: Dict[str, Any],
) -> StreamResult:
    attempt = 0
    while True:
        current.start_attempt()
        session = StreamSession(provider, method, url, headers, body, current, **session_kwargs)
        result = await session.run()
        if result.status == 200 or attempt >= policy.max_retries:
            return result

        delay = policy.delay_ms(attempt)
        http_retry_counter.labels(kind="stream").inc()
        logger.warning(
            f"Stream {url} ended with status {result.status}; "
            f"retry {attempt + 1}/{policy.max_retries} in {delay:.0f}ms"
        )
        await asyncio.sleep(delay / 1000)
        attempt += 1
        deliver(on_retry, attempt)


async def stream_with_retry_async(
    provider: str,
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    body: Any = None,
    on_delta: Optional[DeltaCallback] = None,
    *,
    policy: Optional[RetryPolicy] = None,
    on_retry: Optional[Callable[[int], Any]] = None,
    **kwargs: Any,
) -> StreamResult:
    """
    Stream with retries, returning the final attempt's result.

    Non-200 outcomes (including the timeout and stall sentinels) start a
    fresh attempt after the policy's backoff delay. `on_retry(attempt)` fires
    before each new attempt; deltas delivered after it belong to that
    attempt only, so text shown for the failed attempt should be discarded.
    """
    current = _AttemptText(on_delta)
    return await _stream_attempts(
        current, provider, method, url, headers, body,
        policy or RetryPolicy.from_settings(), on_retry, kwargs,
    )


def stream_with_retry(
    provider: str,
    method: str,
    url: str,
    headers: Optional[Dict[str, str]],
    body: Any,
    on_delta: Optional[DeltaCallback],
    on_complete: Optional[StreamCallback],
    *,
    policy: Optional[RetryPolicy] = None,
    on_retry: Optional[Callable[[int], Any]] = None,
    **kwargs: Any,
) -> StreamHandle:
    """Callback form of `stream_with_retry_async`; returns immediately."""
    current = _AttemptText(on_delta)

    async def runner() -> StreamResult:
        try:
            result = await _stream_attempts(
                current, provider, method, url, headers, body,
                policy or RetryPolicy.from_settings(), on_retry, kwargs,
            )
        except asyncio.CancelledError:
            stream_abort_counter.labels(reason="cancelled").inc()
            result = StreamResult(current.text, CANCELLED_STATUS)
        except Exception as e:
            logger.error(f"Stream {url} failed: {e!r}", exc_info=True)
            result = StreamResult(current.text, FAILED_STATUS)
        deliver(on_complete, result.text, result.status)
        return result

    return StreamHandle(asyncio.ensure_future(runner()), lambda: current.text)
