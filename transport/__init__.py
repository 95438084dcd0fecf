"""
Transport package.

Non-blocking provider I/O on asyncio + httpx:
- http: single requests with deadline supervision and retry
- streaming: incremental SSE / NDJSON streams with stall detection
"""

from transport.http import (
    CANCELLED_STATUS,
    STALL_STATUS,
    TIMEOUT_STATUS,
    HttpResponse,
    RequestHandle,
    RetryPolicy,
    request,
    request_with_retry,
    send_async,
    send_with_retry,
)
from transport.streaming import (
    StreamHandle,
    StreamResult,
    StreamSession,
    get_frame_parser,
    parse_ndjson,
    parse_sse,
    stream_async,
    stream_with_retry,
    stream_with_retry_async,
)

__all__ = [
    "TIMEOUT_STATUS",
    "STALL_STATUS",
    "CANCELLED_STATUS",
    "HttpResponse",
    "RequestHandle",
    "RetryPolicy",
    "request",
    "request_with_retry",
    "send_async",
    "send_with_retry",
    "StreamHandle",
    "StreamResult",
    "StreamSession",
    "get_frame_parser",
    "parse_sse",
    "parse_ndjson",
    "stream_async",
    "stream_with_retry",
    "stream_with_retry_async",
]
