"""
Monitoring package.

Provides observability tools:
- Prometheus metrics for retrieval, provider calls and streams
- Structured JSON logging
"""

from monitoring.logger import JsonFormatter, setup_logging
from monitoring.metrics import (
    PerformanceTracker,
    document_count,
    embedding_fallback_counter,
    error_counter,
    http_request_latency,
    http_retry_counter,
    inference_latency,
    query_counter,
    query_latency,
    retrieval_latency,
    start_metrics_server,
    stream_abort_counter,
    time_to_first_token,
    track_query_metrics,
    track_retrieval_metrics,
)

__all__ = [
    # Metrics
    "track_query_metrics",
    "track_retrieval_metrics",
    "PerformanceTracker",
    "start_metrics_server",
    "query_counter",
    "query_latency",
    "retrieval_latency",
    "http_request_latency",
    "http_retry_counter",
    "stream_abort_counter",
    "time_to_first_token",
    "inference_latency",
    "embedding_fallback_counter",
    "error_counter",
    "document_count",
    # Logging
    "JsonFormatter",
    "setup_logging",
]
