"""Prometheus metrics collection."""

import logging
import time
from functools import wraps

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from config import settings

logger = logging.getLogger(__name__)

# ============================================================================
# Query-Level Metrics (Overall RAG Pipeline)
# ============================================================================

query_counter = Counter(
    'rag_queries_total',
    'Total number of chat queries processed'
)

query_latency = Histogram(
    'rag_query_latency_seconds',
    'Total query processing latency (retrieve + generate)',
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0)
)

# ============================================================================
# Retrieval Metrics
# ============================================================================

retrieval_counter = Counter(
    'rag_retrieval_total',
    'Total number of retrieval operations'
)

retrieval_latency = Histogram(
    'rag_retrieval_latency_seconds',
    'Time taken to embed the query and scan the store',
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0)
)

retrieval_docs_returned = Histogram(
    'rag_retrieval_docs_returned',
    'Number of chunks retrieved per query',
    buckets=(0, 1, 2, 4, 8, 16, 32)
)

# ============================================================================
# Provider / Transport Metrics
# ============================================================================

http_request_latency = Histogram(
    'rag_http_request_latency_seconds',
    'Latency of provider HTTP requests',
    ['provider'],
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0)
)

http_retry_counter = Counter(
    'rag_http_retries_total',
    'Number of retried provider requests',
    ['kind']
)

stream_abort_counter = Counter(
    'rag_stream_aborts_total',
    'Streams ended by a watchdog or cancellation',
    ['reason']
)

time_to_first_token = Histogram(
    'rag_time_to_first_token_seconds',
    'Time from stream start to first delta',
    buckets=(0.05, 0.1, 0.2, 0.5, 1.0, 2.0, 5.0, 10.0)
)

inference_latency = Histogram(
    'rag_inference_latency_seconds',
    'Total inference latency (full response generation)',
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0)
)

embedding_fallback_counter = Counter(
    'rag_embedding_fallbacks_total',
    'Texts embedded locally after a provider embedding failed'
)

# ============================================================================
# System-Level Metrics
# ============================================================================

error_counter = Counter(
    'rag_errors_total',
    'Total number of errors',
    ['type']
)

document_count = Gauge(
    'rag_document_count',
    'Number of indexed documents'
)


def track_query_metrics(func):
    """Decorator to track latency of an async chat query."""

    @wraps(func)
    async def wrapper(*args, **kwargs):
        query_counter.inc()
        start_time = time.time()

        try:
            result = await func(*args, **kwargs)
            query_latency.observe(time.time() - start_time)
            return result
        except Exception as e:
            error_counter.labels(type=type(e).__name__).inc()
            raise

    return wrapper


def track_retrieval_metrics(func):
    """Decorator to track retrieval metrics."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        retrieval_counter.inc()
        start_time = time.time()

        try:
            result = func(*args, **kwargs)
            retrieval_latency.observe(time.time() - start_time)

            if isinstance(result, list):
                retrieval_docs_returned.observe(len(result))

            return result
        except Exception as e:
            error_counter.labels(type=type(e).__name__).inc()
            raise

    return wrapper


class PerformanceTracker:
    """Context manager for timing a single generation."""

    def __init__(self, operation_name: str = "operation"):
        """Initialize tracker.

        Args:
            operation_name: Name of operation being tracked
        """
        self.operation_name = operation_name
        self.start_time = None
        self.first_token_time = None
        self.end_time = None

    def __enter__(self):
        """Start tracking."""
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """End tracking and record metrics."""
        self.end_time = time.time()

        if exc_type is not None:
            error_counter.labels(type=exc_type.__name__).inc()
            return False

        inference_latency.observe(self.end_time - self.start_time)
        return False

    def record_first_token(self):
        """Record the time when the first delta arrived."""
        if self.start_time and self.first_token_time is None:
            self.first_token_time = time.time()
            time_to_first_token.observe(self.first_token_time - self.start_time)


def start_metrics_server(port: int = None):
    """Start Prometheus metrics server."""
    port = port or settings.METRICS_PORT

    try:
        start_http_server(port)
        logger.info(f"Metrics server started on port {port}")
    except Exception as e:
        logger.warning(f"Failed to start metrics server: {e}")
