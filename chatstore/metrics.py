"""
Prometheus metrics for the chat store.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Ingestion event and message outcome counters
- Ingestion queue depth gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# kind: live_message, history_sync
# result: applied, partial (some messages failed), failed (every message
# failed), chat_failed, rejected
ingest_events_total = Counter(
    "ingest_events_total",
    "Chat-update events handled by the ingestion pipeline",
    labelnames=["kind", "result"]
)

# result: stored, skipped, failed
ingest_messages_total = Counter(
    "ingest_messages_total",
    "Message upsert outcomes in the ingestion pipeline",
    labelnames=["result"]
)

ingest_queue_depth = Gauge(
    "ingest_queue_depth",
    "Events waiting in the ingestion queue"
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # strip query strings to keep label cardinality down
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_event_outcome(kind: str, result: str) -> None:
    ingest_events_total.labels(kind=kind, result=result).inc()


def record_message_outcome(result: str) -> None:
    ingest_messages_total.labels(result=result).inc()


def set_queue_depth(depth: int) -> None:
    ingest_queue_depth.set(depth)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
