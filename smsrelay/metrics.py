"""
Prometheus metrics for the SMS relay.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Event dispatch counter (type, result)
- Outstanding message counter (result)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: dispatched, failed
events_dispatched_total = Counter(
    "events_dispatched_total",
    "Total events published on the event bus",
    labelnames=["type", "result"]
)

# result: dispatched, dropped
outstanding_messages_total = Counter(
    "outstanding_messages_total",
    "Outstanding messages handed to phones",
    labelnames=["result"]
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


def record_event_dispatch(event_type: str, result: str) -> None:
    """Record the outcome of publishing one event."""
    events_dispatched_total.labels(type=event_type, result=result).inc()


def record_outstanding(dispatched: int, dropped: int) -> None:
    """Record how many messages of an outstanding batch reached the phone."""
    if dispatched:
        outstanding_messages_total.labels(result="dispatched").inc(dispatched)
    if dropped:
        outstanding_messages_total.labels(result="dropped").inc(dropped)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
