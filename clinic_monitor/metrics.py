"""
Prometheus metrics for the conversation monitor.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Reconciliation source failure counter (source)
- Reconciliation message outcome counter (outcome)
- Reconciliation duration histogram

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

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# source: provider, generation_log, outgoing_log, patients
reconcile_source_failures_total = Counter(
    "reconcile_source_failures_total",
    "Source fetches that failed and contributed nothing",
    labelnames=["source"]
)

# outcome: kept, duplicate, unresolvable_identity, content_free
reconcile_messages_total = Counter(
    "reconcile_messages_total",
    "Messages seen by the reconciler by outcome",
    labelnames=["outcome"]
)

reconcile_duration_seconds = Histogram(
    "reconcile_duration_seconds",
    "Time to reconcile all sources",
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
    # Collapse per-contact and per-media paths to avoid high-cardinality labels
    normalized_path = path.split("?")[0]
    for prefix in ("/conversations/", "/media/"):
        if normalized_path.startswith(prefix):
            normalized_path = prefix + "{id}"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_source_failure(source: str) -> None:
    reconcile_source_failures_total.labels(source=source).inc()


def record_reconcile_outcome(outcome: str, count: int = 1) -> None:
    if count > 0:
        reconcile_messages_total.labels(outcome=outcome).inc(count)


def record_reconcile_duration(seconds: float) -> None:
    reconcile_duration_seconds.observe(seconds)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
