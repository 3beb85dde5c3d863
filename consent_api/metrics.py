"""
Prometheus metrics for the consent API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Contact registration outcomes (created, existed, reconciled)
- Preference transition outcomes (transition, result)
- Rows cleared by the daily reset

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

# result: created, existed, reconciled
contact_registrations_total = Counter(
    "contact_registrations_total",
    "Contact registration outcomes",
    labelnames=["result"]
)

# transition: opt_in, opt_out, intro_sent
# result: ok, invalid_reference, not_found, store_unavailable
preference_transitions_total = Counter(
    "preference_transitions_total",
    "Preference transition outcomes",
    labelnames=["transition", "result"]
)

daily_reset_rows_total = Counter(
    "daily_reset_rows_total",
    "Preference rows changed by the daily reset"
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template, or "unmatched"
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    http_requests_total.labels(
        method=method,
        path=path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=path
    ).observe(latency_seconds)


def record_registration(result: str) -> None:
    contact_registrations_total.labels(result=result).inc()


def record_transition(transition: str, result: str) -> None:
    preference_transitions_total.labels(transition=transition, result=result).inc()


def record_reset(affected: int) -> None:
    daily_reset_rows_total.inc(affected)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
