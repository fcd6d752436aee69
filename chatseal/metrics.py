"""
Prometheus metrics for the WhatsApp bridge.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook event counter (kind, result)
- Outbound send counter (result)
- OAuth / manual connection counter (result)

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

# kind: message, status, delivery
# result: created, duplicate, ignored, updated, unmatched, invalid_signature, error
webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook processing outcomes",
    labelnames=["kind", "result"]
)

# result: sent, not_connected, invalid_token, failed
outbound_messages_total = Counter(
    "outbound_messages_total",
    "Outbound send attempts by outcome",
    labelnames=["result"]
)

# result: connected, missing_scopes, failed, manual
oauth_connections_total = Counter(
    "oauth_connections_total",
    "Tenant connection attempts by outcome",
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
        path: Route template when known, raw path otherwise
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


def record_webhook_outcome(kind: str, result: str) -> None:
    webhook_events_total.labels(kind=kind, result=result).inc()


def record_outbound_outcome(result: str) -> None:
    outbound_messages_total.labels(result=result).inc()


def record_connection_outcome(result: str) -> None:
    oauth_connections_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
