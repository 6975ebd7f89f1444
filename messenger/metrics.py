"""
Prometheus metrics for the messenger service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Message send outcomes (channel, result)
- Real-time fan-out delivery outcomes (result)
- Live real-time connection gauge
- Auto-created contact counter

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# channel: realtime, rest
# result: sent, validation_error, not_found, store_error
messages_sent_total = Counter(
    "messages_sent_total",
    "Total message send attempts by outcome",
    labelnames=["channel", "result"]
)

# result: delivered, failed
fanout_deliveries_total = Counter(
    "fanout_deliveries_total",
    "Total new_message pushes to live connections",
    labelnames=["result"]
)

realtime_connections = Gauge(
    "realtime_connections",
    "Currently authenticated real-time connections"
)

contacts_autocreated_total = Counter(
    "contacts_autocreated_total",
    "Contacts created implicitly by message activity"
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Count one HTTP request and observe its latency.

    ``path`` should be the route template (``/messages/{peer_id}``), not the
    concrete URL, so label cardinality stays bounded.
    """
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=path).observe(latency_seconds)


def record_send_outcome(channel: str, result: str) -> None:
    messages_sent_total.labels(channel=channel, result=result).inc()


def record_fanout(delivered: bool) -> None:
    fanout_deliveries_total.labels(result="delivered" if delivered else "failed").inc()


def record_contact_autocreated() -> None:
    contacts_autocreated_total.inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
