"""
Prometheus metrics for the relay service.

HTTP traffic, webhook outcomes, and the relay's own work: forwards, drains,
best-effort notifications and broadcast deliveries. Everything lives in the
default prometheus-client registry and is exposed by GET /metrics.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# Paths outside this set are labelled "other" to keep label cardinality bounded
KNOWN_PATHS = frozenset({
    "/webhook",
    "/webhook/telegram",
    "/stats",
    "/metrics",
    "/health/live",
    "/health/ready",
})


# =============================================================================
# HTTP
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

# result: accepted, duplicate, blocked, unsupported, command, reply, ignored,
# conflict, invalid_signature, validation_error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Webhook events by routing outcome",
    labelnames=["result"]
)


# =============================================================================
# Relay
# =============================================================================

# result: forwarded, failed, unreferenced
relay_forward_total = Counter(
    "relay_forward_total",
    "Messages forwarded to the operator during drains",
    labelnames=["result"]
)

relay_pending_messages = Gauge(
    "relay_pending_messages",
    "Messages waiting for the next drain, as of the last accept or drain"
)

relay_drain_duration_seconds = Histogram(
    "relay_drain_duration_seconds",
    "Wall time of drains that claimed at least one message",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0)
)

# kind: operator_ping, user_ack, read_receipt, block_status, reply,
# operator_reply, supervisor_mirror, welcome, chat_id
relay_notifications_total = Counter(
    "relay_notifications_total",
    "Best-effort notifications sent by the relay",
    labelnames=["kind", "result"]
)

broadcast_deliveries_total = Counter(
    "broadcast_deliveries_total",
    "Broadcast deliveries per recipient",
    labelnames=["result"]
)


# =============================================================================
# Recording helpers
# =============================================================================

def normalize_path(path: str) -> str:
    path = path.split("?")[0].rstrip("/") or "/"
    return path if path in KNOWN_PATHS else "other"


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path; unknown paths are recorded as "other"
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    label = normalize_path(path)
    http_requests_total.labels(method=method, path=label, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=label).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_forward(result: str) -> None:
    relay_forward_total.labels(result=result).inc()


def record_pending(count: int) -> None:
    relay_pending_messages.set(count)


def record_drain(duration_seconds: float) -> None:
    relay_drain_duration_seconds.observe(duration_seconds)


def record_notification(kind: str, success: bool) -> None:
    relay_notifications_total.labels(kind=kind, result="sent" if success else "failed").inc()


def record_broadcast_delivery(success: bool) -> None:
    broadcast_deliveries_total.labels(result="sent" if success else "failed").inc()


def get_metrics() -> bytes:
    """Current metrics in Prometheus text exposition format."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
