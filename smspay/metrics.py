"""
Prometheus metrics for the SMS payment service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Poll result counter (state)
- Callback outcome counter (source, result)
- Gateway error counter (gateway)

Metrics are stored in-memory using prometheus-client.
"""

import re

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

# state: NOT_BROADCAST, BROADCAST_UNCONFIRMED, CONFIRMING, CONFIRMED, ERROR
poll_results_total = Counter(
    "poll_results_total",
    "Poll results by returned state",
    labelnames=["state"]
)

# source: blockchain, carrier
# result: dispatched, already_dispatched, recorded, not_confirmed, malformed,
#         not_found, carrier_error, provider_error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total callback processing outcomes",
    labelnames=["source", "result"]
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Failed calls to external gateways",
    labelnames=["gateway"]
)

# Session ids are 64-char hex digests; collapse them to keep label cardinality flat
_SESSION_SEGMENT = re.compile(r"/[0-9a-f]{64}(?=/|$)")


# =============================================================================
# Helper Functions
# =============================================================================

def normalize_path(path: str) -> str:
    """
    Strip the query string and replace session ids with a placeholder
    (e.g., /webhook/carrier/<sha256> -> /webhook/carrier/{session_id}).
    """
    return _SESSION_SEGMENT.sub("/{session_id}", path.split("?")[0])


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    normalized_path = normalize_path(path)

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_poll_result(state: str) -> None:
    poll_results_total.labels(state=state).inc()


def record_webhook_outcome(source: str, result: str) -> None:
    """
    Record a callback processing outcome.

    Args:
        source: "blockchain" or "carrier"
        result: Processing result (see webhook_requests_total)
    """
    webhook_requests_total.labels(source=source, result=result).inc()


def record_gateway_error(gateway: str) -> None:
    gateway_errors_total.labels(gateway=gateway).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
