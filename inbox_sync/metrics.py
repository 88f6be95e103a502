"""
Prometheus metrics for the inbox service and the reconciliation engine.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Webhook outcome counter (result)
- Transcript merge counter (source, outcome)
- Stale callback counter (producer)
- Poll cycle counter (result)
- Optimistic send counter (result)

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

# result: processed, duplicate, ignored, invalid_signature, validation_error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook processing outcomes",
    labelnames=["result"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# source: local, push, poll
# outcome: inserted, updated, noop, dropped
transcript_merges_total = Counter(
    "transcript_merges_total",
    "Records merged into the active transcript",
    labelnames=["source", "outcome"]
)

# producer: send, push, poll
stale_callbacks_total = Counter(
    "stale_callbacks_total",
    "Callbacks discarded because their conversation is no longer active",
    labelnames=["producer"]
)

# result: completed, skipped, failed
poll_cycles_total = Counter(
    "poll_cycles_total",
    "Poll reconciler cycles",
    labelnames=["result"]
)

# result: sent, failed
optimistic_sends_total = Counter(
    "optimistic_sends_total",
    "Optimistic sends by outcome",
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
        path: Route template, or the raw path when no route matched
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


def record_webhook_outcome(result: str) -> None:
    """
    Record a webhook processing outcome.

    Args:
        result: Processing result - one of:
            - "processed": At least one message or status was applied
            - "duplicate": Every message in the payload was already stored
            - "ignored": Payload carried nothing actionable
            - "invalid_signature": HMAC validation failed
            - "validation_error": Request body validation failed
    """
    webhook_requests_total.labels(result=result).inc()


def record_merge(source: str, outcome: str, count: int = 1) -> None:
    if count:
        transcript_merges_total.labels(source=source, outcome=outcome).inc(count)


def record_stale_callback(producer: str) -> None:
    stale_callbacks_total.labels(producer=producer).inc()


def record_poll_cycle(result: str) -> None:
    poll_cycles_total.labels(result=result).inc()


def record_send_outcome(result: str) -> None:
    optimistic_sends_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
