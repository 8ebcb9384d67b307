"""Prometheus metric definitions for the checkout service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


payment_initiations_total = Counter(
    "payment_initiations_total",
    "Card payment initiations by outcome",
    ["service", "outcome"],
)
payment_completions_total = Counter(
    "payment_completions_total",
    "3DS callback completions by outcome",
    ["service", "outcome"],
)
refund_attempts_total = Counter(
    "refund_attempts_total",
    "Refund attempts by outcome",
    ["service", "outcome"],
)
post_commit_failures_total = Counter(
    "post_commit_failures_total",
    "Best-effort post-commit actions that failed after an order was stored",
    ["service", "action"],
)
gateway_call_duration_seconds = Histogram(
    "gateway_call_duration_seconds",
    "Payment gateway call duration seconds",
    ["service", "operation"],
)
pending_sessions = Gauge(
    "pending_sessions",
    "Entries currently held in an in-memory session store",
    ["service", "store"],
)
sessions_evicted_total = Counter(
    "sessions_evicted_total",
    "Session store entries purged after their TTL",
    ["service", "store"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
