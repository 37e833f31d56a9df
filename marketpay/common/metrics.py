"""Prometheus metric definitions for the payment service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


payment_requests_total = Counter("payment_requests_total", "Total payment requests", ["service", "method"])
payment_success_total = Counter("payment_success_total", "Total successful payments", ["service", "method"])
payment_failure_total = Counter(
    "payment_failure_total",
    "Total failed payments",
    ["service", "method", "error_code"],
)
payment_latency_seconds = Histogram("payment_latency_seconds", "Payment latency seconds", ["service"])
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
provider_requests_total = Counter(
    "provider_requests_total",
    "Outbound provider calls by outcome",
    ["provider", "operation", "outcome"],
)
provider_latency_seconds = Histogram(
    "provider_latency_seconds",
    "Outbound provider call latency seconds",
    ["provider", "operation"],
)
payment_e2e_seconds = Histogram(
    "payment_e2e_seconds",
    "Payment duration seconds from initiated to terminal",
    ["service", "terminal_state"],
)
webhooks_received_total = Counter(
    "webhooks_received_total",
    "Provider webhook deliveries by outcome",
    ["provider", "outcome"],
)
refunds_total = Counter("refunds_total", "Refunds by method and resulting status", ["method", "status"])
state_conflicts_total = Counter(
    "state_conflicts_total",
    "Optimistic concurrency conflicts on payment updates",
    ["service", "source"],
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
