"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


booking_requests_total = Counter("booking_requests_total", "Total payment setup booking requests", ["service"])
saga_executions_total = Counter(
    "saga_executions_total",
    "Payment setup saga executions by outcome",
    ["service", "outcome"],
)
saga_duration_seconds = Histogram(
    "saga_duration_seconds",
    "Payment setup saga wall-clock duration seconds",
    ["service", "outcome"],
)
saga_compensations_total = Counter(
    "saga_compensations_total",
    "Compensation actions attempted by step type and result",
    ["service", "step", "result"],
)
stuck_sagas_swept_total = Counter(
    "stuck_sagas_swept_total",
    "Pending sagas resolved by the reconciliation sweep",
    ["service", "action"],
)
payment_errors_total = Counter(
    "payment_errors_total",
    "Classified payment gateway errors",
    ["service", "error_type"],
)
circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["breaker"],
)
circuit_breaker_rejections_total = Counter(
    "circuit_breaker_rejections_total",
    "Calls rejected without reaching the dependency",
    ["breaker"],
)
quota_throttled_total = Counter(
    "quota_throttled_total",
    "Times the gateway quota manager had to wait for the window to slide",
    ["quota"],
)
quota_queue_depth = Gauge("quota_queue_depth", "Calls waiting for gateway quota", ["quota"])
capacity_reservations_total = Counter(
    "capacity_reservations_total",
    "Capacity slot reservation attempts by result",
    ["service_type", "result"],
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
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between occurred_at and consume time",
    ["service", "topic"],
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
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate inbox events skipped",
    ["service", "topic"],
)
stripe_webhook_events_total = Counter(
    "stripe_webhook_events_total",
    "Gateway webhook deliveries by event type and outcome",
    ["service", "event_type", "outcome"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
