"""Prometheus metric definitions for the reconciliation service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit state per dependency (0=closed, 1=half_open, 2=open)",
    ["service", "dependency"],
)
circuit_breaker_transitions_total = Counter(
    "circuit_breaker_transitions_total",
    "Circuit breaker state transitions",
    ["service", "dependency", "to_state"],
)
rate_limited_total = Counter(
    "rate_limited_total",
    "Calls refused by the local sliding-window limiter",
    ["service", "dependency"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
gateway_call_seconds = Histogram(
    "gateway_call_seconds",
    "Gateway capability latency seconds including retries",
    ["service", "capability", "outcome"],
)
webhook_outcomes_total = Counter(
    "webhook_outcomes_total",
    "Webhook envelopes by final outcome",
    ["service", "outcome"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate webhook envelopes skipped",
    ["service", "topic"],
)
dlq_published_total = Counter(
    "dlq_published_total",
    "Total DLQ events published",
    ["service", "topic", "error_type"],
)
payment_transitions_total = Counter(
    "payment_transitions_total",
    "Accepted payment status transitions",
    ["service", "source", "to_status"],
)
payment_transition_anomalies_total = Counter(
    "payment_transition_anomalies_total",
    "Proposals rejected against a final payment status",
    ["service", "source"],
)
reconciliation_queue_depth = Gauge(
    "reconciliation_queue_depth",
    "Jobs waiting in the reconciliation queue",
    ["service"],
)
reconciliation_results_total = Counter(
    "reconciliation_results_total",
    "Reconciliation job results",
    ["service", "result"],
)
reconciliation_abandoned_total = Counter(
    "reconciliation_abandoned_total",
    "Reconciliation jobs dropped after exhausting attempts",
    ["service"],
)
event_publish_failures_total = Counter(
    "event_publish_failures_total",
    "Domain events that could not be published",
    ["service", "event_type"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
