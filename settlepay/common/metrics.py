"""Prometheus metric definitions shared across components."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


subject_requests_total = Counter(
    "subject_requests_total",
    "Total payment/payout creation requests",
    ["service", "subject_type"],
)
subject_terminal_total = Counter(
    "subject_terminal_total",
    "Subjects reaching a terminal canonical status",
    ["service", "subject_type", "status"],
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
gateway_calls_total = Counter(
    "gateway_calls_total",
    "Outbound gateway calls by operation and outcome",
    ["service", "gateway", "operation", "outcome"],
)
gateway_call_seconds = Histogram(
    "gateway_call_seconds",
    "Gateway call latency seconds",
    ["service", "gateway", "operation"],
)
gateway_failover_total = Counter(
    "gateway_failover_total",
    "Candidate gateways skipped after a GatewayError",
    ["service", "gateway"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
webhook_events_total = Counter(
    "webhook_events_total",
    "Inbound webhook deliveries by outcome",
    ["service", "provider", "outcome"],
)
ledger_transitions_total = Counter(
    "ledger_transitions_total",
    "Applied canonical status transitions",
    ["service", "subject_type", "to_status"],
)
ledger_anomalies_total = Counter(
    "ledger_anomalies_total",
    "Rejected transitions out of terminal states",
    ["service", "subject_type"],
)
purchases_created_total = Counter(
    "purchases_created_total",
    "Purchase/entitlement records created",
    ["service"],
)
scheduler_decisions_total = Counter(
    "scheduler_decisions_total",
    "Automatic payout scheduler decisions per developer",
    ["service", "decision"],
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
