"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


visit_admissions_total = Counter(
    "visit_admissions_total",
    "Visit submissions by admission outcome",
    ["service", "outcome"],
)
visit_verifications_total = Counter(
    "visit_verifications_total",
    "Visit integrity verifications by outcome",
    ["service", "outcome"],
)
badge_claims_total = Counter(
    "badge_claims_total",
    "Badge claim attempts by outcome",
    ["service", "outcome"],
)
wallet_logins_total = Counter(
    "wallet_logins_total",
    "Wallet challenge logins by outcome",
    ["service", "outcome"],
)
ledger_call_seconds = Histogram(
    "ledger_call_seconds",
    "Ledger RPC call duration seconds",
    ["service", "operation"],
)
content_store_call_seconds = Histogram(
    "content_store_call_seconds",
    "Content store call duration seconds",
    ["service", "operation"],
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
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
rate_limited_total = Counter("rate_limited_total", "Requests rejected by rate limiting", ["service"])


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
