"""Prometheus metric definitions for the webhook pipeline."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


webhooks_received_total = Counter(
    "webhooks_received_total",
    "Inbound provider notifications",
    ["provider"],
)
webhook_verification_failures_total = Counter(
    "webhook_verification_failures_total",
    "Notifications whose verdict was not accepted, by reason",
    ["provider", "reason"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Duplicate provider notifications skipped by the event store",
    ["provider"],
)
webhook_processing_errors_total = Counter(
    "webhook_processing_errors_total",
    "Notifications that failed internally and were acknowledged anyway",
    ["provider"],
)
payment_status_changes_total = Counter(
    "payment_status_changes_total",
    "Snapshot status transitions published on the event bus",
    ["provider", "normalized_status"],
)
product_jobs_total = Counter(
    "product_jobs_total",
    "Product job runs by terminal outcome",
    ["product_type", "trigger_status", "outcome"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
outbound_call_seconds = Histogram(
    "outbound_call_seconds",
    "Outbound HTTP call duration including retries",
    ["dependency"],
)
scheduled_triggers_total = Counter(
    "scheduled_triggers_total",
    "Delayed triggers processed by terminal state",
    ["kind", "state"],
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


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
