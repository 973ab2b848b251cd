"""Prometheus metric definitions for the bulk notification service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


batches_created_total = Counter("notification_batches_created_total", "Total batches created", ["service", "job_type"])
queue_items_enqueued_total = Counter(
    "notification_queue_items_enqueued_total",
    "Queue rows written during batch fan-out",
    ["service"],
)
queue_chunk_failures_total = Counter(
    "notification_queue_chunk_failures_total",
    "Fan-out chunks that could not be written",
    ["service"],
)
notifications_sent_total = Counter(
    "notifications_sent_total",
    "Queue items delivered successfully",
    ["service", "notification_type"],
)
delivery_retries_total = Counter(
    "notification_delivery_retries_total",
    "Failed attempts returned to pending for a later pass",
    ["service", "notification_type"],
)
notifications_failed_total = Counter(
    "notifications_failed_total",
    "Queue items failed after exhausting attempts",
    ["service", "notification_type"],
)
claims_lost_total = Counter(
    "notification_claims_lost_total",
    "Queue items skipped because another pass claimed them first",
    ["service"],
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
processing_pass_seconds = Histogram(
    "notification_processing_pass_seconds",
    "Duration of one processing pass",
    ["service", "scoped"],
)
queue_pending_total = Gauge(
    "notification_queue_pending_total",
    "Current count of queue items awaiting delivery",
    ["service"],
)
queue_oldest_pending_age_seconds = Gauge(
    "notification_queue_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending queue item",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
