"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


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
outbound_calls_total = Counter(
    "outbound_calls_total",
    "Outbound service calls by final outcome",
    ["service", "dependency", "method", "outcome"],
)
outbound_call_duration_seconds = Histogram(
    "outbound_call_duration_seconds",
    "Outbound service call duration seconds including retries",
    ["service", "dependency", "method"],
)
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
events_published_total = Counter(
    "events_published_total",
    "Domain events handed to the broker",
    ["service", "topic"],
)
events_publish_failed_total = Counter(
    "events_publish_failed_total",
    "Domain events lost because publishing failed after the write committed",
    ["service", "topic"],
)
events_consumed_total = Counter(
    "events_consumed_total",
    "Events handled successfully by a consumer",
    ["service", "topic"],
)
event_handler_failures_total = Counter(
    "event_handler_failures_total",
    "Event handler failures that triggered redelivery",
    ["service", "topic"],
)
dlq_published_total = Counter(
    "dlq_published_total",
    "Total DLQ events published",
    ["service", "topic", "error_type"],
)
event_queue_delay_seconds = Histogram(
    "event_queue_delay_seconds",
    "Event queue delay seconds between emission and consume time",
    ["service", "topic"],
)
notifications_sent_total = Counter(
    "notifications_sent_total",
    "Notifications delivered through a channel",
    ["service", "type"],
)
notifications_failed_total = Counter(
    "notifications_failed_total",
    "Notifications recorded as failed",
    ["service", "type"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
