from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

crm_trigger_dispatch_total = Counter(
    "crm_trigger_dispatch_total",
    "Total lifecycle events dispatched to a handler phase",
    ["operation", "phase"],
)

crm_trigger_dispatch_duration_seconds = Histogram(
    "crm_trigger_dispatch_duration_seconds",
    "Lifecycle handler phase duration in seconds",
    ["operation", "phase"],
)

crm_trigger_guardrail_blocks_total = Counter(
    "crm_trigger_guardrail_blocks_total",
    "Total lifecycle events skipped by the recursion guard by reason",
    ["reason"],
)

crm_validation_rejections_total = Counter(
    "crm_validation_rejections_total",
    "Total records rejected by lifecycle validation by reason",
    ["reason"],
)

crm_followup_tasks_created_total = Counter(
    "crm_followup_tasks_created_total",
    "Total follow-up tasks created after opportunity insert",
)

crm_notification_failures_total = Counter(
    "crm_notification_failures_total",
    "Total notification delivery failures by reason",
    ["reason"],
)

crm_event_subscriber_failures_total = Counter(
    "crm_event_subscriber_failures_total",
    "Total in-process event subscriber failures by event type",
    ["event_type"],
)


_ID_SEGMENT_RE = re.compile(
    r"/(?:[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}|\d+)(?=/|$)"
)
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def resolve_http_path_label(request: Request) -> str:
    """Route template with every parameter shown as ``{id}``, or the raw path with ids masked."""
    route = request.scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    if isinstance(template, str) and template:
        return _PATH_PARAM_RE.sub("{id}", template)
    return _ID_SEGMENT_RE.sub("/{id}", request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_trigger_dispatch(operation: str, phase: str, duration: float) -> None:
    crm_trigger_dispatch_total.labels(operation=operation, phase=phase).inc()
    crm_trigger_dispatch_duration_seconds.labels(operation=operation, phase=phase).observe(duration)


def observe_trigger_guardrail_block(reason: str) -> None:
    crm_trigger_guardrail_blocks_total.labels(reason=reason).inc()


def observe_validation_rejection(reason: str, count: int = 1) -> None:
    if count > 0:
        crm_validation_rejections_total.labels(reason=reason).inc(count)


def observe_followup_tasks_created(count: int) -> None:
    if count > 0:
        crm_followup_tasks_created_total.inc(count)


def observe_notification_failure(reason: str, count: int = 1) -> None:
    if count > 0:
        crm_notification_failures_total.labels(reason=reason).inc(count)


def observe_event_subscriber_failure(event_type: str) -> None:
    crm_event_subscriber_failures_total.labels(event_type=event_type).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
