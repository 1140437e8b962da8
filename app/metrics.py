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

background_tasks_total = Counter(
    "background_tasks_total",
    "Total background task runs by status",
    ["task", "status"],
)

background_task_duration_seconds = Histogram(
    "background_task_duration_seconds",
    "Background task duration in seconds",
    ["task"],
)

webhook_deliveries_total = Counter(
    "webhook_deliveries_total",
    "Outbound webhook delivery attempts by outcome",
    ["event_type", "outcome"],
)

stripe_events_total = Counter(
    "stripe_events_total",
    "Stripe webhook events by type and outcome",
    ["event_type", "outcome"],
)

ai_usage_messages_total = Counter(
    "ai_usage_messages_total",
    "Logged AI messages by message type",
    ["message_type"],
)

ai_limit_denials_total = Counter(
    "ai_limit_denials_total",
    "AI requests denied by the usage gate",
    ["reason"],
)

oauth_token_refresh_total = Counter(
    "oauth_token_refresh_total",
    "OAuth access token refreshes by provider and outcome",
    ["provider", "outcome"],
)

lead_scores_calculated_total = Counter(
    "lead_scores_calculated_total",
    "Lead score calculations by qualification status",
    ["qualification_status"],
)

fls_masked_fields_count = Counter(
    "fls_masked_fields_count",
    "Total FLS-masked fields",
    ["resource", "operation"],
)

fls_denied_fields_count = Counter(
    "fls_denied_fields_count",
    "Total FLS-denied fields",
    ["resource", "operation"],
)

rls_denied_reads_count = Counter(
    "rls_denied_reads_count",
    "Total denied reads by RLS",
    ["resource", "scope_type"],
)

rls_denied_writes_count = Counter(
    "rls_denied_writes_count",
    "Total denied writes by RLS",
    ["resource", "scope_type"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")
_LITERAL_ROUTES = {"/api/webhooks/stripe"}


def _normalize_route_template(path: str) -> str:
    if path in _LITERAL_ROUTES:
        return path
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_background_task(task: str, status: str, duration: float) -> None:
    background_tasks_total.labels(task=task, status=status).inc()
    background_task_duration_seconds.labels(task=task).observe(duration)


def observe_webhook_delivery(event_type: str, outcome: str) -> None:
    webhook_deliveries_total.labels(event_type=event_type, outcome=outcome).inc()


def observe_stripe_event(event_type: str, outcome: str) -> None:
    stripe_events_total.labels(event_type=event_type, outcome=outcome).inc()


def observe_ai_usage(message_type: str, count: int = 1) -> None:
    if count > 0:
        ai_usage_messages_total.labels(message_type=message_type).inc(count)


def observe_ai_limit_denial(reason: str) -> None:
    ai_limit_denials_total.labels(reason=reason).inc()


def observe_oauth_refresh(provider: str, outcome: str) -> None:
    oauth_token_refresh_total.labels(provider=provider, outcome=outcome).inc()


def observe_lead_score(qualification_status: str) -> None:
    lead_scores_calculated_total.labels(qualification_status=qualification_status).inc()


def observe_fls_field_counts(resource: str, operation: str, masked_count: int, denied_count: int) -> None:
    if masked_count > 0:
        fls_masked_fields_count.labels(resource=resource, operation=operation).inc(masked_count)
    if denied_count > 0:
        fls_denied_fields_count.labels(resource=resource, operation=operation).inc(denied_count)


def observe_rls_denied_read(resource: str, scope_type: str) -> None:
    rls_denied_reads_count.labels(resource=resource, scope_type=scope_type).inc()


def observe_rls_denied_write(resource: str, scope_type: str) -> None:
    rls_denied_writes_count.labels(resource=resource, scope_type=scope_type).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
