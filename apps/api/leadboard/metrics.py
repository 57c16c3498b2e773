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

pipeline_moves_total = Counter(
    "pipeline_moves_total",
    "Pipeline move attempts by outcome",
    ["outcome"],
)

webhook_leads_total = Counter(
    "webhook_leads_total",
    "Inbound webhook lead calls by outcome",
    ["method", "outcome"],
)

outgoing_webhook_deliveries_total = Counter(
    "outgoing_webhook_deliveries_total",
    "Outgoing webhook deliveries by outcome",
    ["outcome"],
)

sales_recorded_total = Counter(
    "sales_recorded_total",
    "Sales recorded by status",
    ["status"],
)

visibility_denied_total = Counter(
    "visibility_denied_total",
    "Operations rejected by role or team scope",
    ["resource", "operation"],
)

persistence_failures_total = Counter(
    "persistence_failures_total",
    "Store read/write failures",
    ["resource", "operation"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
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


def observe_pipeline_move(outcome: str) -> None:
    pipeline_moves_total.labels(outcome=outcome).inc()


def observe_webhook_lead(method: str, outcome: str) -> None:
    webhook_leads_total.labels(method=method, outcome=outcome).inc()


def observe_outgoing_delivery(outcome: str) -> None:
    outgoing_webhook_deliveries_total.labels(outcome=outcome).inc()


def observe_sale_recorded(status: str) -> None:
    sales_recorded_total.labels(status=status).inc()


def observe_visibility_denied(resource: str, operation: str) -> None:
    visibility_denied_total.labels(resource=resource, operation=operation).inc()


def observe_persistence_failure(resource: str, operation: str) -> None:
    persistence_failures_total.labels(resource=resource, operation=operation).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
