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

crm_pipeline_operations_total = Counter(
    "crm_pipeline_operations_total",
    "Total conversion pipeline operations by action and outcome",
    ["action", "outcome"],
)

crm_pipeline_operation_duration_seconds = Histogram(
    "crm_pipeline_operation_duration_seconds",
    "Conversion pipeline operation duration in seconds",
    ["action"],
)

crm_partial_failures_total = Counter(
    "crm_partial_failures_total",
    "Multi-step writes that failed after an earlier step succeeded",
    ["action", "step"],
)

crm_stage_transitions_total = Counter(
    "crm_stage_transitions_total",
    "Opportunity stage transitions",
    ["from_stage", "to_stage"],
)

crm_facet_degraded_total = Counter(
    "crm_facet_degraded_total",
    "Facet lookups served from the capped sample fallback",
    ["facet"],
)

crm_selector_lookups_total = Counter(
    "crm_selector_lookups_total",
    "Entity selector lookups by entity type and empty state",
    ["entity_type", "empty_state"],
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
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_pipeline_operation(action: str, outcome: str, duration: float) -> None:
    crm_pipeline_operations_total.labels(action=action, outcome=outcome).inc()
    crm_pipeline_operation_duration_seconds.labels(action=action).observe(duration)


def observe_partial_failure(action: str, step: str) -> None:
    crm_partial_failures_total.labels(action=action, step=step).inc()


def observe_stage_transition(from_stage: str, to_stage: str) -> None:
    crm_stage_transitions_total.labels(from_stage=from_stage, to_stage=to_stage).inc()


def observe_facet_degraded(facet: str) -> None:
    crm_facet_degraded_total.labels(facet=facet).inc()


def observe_selector_lookup(entity_type: str, empty_state: str | None) -> None:
    crm_selector_lookups_total.labels(entity_type=entity_type, empty_state=empty_state or "none").inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
