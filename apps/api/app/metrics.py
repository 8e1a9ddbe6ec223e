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

authz_decisions_total = Counter(
    "authz_decisions_total",
    "Access policy decisions by resource, action and outcome",
    ["resource", "action", "decision"],
)

authz_tenant_isolation_denials_total = Counter(
    "authz_tenant_isolation_denials_total",
    "Decisions denied by the tenant isolation rule",
    ["resource", "action"],
)

team_membership_cache_hit_total = Counter(
    "team_membership_cache_hit_total",
    "Team membership resolver cache hits",
)

team_membership_cache_miss_total = Counter(
    "team_membership_cache_miss_total",
    "Team membership resolver cache misses",
)

team_membership_db_queries_total = Counter(
    "team_membership_db_queries_total",
    "Team membership lookups served by the database",
)

task_transitions_total = Counter(
    "task_transitions_total",
    "Task lifecycle transitions by target status",
    ["status"],
)

task_completion_noops_total = Counter(
    "task_completion_noops_total",
    "Completion requests for tasks that were already completed",
)

task_validation_failures_total = Counter(
    "task_validation_failures_total",
    "Rejected task creation requests by reason",
    ["reason"],
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


def observe_authz_decision(resource: str, action: str, decision: str) -> None:
    authz_decisions_total.labels(resource=resource, action=action, decision=decision).inc()


def observe_tenant_isolation_denial(resource: str, action: str) -> None:
    authz_tenant_isolation_denials_total.labels(resource=resource, action=action).inc()


def observe_membership_cache_hit() -> None:
    team_membership_cache_hit_total.inc()


def observe_membership_cache_miss() -> None:
    team_membership_cache_miss_total.inc()


def observe_membership_db_query(count: int = 1) -> None:
    if count > 0:
        team_membership_db_queries_total.inc(count)


def observe_task_transition(status: str) -> None:
    task_transitions_total.labels(status=status).inc()


def observe_task_completion_noop() -> None:
    task_completion_noops_total.inc()


def observe_task_validation_failure(reason: str) -> None:
    task_validation_failures_total.labels(reason=reason).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
