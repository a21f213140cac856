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

authz_permission_checks_total = Counter(
    "authz_permission_checks_total",
    "Permission checks by outcome",
    ["result"],
)

authz_resolutions_total = Counter(
    "authz_resolutions_total",
    "Effective permission resolutions",
)

authz_resolution_duration_seconds = Histogram(
    "authz_resolution_duration_seconds",
    "Effective permission resolution duration in seconds",
)

membership_primary_anomalies_total = Counter(
    "membership_primary_anomalies_total",
    "Users with zero or several primary memberships",
    ["kind"],
)

hierarchy_corruption_total = Counter(
    "hierarchy_corruption_total",
    "Traversals that found a cycle in stored hierarchy data",
)

hierarchy_moves_total = Counter(
    "hierarchy_moves_total",
    "Entity subtree moves",
)

credit_mutations_total = Counter(
    "credit_mutations_total",
    "Successful credit ledger mutations by operation",
    ["operation"],
)

credit_mutation_failures_total = Counter(
    "credit_mutation_failures_total",
    "Rejected credit ledger mutations by operation and reason",
    ["operation", "reason"],
)

invitation_transitions_total = Counter(
    "invitation_transitions_total",
    "Invitation status transitions",
    ["status"],
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


def observe_permission_check(allowed: bool) -> None:
    authz_permission_checks_total.labels(result="allow" if allowed else "deny").inc()


def observe_resolution(duration: float) -> None:
    authz_resolutions_total.inc()
    authz_resolution_duration_seconds.observe(duration)


def observe_primary_anomaly(kind: str) -> None:
    membership_primary_anomalies_total.labels(kind=kind).inc()


def observe_hierarchy_corruption() -> None:
    hierarchy_corruption_total.inc()


def observe_hierarchy_move() -> None:
    hierarchy_moves_total.inc()


def observe_credit_mutation(operation: str) -> None:
    credit_mutations_total.labels(operation=operation).inc()


def observe_credit_failure(operation: str, reason: str) -> None:
    credit_mutation_failures_total.labels(operation=operation, reason=reason).inc()


def observe_invitation_transition(status: str, count: int = 1) -> None:
    if count > 0:
        invitation_transitions_total.labels(status=status).inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
