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

side_effects_total = Counter(
    "side_effects_total",
    "Post-commit side effects by outcome",
    ["effect", "status"],
)

junction_rows_written_total = Counter(
    "junction_rows_written_total",
    "Junction rows inserted during relation reconciliation",
    ["relation"],
)

search_module_failures_total = Counter(
    "search_module_failures_total",
    "Search modules that failed and contributed no results",
    ["search_module"],
)

search_duration_seconds = Histogram(
    "search_duration_seconds",
    "Search aggregation duration in seconds",
)

rate_limit_rejections_total = Counter(
    "rate_limit_rejections_total",
    "Requests rejected by a rate limiter",
    ["scope"],
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


def observe_side_effect(effect: str, status: str) -> None:
    side_effects_total.labels(effect=effect, status=status).inc()


def observe_junction_rows(relation: str, count: int) -> None:
    if count > 0:
        junction_rows_written_total.labels(relation=relation).inc(count)


def observe_search_module_failure(module: str) -> None:
    search_module_failures_total.labels(search_module=module).inc()


def observe_search_duration(duration: float) -> None:
    search_duration_seconds.observe(duration)


def observe_rate_limit_rejection(scope: str) -> None:
    rate_limit_rejections_total.labels(scope=scope).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
