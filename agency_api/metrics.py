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

pipeline_reorder_batches_total = Counter(
    "pipeline_reorder_batches_total",
    "Total reorder batches by scope and outcome",
    ["scope", "outcome"],
)

pipeline_reorder_batch_size = Histogram(
    "pipeline_reorder_batch_size",
    "Number of rows submitted per reorder batch",
    ["scope"],
    buckets=(1, 2, 5, 10, 25, 50, 100, 250),
)

activity_log_notifications_total = Counter(
    "activity_log_notifications_total",
    "Activity log notifications by outcome",
    ["outcome"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_reorder_batch(scope: str, outcome: str, size: int) -> None:
    pipeline_reorder_batches_total.labels(scope=scope, outcome=outcome).inc()
    pipeline_reorder_batch_size.labels(scope=scope).observe(size)


def observe_activity_log(outcome: str) -> None:
    activity_log_notifications_total.labels(outcome=outcome).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
