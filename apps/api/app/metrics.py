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

crm_association_jobs_total = Counter(
    "crm_association_jobs_total",
    "Total association jobs by status",
    ["job_type", "status"],
)

crm_association_job_duration_seconds = Histogram(
    "crm_association_job_duration_seconds",
    "Association job duration in seconds",
    ["job_type"],
)

crm_association_batches_total = Counter(
    "crm_association_batches_total",
    "Total committed association write batches",
    ["job_type"],
)

crm_association_mutations_total = Counter(
    "crm_association_mutations_total",
    "Total committed association document mutations",
    ["job_type"],
)

crm_integrity_issues_total = Counter(
    "crm_integrity_issues_total",
    "Integrity issues found by report runs",
    ["issue"],
)

crm_duplicate_companies_deleted_total = Counter(
    "crm_duplicate_companies_deleted_total",
    "Companies deleted by the duplicate resolver",
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


def observe_job(job_type: str, status: str, duration: float) -> None:
    crm_association_jobs_total.labels(job_type=job_type, status=status).inc()
    crm_association_job_duration_seconds.labels(job_type=job_type).observe(duration)


def observe_batch_commit(job_type: str, mutations: int) -> None:
    crm_association_batches_total.labels(job_type=job_type).inc()
    if mutations > 0:
        crm_association_mutations_total.labels(job_type=job_type).inc(mutations)


def observe_integrity_issues(counts: dict[str, int]) -> None:
    for issue, count in counts.items():
        if count > 0:
            crm_integrity_issues_total.labels(issue=issue).inc(count)


def observe_companies_deleted(count: int) -> None:
    if count > 0:
        crm_duplicate_companies_deleted_total.inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
