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

ai_proposals_total = Counter(
    "ai_proposals_total",
    "Total AI proposals by type and outcome",
    ["proposal_type", "outcome"],
)

ai_dispatch_failures_total = Counter(
    "ai_dispatch_failures_total",
    "Total dispatcher failures by proposal type",
    ["proposal_type"],
)

ai_oracle_rate_limited_total = Counter(
    "ai_oracle_rate_limited_total",
    "Total oracle calls rejected by rate limiting",
    ["source"],
)

ai_proactive_runs_total = Counter(
    "ai_proactive_runs_total",
    "Total proactive insight runs by result",
    ["result"],
)

ai_batch_items_total = Counter(
    "ai_batch_items_total",
    "Total batch enrichment items by status",
    ["status"],
)

ai_batch_job_duration_seconds = Histogram(
    "ai_batch_job_duration_seconds",
    "Batch enrichment job duration in seconds",
    ["status"],
)

ai_discovery_lookups_total = Counter(
    "ai_discovery_lookups_total",
    "Business discovery lookups by serving layer",
    ["layer"],
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


def observe_proposal(proposal_type: str, outcome: str, count: int = 1) -> None:
    if count > 0:
        ai_proposals_total.labels(proposal_type=proposal_type, outcome=outcome).inc(count)


def observe_dispatch_failure(proposal_type: str) -> None:
    ai_dispatch_failures_total.labels(proposal_type=proposal_type).inc()


def observe_oracle_rate_limited(source: str) -> None:
    ai_oracle_rate_limited_total.labels(source=source).inc()


def observe_proactive_run(result: str) -> None:
    ai_proactive_runs_total.labels(result=result).inc()


def observe_batch_item(status: str) -> None:
    ai_batch_items_total.labels(status=status).inc()


def observe_batch_job(status: str, duration: float) -> None:
    ai_batch_job_duration_seconds.labels(status=status).observe(duration)


def observe_discovery_lookup(layer: str) -> None:
    ai_discovery_lookups_total.labels(layer=layer).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
