"""Prometheus metrics for the relay.

HTTP metrics are labelled by route template (``/api/v1/webhooks/orders``),
never by raw path, so cardinality stays bounded. Pipeline metrics are
incremented by the orchestrators, the retry wrapper, the webhook routes and
the event publisher.
"""

from __future__ import annotations

import time

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

UNMATCHED_ROUTE = "unmatched"

_UNMEASURED_PATHS = frozenset({"/metrics"})

# ── HTTP ─────────────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "HTTP requests by route and status",
    ["method", "route", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency by route",
    ["method", "route"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 15.0, 30.0),
)

webhook_rejections_total = Counter(
    "webhook_rejections_total",
    "Webhooks rejected before reaching the pipeline",
    ["reason"],
)

# ── Pipeline ─────────────────────────────────────────────────────────────────

sync_operations_total = Counter(
    "sync_operations_total",
    "Sync pipeline runs by operation and terminal status",
    ["operation", "status"],
)

sync_duration_seconds = Histogram(
    "sync_duration_seconds",
    "Sync pipeline run duration in seconds",
    ["operation"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

retry_failures_total = Counter(
    "retry_failures_total",
    "Failed attempts observed by the retry wrapper",
    ["operation"],
)

events_published_total = Counter(
    "events_published_total",
    "Lifecycle event publications by type and result",
    ["event_type", "result"],
)

crm_session_authenticated = Gauge(
    "crm_session_authenticated",
    "1 when the CRM session is currently authenticated",
)


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    if not template:
        return UNMATCHED_ROUTE
    path_regex = getattr(route, "path_regex", None)
    path = request.scope.get("path", "")
    if path_regex is None or path_regex.match(path):
        return template
    # Some FastAPI versions report included routes without their router prefix
    for index, char in enumerate(path):
        if index and char == "/" and path_regex.match(path[index:]):
            return path[:index] + template
    return template


class MetricsMiddleware(BaseHTTPMiddleware):
    """Counts requests and observes latency per route template."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in _UNMEASURED_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            # The route is only resolved once the router has run
            route = _route_label(request)
            http_requests_total.labels(
                method=request.method, route=route, status_code=str(status_code)
            ).inc()
            http_request_duration_seconds.labels(method=request.method, route=route).observe(
                time.perf_counter() - started
            )


def get_metrics_response() -> Response:
    """Prometheus text exposition of the default registry."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
