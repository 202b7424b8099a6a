"""Prometheus instrumentation for HTTP traffic, throttles and flash runs."""

from __future__ import annotations

import re
import time

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from ..core.config import Settings, get_settings

HTTP_REQUESTS = Counter(
    "devicehub_http_requests_total",
    "HTTP requests by route template and status",
    labelnames=("method", "route", "status"),
)
HTTP_LATENCY = Histogram(
    "devicehub_http_request_duration_seconds",
    "HTTP request latency by route template",
    labelnames=("method", "route"),
    buckets=(0.005, 0.025, 0.1, 0.5, 1, 5, 30, 120),
)
RATE_LIMIT_DENIALS = Counter(
    "devicehub_rate_limit_denials_total",
    "Requests rejected by a throttle",
    labelnames=("scope",),
)
FLASH_IN_PROGRESS = Gauge(
    "devicehub_flash_in_progress",
    "Flash runs currently holding a port",
)
FLASH_PHASE_DURATION = Histogram(
    "devicehub_flash_phase_duration_seconds",
    "Wall-clock time of each compile or upload invocation",
    labelnames=("phase",),
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300),
)
FLASH_OUTCOMES = Counter(
    "devicehub_flash_outcomes_total",
    "Flash runs by final state or failure reason",
    labelnames=("outcome",),
)

# Every unmatched API path shares one label.
_UNMATCHED = "<unmatched>"
_digits = re.compile(r"/\d+(?=/|$)")


def route_label(request: Request, api_prefix: str) -> str:
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    if template:
        return template
    if request.url.path.startswith(api_prefix):
        return _UNMATCHED
    return _digits.sub("/{n}", request.url.path) or "/"


class PrometheusMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, metrics_path: str, api_prefix: str) -> None:  # type: ignore[no-untyped-def]
        super().__init__(app)
        self._metrics_path = metrics_path
        self._api_prefix = api_prefix

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == self._metrics_path:
            return await call_next(request)
        started = time.perf_counter()
        response = await call_next(request)
        route = route_label(request, self._api_prefix)
        HTTP_REQUESTS.labels(request.method, route, str(response.status_code)).inc()
        HTTP_LATENCY.labels(request.method, route).observe(time.perf_counter() - started)
        return response


def setup_prometheus(app: FastAPI, settings: Settings | None = None) -> None:
    """Instrument ``app`` and serve the registry at the configured metrics path."""

    settings = settings or get_settings()
    metrics_path = settings.prometheus_metrics_path
    app.add_middleware(
        PrometheusMiddleware,
        metrics_path=metrics_path,
        api_prefix=settings.api_prefix,
    )

    @app.get(metrics_path, include_in_schema=False)
    async def prometheus_metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
