"""Prometheus metrics for the application."""

import time

from prometheus_client import Counter, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("app", "Inference gateway application info")
APP_INFO.info({"version": "1.0.0", "name": "inference_gateway"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120],
)

PROVIDER_ATTEMPTS = Counter(
    "gateway_provider_attempts_total",
    "Provider attempts by classified outcome",
    ["provider", "outcome"],
)

PROVIDER_ATTEMPT_DURATION = Histogram(
    "gateway_provider_attempt_duration_seconds",
    "Duration of a single provider attempt",
    ["provider"],
    buckets=[0.25, 0.5, 1, 2.5, 5, 10, 20, 30, 60, 90],
)

INVOCATIONS = Counter(
    "gateway_invocations_total",
    "Invocations by terminal result (success or error kind)",
    ["result"],
)

INGRESS_REJECTIONS = Counter(
    "gateway_ingress_rejections_total",
    "Requests rejected by the origin rate limiter",
)

QUOTA_REJECTIONS = Counter(
    "gateway_quota_rejections_total",
    "Requests rejected by the pre-flight quota check",
    ["tier"],
)


# --- Middleware ---


def _route_label(request: Request) -> str:
    """Matched route template (e.g. /api/v1/usage); unknown paths share one label."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        # The router records the matched route on the scope during call_next
        path = _route_label(request)
        REQUEST_COUNT.labels(method=method, path=path, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=method, path=path).observe(duration)

        return response


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
