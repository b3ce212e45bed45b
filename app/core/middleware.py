import logging
import math
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from app.core.dependencies import client_origin
from app.core.exceptions import RateLimitedError
from app.core.metrics import INGRESS_REJECTIONS

logger = logging.getLogger("app.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with a request id, echoed back as X-Request-ID."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
        request.state.request_id = request_id

        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - start) * 1000)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "%s %s → %d (%dms)",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            extra={"request_id": request_id, "origin": client_origin(request), "duration_ms": duration_ms},
        )
        return response


class OriginRateLimitMiddleware(BaseHTTPMiddleware):
    """Ingress guard for the AI routes.

    Runs before the request body is read or the caller authenticated, so a
    flood from one origin never reaches quota accounting or a provider.
    """

    def __init__(self, app: ASGIApp, guarded_prefixes: tuple[str, ...] = ("/api/v1/generate",)):
        super().__init__(app)
        self.guarded_prefixes = guarded_prefixes

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method == "OPTIONS" or not request.url.path.startswith(self.guarded_prefixes):
            return await call_next(request)

        gateway = request.app.state.gateway
        origin = client_origin(request)

        if not await gateway.allow_origin(origin):
            INGRESS_REJECTIONS.inc()
            retry_after = max(1, math.ceil(await gateway.rate_limiter.retry_after(origin)))
            # middleware runs outside the exception handlers, so render directly
            exc = RateLimitedError(
                "Too many requests. Please slow down.",
                headers={
                    "Retry-After": str(retry_after),
                    "X-RateLimit-Limit": str(gateway.rate_limiter.max_requests),
                    "X-RateLimit-Remaining": "0",
                },
                extra={"retry_after": retry_after},
            )
            return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=exc.headers)

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(gateway.rate_limiter.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(await gateway.rate_limiter.remaining(origin))
        return response
