import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api.v1.router import api_v1_router
from app.core.config import settings, validate_settings_for_production
from app.core.exceptions import AppError
from app.core.logging import setup_logging
from app.core.metrics import PrometheusMiddleware, metrics_response
from app.core.middleware import OriginRateLimitMiddleware, RequestLoggingMiddleware
from app.core.rate_limit import limiter
from app.core.sentry import init_sentry

# Configure logging before anything else
setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    init_sentry()
    logger.info("Starting Inference Gateway...")

    owns_gateway = getattr(app.state, "gateway", None) is None
    if owns_gateway:
        from app.gateway.gateway import build_gateway

        app.state.gateway = build_gateway(settings)

    yield

    # Shutdown
    if owns_gateway:
        from app.db.postgres import engine

        await engine.dispose()
    logger.info("Inference Gateway shut down")


app = FastAPI(
    title="Inference Gateway",
    description="Cost-ordered LLM fallback gateway with per-origin rate limits and monthly quotas",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


@app.exception_handler(AppError)
async def _app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=exc.headers)


# Log unhandled exceptions with a full traceback
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    detail = f"{type(exc).__name__}: {exc}" if settings.app_debug else "Internal server error"
    return JSONResponse(status_code=500, content={"detail": detail, "code": "INTERNAL_ERROR"})


# Per-route limits
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Middleware: last added runs first
app.add_middleware(OriginRateLimitMiddleware)
app.add_middleware(PrometheusMiddleware)
app.add_middleware(RequestLoggingMiddleware)

# CORS: parse allowed_origins from settings (comma-separated)
_origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-Request-ID"],
)

# API routes
app.include_router(api_v1_router)


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()


@app.get("/api/v1/health")
async def health(request: Request):
    gateway = getattr(request.app.state, "gateway", None)
    return {
        "status": "ok",
        "gateway": gateway is not None,
        "configured_kinds": sorted(kind.value for kind in gateway.orchestrator.adapters) if gateway else [],
    }
