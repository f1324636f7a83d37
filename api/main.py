"""
api/main.py -- FastAPI application entry point for ProdReport.

Exposes the in-process cache and security engine to the web client over
HTTP: login attempt gatekeeping, sessions, password checks, and the admin
security and cache consoles.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. CORSMiddleware     -- adds CORS headers for allowed browser origins
  2. log_requests       -- one access-log line per request with latency
  3. enforce_rate_limits -- sliding-window limits from the SecurityEngine

Lifespan handles startup (cache, audit store, security engine, sweep timers)
and shutdown (stop timers, drain pending audit writes, close DB) symmetrically.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import psutil
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from api.limiter import client_ip, enforce_rate_limits
from api.models import (
    ComponentCheck,
    ErrorDetail,
    ErrorResponse,
    HealthResponse,
    PerformanceSummary,
    SecuritySummary,
)
from api.routes.v1.auth import router as auth_router
from api.routes.v1.cache import router as cache_router
from api.routes.v1.security import router as security_router
from api.routes.v1.sessions import router as sessions_router
from audit.store import AuditStore
from cache.store import TTLCache
from core.config import get_settings
from security.engine import SecurityEngine
from security.models import SecurityPolicy

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("prodreport.api")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Cache first -- depends on nothing.
      2. Audit store second -- the engine needs it as its audit sink.
      3. Engine last, then both sweep timers.
    """
    settings = get_settings()
    logger.info("ProdReport API starting up")
    app.state.started_at = time.time()
    app.state.cache = TTLCache(
        max_items=settings.cache_max_items,
        default_ttl=settings.cache_default_ttl_seconds,
        sweep_interval=settings.cache_sweep_interval_seconds,
    )
    logger.info("Cache initialized (max_items=%d)", settings.cache_max_items)
    app.state.audit_store = AuditStore(settings.audit_db_url)
    logger.info("Audit store initialized")
    app.state.security = SecurityEngine(
        SecurityPolicy.from_settings(settings),
        audit_sink=app.state.audit_store,
        sweep_interval=settings.security_sweep_interval_seconds,
    )
    logger.info(
        "Security engine initialized (blocked_ips=%d, allowed_domains=%d)",
        len(settings.blocked_ips),
        len(settings.allowed_domains),
    )
    app.state.cache.start_sweep()
    app.state.security.start_sweep()

    yield

    # Shutdown
    app.state.cache.close()
    await app.state.security.flush_audit()
    app.state.security.close()
    app.state.audit_store.close()
    logger.info("ProdReport API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="ProdReport API",
    description="Security gatekeeping and cache administration for the ProdReport reporting portal.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# @app.middleware("http") functions and add_middleware() both wrap the app;
# the last one registered is the outermost. Rate limiting is registered first
# so it sits innermost, after the access log has started its timer.
# ---------------------------------------------------------------------------

app.middleware("http")(enforce_rate_limits)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        client_ip(request),
    )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    allow_credentials=True,
    max_age=3600,
)

# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(sessions_router, prefix="/api/v1", tags=["Sessions"])
app.include_router(security_router, prefix="/api/v1", tags=["Security"])
app.include_router(cache_router, prefix="/api/v1", tags=["Cache"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with detail=ErrorDetail(...).model_dump()
    (a dict). When detail is already a structured dict, use it directly as the
    error field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit rule matches it --
# load balancer probes must not be throttled.
# ---------------------------------------------------------------------------

_HEALTH_PROBE_KEY = "health:probe"


def _timed_check(probe) -> ComponentCheck:
    start = time.perf_counter()
    try:
        ok = probe()
        error = None if ok else "probe returned a failure"
    except Exception as e:
        logger.exception("Health probe failed")
        ok, error = False, type(e).__name__
    ms = round((time.perf_counter() - start) * 1000, 2)
    return ComponentCheck(status="healthy" if ok else "unhealthy", response_time_ms=ms, error=error)


def _probe_cache(cache: TTLCache) -> bool:
    cache.set(_HEALTH_PROBE_KEY, True, ttl=5)
    try:
        return cache.has(_HEALTH_PROBE_KEY)
    finally:
        cache.delete(_HEALTH_PROBE_KEY)


@app.get("/api/v1/health", response_model=HealthResponse, tags=["Health"])
async def health(request: Request) -> JSONResponse:
    """Report per-component health.

    Status code: 200 when every check passes, 207 when some fail, 503 when all fail.
    """
    started = time.perf_counter()
    state = request.app.state
    dashboard = None

    def probe_security() -> bool:
        nonlocal dashboard
        dashboard = state.security.get_security_dashboard()
        return True

    checks = {
        "cache": _timed_check(lambda: _probe_cache(state.cache)),
        "security": _timed_check(probe_security),
        "database": _timed_check(state.audit_store.ping),
    }
    failed = sum(1 for c in checks.values() if c.status != "healthy")
    if failed == 0:
        status, code = "healthy", 200
    elif failed < len(checks):
        status, code = "degraded", 207
    else:
        status, code = "unhealthy", 503

    body = HealthResponse(
        status=status,
        version=VERSION,
        timestamp=datetime.now(timezone.utc).isoformat(),
        environment="development" if get_settings().debug else "production",
        uptime_seconds=round(time.time() - getattr(state, "started_at", time.time()), 3),
        checks=checks,
        security=SecuritySummary(
            recent_alerts=len(dashboard.active_alerts) if dashboard else 0,
            active_sessions=dashboard.active_sessions if dashboard else 0,
        ),
        performance=PerformanceSummary(
            memory_rss_bytes=psutil.Process().memory_info().rss,
            response_time_ms=round((time.perf_counter() - started) * 1000, 2),
        ),
    )
    return JSONResponse(status_code=code, content=body.model_dump(mode="json"))


@app.head("/api/v1/health", include_in_schema=False)
async def health_head() -> Response:
    """Bare liveness probe for load balancers."""
    return Response(status_code=200)
