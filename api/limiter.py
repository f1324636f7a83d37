"""
api/limiter.py -- Rate limiting middleware backed by the SecurityEngine.

Every request path is checked against the engine's sliding-window rules
(security.models.DEFAULT_RATE_LIMIT_RULES unless configured otherwise).
Paths that match no rule pass straight through.

Using the single engine on app.state ensures all routes share the same
in-memory counter store. A per-module engine would give each module its own
isolated counters and rate limits would never trigger.
"""

from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse
from security.engine import SecurityEngine


def client_ip(request: Request) -> str:
    """Return the caller's IP address, or "unknown" when the transport hides it."""
    return request.client.host if request.client else "unknown"


async def enforce_rate_limits(request: Request, call_next):
    """Reject requests over their endpoint's limit with 429 and Retry-After."""
    engine: SecurityEngine | None = getattr(request.app.state, "security", None)
    if engine is None:
        return await call_next(request)

    path = request.url.path
    ip = client_ip(request)
    if engine.check_rate_limit(path, ip):
        return await call_next(request)

    retry_after = engine.retry_after(path, ip)
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=f"Retry in {retry_after} seconds.",
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response
