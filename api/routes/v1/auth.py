"""
api/routes/v1/auth.py -- Login attempt gatekeeping and password strength checks.

Routes:
  POST /api/v1/auth/login-attempts     -- record an identity-provider sign-in result
  POST /api/v1/auth/password/validate  -- report password strength problems

Both endpoints are public: the web client calls them before the user holds
a token. Credentials themselves never reach this service -- the identity
provider verifies them and the client reports only the verdict.

Security:
  [H2] /auth/login-attempts falls under the "/auth/login" rate-limit rule
       (5 requests / 15 minutes per IP) enforced by api.limiter.
  [M5] Cache-Control: no-store on login attempt responses.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from api.limiter import client_ip
from api.models import (
    LoginAttemptRequest,
    LoginAttemptResponse,
    PasswordValidateRequest,
    PasswordValidateResponse,
)
from security.engine import UNKNOWN_USER_AGENT, SecurityEngine

router = APIRouter()


@router.post("/auth/login-attempts", response_model=LoginAttemptResponse)
async def record_login_attempt(request: Request, body: LoginAttemptRequest) -> JSONResponse:
    """Run a sign-in result through blocked-IP, domain and lockout checks.

    Returns 200 with allowed=true when the login may complete, 403 otherwise.
    The outcome field tells the client which check refused it so the UI can
    show "account locked" rather than a generic failure.
    """
    engine: SecurityEngine = request.app.state.security
    outcome = engine.evaluate_login_attempt(
        body.email,
        client_ip(request),
        request.headers.get("User-Agent", UNKNOWN_USER_AGENT),
        body.success,
    )
    payload = LoginAttemptResponse.from_outcome(outcome)
    resp = JSONResponse(
        status_code=200 if payload.allowed else 403,
        content=payload.model_dump(mode="json"),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/password/validate", response_model=PasswordValidateResponse)
async def validate_password(request: Request, body: PasswordValidateRequest) -> PasswordValidateResponse:
    """Return every strength rule the candidate password breaks."""
    engine: SecurityEngine = request.app.state.security
    return PasswordValidateResponse.from_check(engine.validate_password(body.password))
