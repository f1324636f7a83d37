"""
api/routes/v1/sessions.py -- IP-pinned application sessions.

Routes:
  POST   /api/v1/sessions                    -- open a session for the caller at their IP
  POST   /api/v1/sessions/{id}/validate      -- check (and refresh) a session
  DELETE /api/v1/sessions/{id}               -- close a session

A session is bound to the caller's user ID and IP address at creation. A
validation from a different IP fails and is logged as suspicious activity;
a session idle longer than SESSION_TIMEOUT_MINUTES fails and is dropped.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import client_ip
from api.models import SessionCreate, SessionValidateResponse
from auth.dependencies import get_current_user
from auth.models import Principal
from security.engine import SecurityEngine

# Auth policy: every session route requires a verified bearer token. The
# session is always bound to the token's subject, never to a client-supplied ID.
router = APIRouter(dependencies=[Depends(get_current_user)])


@router.post("/sessions", status_code=201, response_model=SessionValidateResponse)
async def create_session(
    request: Request,
    body: SessionCreate,
    user: Principal = Depends(get_current_user),
) -> SessionValidateResponse:
    engine: SecurityEngine = request.app.state.security
    engine.create_session(body.session_id, user.user_id, client_ip(request))
    return SessionValidateResponse(session_id=body.session_id, valid=True)


@router.post("/sessions/{session_id}/validate", response_model=SessionValidateResponse)
async def validate_session(
    request: Request,
    session_id: str,
    user: Principal = Depends(get_current_user),
) -> SessionValidateResponse:
    """Return valid=false for unknown, foreign, moved or idle sessions."""
    engine: SecurityEngine = request.app.state.security
    valid = engine.validate_session(session_id, user.user_id, client_ip(request))
    return SessionValidateResponse(session_id=session_id, valid=valid)


@router.delete("/sessions/{session_id}", status_code=204)
async def destroy_session(request: Request, session_id: str) -> Response:
    engine: SecurityEngine = request.app.state.security
    engine.destroy_session(session_id)
    return Response(status_code=204)
