"""
api/routes/v1/security.py -- Admin security console endpoints.

Routes:
  GET  /api/v1/security/dashboard                -- recent events, open alerts, counters
  POST /api/v1/security/alerts/{id}/resolve      -- acknowledge an alert
  GET  /api/v1/security/audit-logs               -- persisted audit trail

Read-mostly aggregate routes for the admin dashboard. All require the admin
role.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import AuditLogOut, ErrorDetail, SecurityAlertOut, SecurityDashboardResponse
from audit.store import AuditStore
from auth.dependencies import require_admin
from security.engine import SecurityEngine

# Router-level dependency enforces admin; handlers do not repeat it.
router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/security/dashboard", response_model=SecurityDashboardResponse)
async def get_dashboard(request: Request) -> SecurityDashboardResponse:
    """Return the security overview for the trailing hour.

    Response:
      recent_events    -- up to 20 most recent events from the last hour
      active_alerts    -- every unresolved alert
      login_attempts   -- login_attempt events in the last hour
      blocked_ips      -- size of the configured IP block list
      active_sessions  -- sessions that have not timed out
    """
    engine: SecurityEngine = request.app.state.security
    return SecurityDashboardResponse.from_dashboard(engine.get_security_dashboard())


@router.post("/security/alerts/{alert_id}/resolve", response_model=SecurityAlertOut)
async def resolve_alert(request: Request, alert_id: str) -> SecurityAlertOut:
    engine: SecurityEngine = request.app.state.security
    if not engine.resolve_alert(alert_id):
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="not_found", message=f"Alert {alert_id} not found.").model_dump(),
        )
    alert = next(a for a in engine.get_alerts() if a.id == alert_id)
    return SecurityAlertOut.model_validate(alert)


@router.get("/security/audit-logs", response_model=list[AuditLogOut])
def get_audit_logs(
    request: Request,
    user_id: Optional[str] = Query(default=None, max_length=255),
    limit: int = Query(default=50, ge=1, le=500),
) -> list[AuditLogOut]:
    """Return persisted audit rows, newest first, optionally for one actor."""
    audit_store: AuditStore = request.app.state.audit_store
    return [AuditLogOut.from_entry(e) for e in audit_store.get_audit_logs(user_id=user_id, limit=limit)]
