"""
API request and response models for ProdReport REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in security/models.py,
cache/store.py and audit/models.py, which own the internal domain
representation. Route handlers map between the two.

Separation of concerns: domain dataclasses = domain truth; api/ models = API contract.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from audit.models import AuditLogEntry
from cache.store import CacheStats
from security.models import (
    AlertSeverity,
    LoginOutcome,
    PasswordCheck,
    SecurityDashboard,
    SecurityEventType,
)

# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class ComponentCheck(BaseModel):
    """Result of probing one dependency during a health check."""

    model_config = ConfigDict(frozen=True)

    status: str  # "healthy" | "unhealthy"
    response_time_ms: float
    error: Optional[str] = None


class SecuritySummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    recent_alerts: int = 0
    active_sessions: int = 0


class PerformanceSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    memory_rss_bytes: int
    response_time_ms: float


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"  # "healthy" | "degraded" | "unhealthy"
    version: str
    timestamp: str
    environment: str  # "development" | "production"
    uptime_seconds: float
    checks: dict[str, ComponentCheck]
    security: SecuritySummary
    performance: PerformanceSummary


# ---------------------------------------------------------------------------
# Login attempts and passwords
# ---------------------------------------------------------------------------


class LoginAttemptRequest(BaseModel):
    """Request body for POST /api/v1/auth/login-attempts.

    Sent by the web client after the identity provider has answered a
    sign-in. success is the provider's verdict; the response says whether
    ProdReport honours it.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=320)
    success: bool


class LoginAttemptResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    allowed: bool
    outcome: LoginOutcome

    @classmethod
    def from_outcome(cls, outcome: LoginOutcome) -> "LoginAttemptResponse":
        return cls(allowed=outcome.allowed, outcome=outcome)


class PasswordValidateRequest(BaseModel):
    """Request body for POST /api/v1/auth/password/validate."""

    password: str = Field(max_length=255)


class PasswordValidateResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    errors: list[str]

    @classmethod
    def from_check(cls, check: PasswordCheck) -> "PasswordValidateResponse":
        return cls(is_valid=check.is_valid, errors=list(check.errors))


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionCreate(BaseModel):
    """Request body for POST /api/v1/sessions."""

    model_config = ConfigDict(str_strip_whitespace=True)

    session_id: str = Field(min_length=8, max_length=128)


class SessionValidateResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    valid: bool


# ---------------------------------------------------------------------------
# Security dashboard
# ---------------------------------------------------------------------------


class SecurityEventOut(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    type: SecurityEventType
    ip_address: str
    user_agent: str
    timestamp: float
    risk_score: int
    user_id: Optional[str] = None
    email: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class SecurityAlertOut(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    severity: AlertSeverity
    message: str
    timestamp: float
    user_id: Optional[str] = None
    resolved: bool


class SecurityDashboardResponse(BaseModel):
    """Response for GET /api/v1/security/dashboard."""

    model_config = ConfigDict(frozen=True)

    recent_events: list[SecurityEventOut]
    active_alerts: list[SecurityAlertOut]
    login_attempts: int
    blocked_ips: int
    active_sessions: int

    @classmethod
    def from_dashboard(cls, dashboard: SecurityDashboard) -> "SecurityDashboardResponse":
        """Factory Method -- the mapping lives with the output model, not in the route."""
        return cls(
            recent_events=[SecurityEventOut.model_validate(e) for e in dashboard.recent_events],
            active_alerts=[SecurityAlertOut.model_validate(a) for a in dashboard.active_alerts],
            login_attempts=dashboard.login_attempts,
            blocked_ips=dashboard.blocked_ips,
            active_sessions=dashboard.active_sessions,
        )


class AuditLogOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    action: str
    actor_id: str
    details: dict[str, Any]
    created_at: str

    @classmethod
    def from_entry(cls, entry: AuditLogEntry) -> "AuditLogOut":
        return cls(
            id=entry.id,
            action=entry.action,
            actor_id=entry.actor_id,
            details=entry.details,
            created_at=entry.created_at,
        )


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class CacheStatsResponse(BaseModel):
    """Response for GET /api/v1/cache/stats."""

    model_config = ConfigDict(frozen=True)

    hits: int
    misses: int
    hit_rate: float
    total_items: int
    memory_usage_kb: int

    @classmethod
    def from_stats(cls, stats: CacheStats) -> "CacheStatsResponse":
        return cls(
            hits=stats.hits,
            misses=stats.misses,
            hit_rate=stats.hit_rate,
            total_items=stats.total_items,
            memory_usage_kb=stats.memory_usage_kb,
        )


class CacheInvalidateResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    removed: int

