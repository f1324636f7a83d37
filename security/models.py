"""
security/models.py -- Domain dataclasses for the security heuristics engine.

Pattern: Data class (pure data container, zero logic beyond trivial derived
properties). The engine in security/engine.py owns all state transitions.

Layer rule: no imports from api/, auth/, audit/, or cache/. core/ is allowed.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from core.config import Settings

# Values carried in SecurityEvent.details. Keys by event type:
#   unauthorized_access  -- reason
#   account_lockout      -- reason
#   login_failure        -- attempt_count
#   suspicious_activity  -- reason, original_ip, new_ip
# Callers logging their own events (data_access, permission_denied, ...) may
# add further keys; values must stay JSON-serializable for the audit sink.
DetailValue = Union[str, int, float, bool, None]


class SecurityEventType(str, Enum):
    LOGIN_ATTEMPT = "login_attempt"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    LOGOUT = "logout"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    PERMISSION_DENIED = "permission_denied"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    DATA_ACCESS = "data_access"
    DATA_MODIFICATION = "data_modification"
    PASSWORD_CHANGE = "password_change"
    ACCOUNT_LOCKOUT = "account_lockout"
    SESSION_TIMEOUT = "session_timeout"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class LoginOutcome(str, Enum):
    """Why a login attempt was or was not accepted.

    Only ALLOWED means the caller may complete the login. LOCKED is returned
    both for attempts against an active lockout and for the failure that
    triggers one.
    """

    ALLOWED = "allowed"
    BLOCKED_IP = "blocked_ip"
    DOMAIN_DENIED = "domain_denied"
    LOCKED = "locked"
    FAILED_RECORDED = "failed_recorded"

    @property
    def allowed(self) -> bool:
        return self is LoginOutcome.ALLOWED


@dataclass
class SecurityEvent:
    type: SecurityEventType
    ip_address: str
    user_agent: str
    timestamp: float
    risk_score: int
    user_id: Optional[str] = None
    email: Optional[str] = None
    details: dict[str, DetailValue] = field(default_factory=dict)


@dataclass
class SecurityAlert:
    id: str
    severity: AlertSeverity
    message: str
    timestamp: float
    user_id: Optional[str] = None
    resolved: bool = False


@dataclass
class LoginAttemptRecord:
    count: int
    last_attempt_at: float
    locked_until: Optional[float] = None  # set only once count reaches the limit


@dataclass
class RateLimitRecord:
    requests: deque = field(default_factory=deque)  # request timestamps, oldest first
    blocked: bool = False
    blocked_until: Optional[float] = None


@dataclass
class Session:
    user_id: str
    ip_address: str
    last_activity_at: float


@dataclass(frozen=True)
class RateLimitRule:
    """Sliding-window limit for every endpoint containing endpoint_pattern."""

    endpoint_pattern: str
    max_requests: int
    window_seconds: float
    block_seconds: float


DEFAULT_RATE_LIMIT_RULES: tuple[RateLimitRule, ...] = (
    RateLimitRule("/auth/login", max_requests=5, window_seconds=15 * 60, block_seconds=30 * 60),
    RateLimitRule("/documents", max_requests=100, window_seconds=60, block_seconds=5 * 60),
    RateLimitRule("/users", max_requests=20, window_seconds=60, block_seconds=10 * 60),
)


@dataclass(frozen=True)
class SecurityPolicy:
    max_login_attempts: int = 5
    lockout_duration_minutes: float = 15
    session_timeout_minutes: float = 60
    password_min_length: int = 8
    allowed_domains: frozenset[str] = frozenset()
    blocked_ips: frozenset[str] = frozenset()

    # Risk heuristics
    ip_burst_window_seconds: float = 60 * 60
    ip_burst_threshold: int = 10  # more than this many events from one IP adds to the score
    distributed_failure_window_seconds: float = 30 * 60
    distributed_failure_min_ips: int = 3
    alert_risk_threshold: int = 7
    high_alert_risk_threshold: int = 9

    @property
    def lockout_seconds(self) -> float:
        return self.lockout_duration_minutes * 60

    @property
    def session_timeout_seconds(self) -> float:
        return self.session_timeout_minutes * 60

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecurityPolicy":
        return cls(
            max_login_attempts=settings.max_login_attempts,
            lockout_duration_minutes=settings.lockout_duration_minutes,
            session_timeout_minutes=settings.session_timeout_minutes,
            password_min_length=settings.password_min_length,
            allowed_domains=frozenset(settings.allowed_domains),
            blocked_ips=frozenset(settings.blocked_ips),
        )


@dataclass
class PasswordCheck:
    is_valid: bool
    errors: list[str]


@dataclass
class SecurityDashboard:
    recent_events: list[SecurityEvent]
    active_alerts: list[SecurityAlert]
    login_attempts: int
    blocked_ips: int
    active_sessions: int

