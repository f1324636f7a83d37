"""
security/engine.py -- Client-facing security heuristics.

SecurityEngine tracks login attempts (with lockout), per-endpoint sliding
window rate limits and IP-pinned sessions, scores and records security
events, and raises alerts when patterns look hostile. Every verdict is a
plain boolean or enum returned synchronously -- nothing here ever raises into
the calling request path.

Login key state machine (key = email + IP):

    CLEAN --failure--> ACCUMULATING --failure (count >= max)--> LOCKED
      ^                     |                                     |
      +------success--------+           lockout elapses ----------+

An elapsed lockout is discarded by the next check for that key or by the
background sweep, whichever comes first. An ACCUMULATING key whose last
failure is older than the lockout duration drops back to CLEAN the same way.
Every read path re-checks expiry, so correctness never depends on the sweep
having run.

Audit trail: each logged event is handed to an AuditSink as
log_action("SECURITY_EVENT", actor, details). The write is fire-and-forget:
it is submitted to a single audit worker thread owned by the engine, so a
slow or failing sink never delays the caller. Writes land in submission
order. drain_audit() / flush_audit() wait for them; close() drains and stops
the worker. Sink failures are logged here and swallowed.

Thread safety: one RLock per engine serializes every state mutation. The
sweep runs on its own thread and FastAPI runs sync routes in a thread pool.

Layer rule: no imports from api/, auth/, audit/, or cache/.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Optional, Protocol

from core.scheduler import RepeatingTimer
from security.models import (
    DEFAULT_RATE_LIMIT_RULES,
    AlertSeverity,
    DetailValue,
    LoginAttemptRecord,
    LoginOutcome,
    PasswordCheck,
    RateLimitRecord,
    RateLimitRule,
    SecurityAlert,
    SecurityDashboard,
    SecurityEvent,
    SecurityEventType,
    SecurityPolicy,
    Session,
)
from security.passwords import validate_password
from security.risk import score_event

logger = logging.getLogger("prodreport.security")

MAX_EVENTS = 1000
MAX_ALERTS = 100
DASHBOARD_WINDOW_SECONDS = 60 * 60
DASHBOARD_EVENT_LIMIT = 20
SWEEP_INTERVAL_SECONDS = 5 * 60
AUDIT_ACTION = "SECURITY_EVENT"
UNKNOWN_USER_AGENT = "Unknown"


class AuditSink(Protocol):
    """Anything that can persist an audit action. audit.store.AuditStore is the default."""

    async def log_action(self, action: str, actor_id: str, details: Mapping[str, Any]) -> None: ...


class SecurityEngine:
    """In-process security heuristics with an explicit lifecycle.

    Usage:
        engine = SecurityEngine(SecurityPolicy(), audit_sink=AuditStore())
        engine.start_sweep()
        if not engine.handle_login_attempt(email, ip, user_agent, success=True): ...
        engine.close()
    """

    def __init__(
        self,
        policy: Optional[SecurityPolicy] = None,
        rate_limit_rules: Iterable[RateLimitRule] = DEFAULT_RATE_LIMIT_RULES,
        audit_sink: Optional[AuditSink] = None,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
        time_func: Callable[[], float] = time.time,
    ) -> None:
        self.policy = policy or SecurityPolicy()
        self.rate_limit_rules: tuple[RateLimitRule, ...] = tuple(rate_limit_rules)
        self.audit_sink = audit_sink
        self.sweep_interval = sweep_interval
        self._time_func = time_func
        self._allowed_domains = frozenset(d.lower() for d in self.policy.allowed_domains)

        self._login_attempts: dict[str, LoginAttemptRecord] = {}
        self._rate_limits: dict[tuple[str, str], RateLimitRecord] = {}
        self._sessions: dict[str, Session] = {}
        self._events: deque[SecurityEvent] = deque(maxlen=MAX_EVENTS)
        self._alerts: deque[SecurityAlert] = deque(maxlen=MAX_ALERTS)

        self._lock = threading.RLock()
        self._pending_audits: set[Future] = set()
        self._audit_executor: Optional[ThreadPoolExecutor] = None
        self._timer: Optional[RepeatingTimer] = None

    # ------------------------------------------------------------------
    # Policy lookups
    # ------------------------------------------------------------------

    def is_ip_blocked(self, ip_address: str) -> bool:
        return ip_address in self.policy.blocked_ips

    def is_domain_allowed(self, email: str) -> bool:
        """Return True if email's domain passes the allow-list.

        An empty allow-list admits everything. Malformed addresses (no "@",
        nothing after it) have an empty domain and fail a non-empty list.
        """
        if not self._allowed_domains:
            return True
        parts = email.split("@")
        domain = parts[1].lower() if len(parts) > 1 else ""
        return domain in self._allowed_domains

    def validate_password(self, password: str) -> PasswordCheck:
        return validate_password(password, self.policy.password_min_length)

    # ------------------------------------------------------------------
    # Login attempts
    # ------------------------------------------------------------------

    def handle_login_attempt(self, email: str, ip_address: str, user_agent: str, success: bool) -> bool:
        """Record a login attempt. Returns True only if the login may proceed.

        success is the credential verdict from the identity provider; this
        method decides whether that verdict is honoured.
        """
        return self.evaluate_login_attempt(email, ip_address, user_agent, success).allowed

    def evaluate_login_attempt(self, email: str, ip_address: str, user_agent: str, success: bool) -> LoginOutcome:
        """Record a login attempt and return the detailed outcome."""
        if self.is_ip_blocked(ip_address):
            self.log_security_event(
                SecurityEventType.UNAUTHORIZED_ACCESS,
                email=email,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"reason": "Blocked IP address"},
            )
            return LoginOutcome.BLOCKED_IP

        if not self.is_domain_allowed(email):
            self.log_security_event(
                SecurityEventType.UNAUTHORIZED_ACCESS,
                email=email,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"reason": "Domain not allowed"},
            )
            return LoginOutcome.DOMAIN_DENIED

        key = f"{email}:{ip_address}"
        just_locked = False
        attempt_count = 0
        with self._lock:
            now = self._time_func()
            record = self._login_attempts.get(key)
            locked = False
            if record is not None and record.locked_until is not None:
                if now < record.locked_until:
                    locked = True
                else:
                    # Lockout served: start over from a clean slate.
                    del self._login_attempts[key]
                    record = None
            elif record is not None and self._attempts_stale(record, now):
                # Failures older than the lockout window no longer count.
                del self._login_attempts[key]
                record = None

            if not locked and success:
                self._login_attempts.pop(key, None)
            elif not locked:
                if record is None:
                    record = LoginAttemptRecord(count=0, last_attempt_at=now)
                    self._login_attempts[key] = record
                record.count += 1
                record.last_attempt_at = now
                attempt_count = record.count
                just_locked = attempt_count >= self.policy.max_login_attempts
                if just_locked:
                    record.locked_until = now + self.policy.lockout_seconds

        if locked:
            self.log_security_event(
                SecurityEventType.ACCOUNT_LOCKOUT,
                email=email,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"reason": "Account locked due to too many failed attempts"},
            )
            return LoginOutcome.LOCKED

        if success:
            self.log_security_event(
                SecurityEventType.LOGIN_SUCCESS,
                email=email,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return LoginOutcome.ALLOWED

        if just_locked:
            self._create_alert(
                AlertSeverity.HIGH,
                f"Account {email} locked due to {attempt_count} failed login attempts",
            )
        self.log_security_event(
            SecurityEventType.LOGIN_FAILURE,
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"attempt_count": attempt_count},
        )
        return LoginOutcome.LOCKED if just_locked else LoginOutcome.FAILED_RECORDED

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    def find_rate_limit_rule(self, endpoint: str) -> Optional[RateLimitRule]:
        """Return the first rule whose pattern occurs in endpoint, if any."""
        for rule in self.rate_limit_rules:
            if rule.endpoint_pattern in endpoint:
                return rule
        return None

    def check_rate_limit(self, endpoint: str, ip_address: str) -> bool:
        """Count one request against the matching rule. Returns False when denied.

        Denied requests are not added to the window.
        """
        rule = self.find_rate_limit_rule(endpoint)
        if rule is None:
            return True

        key = (rule.endpoint_pattern, ip_address)
        with self._lock:
            now = self._time_func()
            state = self._rate_limits.setdefault(key, RateLimitRecord())

            if state.blocked and state.blocked_until is not None and now < state.blocked_until:
                return False

            window_start = now - rule.window_seconds
            while state.requests and state.requests[0] <= window_start:
                state.requests.popleft()

            if len(state.requests) >= rule.max_requests:
                state.blocked = True
                state.blocked_until = now + rule.block_seconds
                logger.info(
                    "Rate limit exceeded for %s from %s; blocked for %.0fs",
                    rule.endpoint_pattern,
                    ip_address,
                    rule.block_seconds,
                )
                return False

            state.requests.append(now)
            state.blocked = False
            state.blocked_until = None
            return True

    def retry_after(self, endpoint: str, ip_address: str) -> int:
        """Seconds until a rate-limit block on endpoint lifts, 0 if not blocked."""
        rule = self.find_rate_limit_rule(endpoint)
        if rule is None:
            return 0
        with self._lock:
            state = self._rate_limits.get((rule.endpoint_pattern, ip_address))
            if state is None or not state.blocked or state.blocked_until is None:
                return 0
            remaining = state.blocked_until - self._time_func()
        return max(0, math.ceil(remaining))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session_id: str, user_id: str, ip_address: str) -> None:
        with self._lock:
            self._sessions[session_id] = Session(
                user_id=user_id,
                ip_address=ip_address,
                last_activity_at=self._time_func(),
            )

    def destroy_session(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def validate_session(self, session_id: str, user_id: str, ip_address: str) -> bool:
        """Return True and refresh the session if it belongs to user_id at ip_address.

        An IP change mid-session is treated as possible hijacking and logged.
        """
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.user_id != user_id:
                return False
            original_ip = session.ip_address
            if original_ip == ip_address:
                now = self._time_func()
                expired = now - session.last_activity_at > self.policy.session_timeout_seconds
                if expired:
                    del self._sessions[session_id]
                else:
                    session.last_activity_at = now
                    return True

        if original_ip != ip_address:
            self.log_security_event(
                SecurityEventType.SUSPICIOUS_ACTIVITY,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=UNKNOWN_USER_AGENT,
                details={
                    "reason": "IP address change during session",
                    "original_ip": original_ip,
                    "new_ip": ip_address,
                },
            )
            return False

        self.log_security_event(
            SecurityEventType.SESSION_TIMEOUT,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=UNKNOWN_USER_AGENT,
        )
        return False

    # ------------------------------------------------------------------
    # Events and alerts
    # ------------------------------------------------------------------

    def calculate_risk_score(self, event_type: SecurityEventType, ip_address: str) -> int:
        """Score an event about to be logged from ip_address (0-10)."""
        with self._lock:
            now = self._time_func()
            window = self.policy.ip_burst_window_seconds
            recent = sum(1 for e in self._events if e.ip_address == ip_address and now - e.timestamp < window)
        return score_event(
            event_type,
            ip_blocked=self.is_ip_blocked(ip_address),
            recent_ip_events=recent,
            burst_threshold=self.policy.ip_burst_threshold,
        )

    def log_security_event(
        self,
        event_type: SecurityEventType,
        *,
        ip_address: str,
        user_agent: str,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        details: Optional[Mapping[str, DetailValue]] = None,
    ) -> SecurityEvent:
        """Record an event, forward it to the audit sink and run pattern detection.

        Returns the stored event with its timestamp and risk score filled in.
        """
        event_type = SecurityEventType(event_type)
        with self._lock:
            event = SecurityEvent(
                type=event_type,
                ip_address=ip_address,
                user_agent=user_agent,
                timestamp=self._time_func(),
                risk_score=self.calculate_risk_score(event_type, ip_address),
                user_id=user_id,
                email=email,
                details=dict(details or {}),
            )
            self._events.append(event)

        self._dispatch_audit(event)
        self._check_suspicious_activity(event)
        return event

    def get_events(self) -> list[SecurityEvent]:
        with self._lock:
            return list(self._events)

    def get_alerts(self) -> list[SecurityAlert]:
        with self._lock:
            return list(self._alerts)

    def resolve_alert(self, alert_id: str) -> bool:
        """Mark an alert resolved. Returns False if no such alert is held."""
        with self._lock:
            for alert in self._alerts:
                if alert.id == alert_id:
                    alert.resolved = True
                    return True
        return False

    def get_security_dashboard(self) -> SecurityDashboard:
        with self._lock:
            now = self._time_func()
            cutoff = now - DASHBOARD_WINDOW_SECONDS
            recent = [e for e in self._events if e.timestamp > cutoff]
            timeout = self.policy.session_timeout_seconds
            live_sessions = sum(1 for s in self._sessions.values() if now - s.last_activity_at <= timeout)
            return SecurityDashboard(
                recent_events=recent[-DASHBOARD_EVENT_LIMIT:],
                active_alerts=[a for a in self._alerts if not a.resolved],
                login_attempts=sum(1 for e in recent if e.type is SecurityEventType.LOGIN_ATTEMPT),
                blocked_ips=len(self.policy.blocked_ips),
                active_sessions=live_sessions,
            )

    def _check_suspicious_activity(self, event: SecurityEvent) -> None:
        if event.type is SecurityEventType.LOGIN_FAILURE and event.email:
            with self._lock:
                now = self._time_func()
                window = self.policy.distributed_failure_window_seconds
                ips = {
                    e.ip_address
                    for e in self._events
                    if e.type is SecurityEventType.LOGIN_FAILURE
                    and e.email == event.email
                    and now - e.timestamp < window
                }
            if len(ips) >= self.policy.distributed_failure_min_ips:
                self._create_alert(
                    AlertSeverity.HIGH,
                    f"Suspicious login activity detected for {event.email}: {len(ips)} different IP addresses",
                )

        if event.risk_score >= self.policy.alert_risk_threshold:
            severity = (
                AlertSeverity.HIGH if event.risk_score >= self.policy.high_alert_risk_threshold else AlertSeverity.MEDIUM
            )
            self._create_alert(
                severity,
                f"High-risk security event: {event.type.value} from {event.ip_address}",
                user_id=event.user_id,
            )

    def _create_alert(self, severity: AlertSeverity, message: str, user_id: Optional[str] = None) -> SecurityAlert:
        with self._lock:
            now = self._time_func()
            alert = SecurityAlert(
                id=f"alert_{int(now * 1000)}_{uuid.uuid4().hex[:9]}",
                severity=severity,
                message=message,
                timestamp=now,
                user_id=user_id,
            )
            self._alerts.append(alert)
        logger.warning("Security alert [%s]: %s", severity.value, message)
        return alert

    # ------------------------------------------------------------------
    # Audit dispatch
    # ------------------------------------------------------------------

    def _dispatch_audit(self, event: SecurityEvent) -> None:
        if self.audit_sink is None:
            return
        with self._lock:
            if self._audit_executor is None:
                self._audit_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="security-audit")
            future = self._audit_executor.submit(self._run_audit_write, event)
            self._pending_audits.add(future)
        future.add_done_callback(self._discard_pending)

    def _discard_pending(self, future: Future) -> None:
        with self._lock:
            self._pending_audits.discard(future)

    def _run_audit_write(self, event: SecurityEvent) -> None:
        # Runs on the audit worker thread, which never has a loop of its own.
        asyncio.run(self._write_audit(event))

    async def _write_audit(self, event: SecurityEvent) -> None:
        try:
            await self.audit_sink.log_action(
                AUDIT_ACTION,
                event.user_id or "system",
                {
                    "type": event.type.value,
                    "details": dict(event.details),
                    "ip_address": event.ip_address,
                    "user_agent": event.user_agent,
                    "risk_score": event.risk_score,
                },
            )
        except Exception:
            logger.exception("Failed to log security event %s to audit sink", event.type.value)

    def drain_audit(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted audit write has finished.

        Returns False if timeout ran out first.
        """
        with self._lock:
            pending = list(self._pending_audits)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    async def flush_audit(self, timeout: Optional[float] = None) -> bool:
        """drain_audit() for async callers, without blocking the event loop."""
        return await asyncio.to_thread(self.drain_audit, timeout)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self) -> dict[str, int]:
        """Reclaim expired sessions, rate-limit blocks, lockouts and stale failure counts.

        Returns how many of each were removed or released.
        """
        with self._lock:
            now = self._time_func()
            timeout = self.policy.session_timeout_seconds
            stale_sessions = [sid for sid, s in self._sessions.items() if now - s.last_activity_at > timeout]
            for sid in stale_sessions:
                del self._sessions[sid]

            released = 0
            idle: list[tuple[str, str]] = []
            rules = {rule.endpoint_pattern: rule for rule in self.rate_limit_rules}
            for key, state in self._rate_limits.items():
                if state.blocked and state.blocked_until is not None and now >= state.blocked_until:
                    state.blocked = False
                    state.blocked_until = None
                    released += 1
                rule = rules.get(key[0])
                if rule is not None:
                    window_start = now - rule.window_seconds
                    while state.requests and state.requests[0] <= window_start:
                        state.requests.popleft()
                if not state.blocked and not state.requests:
                    idle.append(key)
            for key in idle:
                del self._rate_limits[key]

            lifted: list[str] = []
            forgotten: list[str] = []
            for key, record in self._login_attempts.items():
                if record.locked_until is not None and now >= record.locked_until:
                    lifted.append(key)
                elif self._attempts_stale(record, now):
                    forgotten.append(key)
            for key in lifted + forgotten:
                del self._login_attempts[key]

        result = {
            "sessions": len(stale_sessions),
            "rate_limits": released,
            "lockouts": len(lifted),
            "attempts": len(forgotten),
        }
        if any(result.values()):
            logger.info(
                "Security sweep: expired %d sessions, released %d rate limits, lifted %d lockouts, "
                "forgot %d stale attempt records",
                result["sessions"],
                result["rate_limits"],
                result["lockouts"],
                result["attempts"],
            )
        return result

    def _attempts_stale(self, record: LoginAttemptRecord, now: float) -> bool:
        return record.locked_until is None and now - record.last_attempt_at >= self.policy.lockout_seconds

    def start_sweep(self) -> None:
        """Start the background sweep timer (idempotent)."""
        if self._timer is None:
            self._timer = RepeatingTimer(self.sweep_interval, self.sweep, name="security-sweep")
        self._timer.start()

    def stop_sweep(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def close(self) -> None:
        """Stop the sweep, then finish outstanding audit writes and stop the worker."""
        self.stop_sweep()
        with self._lock:
            executor, self._audit_executor = self._audit_executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def is_locked(self, email: str, ip_address: str) -> bool:
        with self._lock:
            record = self._login_attempts.get(f"{email}:{ip_address}")
            return (
                record is not None and record.locked_until is not None and self._time_func() < record.locked_until
            )
