"""
tests/test_security_engine.py -- Unit tests for security/engine.py SecurityEngine.

Covers:
  - Blocked IPs and the email domain allow-list
  - Login lockout lifecycle per (email, IP) key
  - Sliding-window rate limiting and retry hints
  - IP-pinned sessions with idle timeout
  - Event logging, risk-driven alerts, distributed failure detection
  - Dashboard aggregation and alert resolution
  - Audit sink dispatch on the worker thread, drain and close
  - Background sweep
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time

import pytest

from security.engine import AUDIT_ACTION, MAX_ALERTS, MAX_EVENTS, SecurityEngine
from security.models import (
    AlertSeverity,
    LoginOutcome,
    RateLimitRule,
    SecurityEventType,
    SecurityPolicy,
)

EMAIL = "ops@company.com"
IP = "203.0.113.5"
UA = "pytest-agent"


class RecordingSink:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict]] = []

    async def log_action(self, action, actor_id, details) -> None:
        self.calls.append((action, actor_id, dict(details)))


class GatedSink(RecordingSink):
    """Holds every write until release is set."""

    def __init__(self, release: threading.Event) -> None:
        super().__init__()
        self.release = release

    async def log_action(self, action, actor_id, details) -> None:
        await asyncio.to_thread(self.release.wait, 5)
        await super().log_action(action, actor_id, details)


class FailingSink:
    async def log_action(self, action, actor_id, details) -> None:
        raise ConnectionError("audit backend unavailable")


@pytest.fixture
def engine(clock) -> SecurityEngine:
    return SecurityEngine(time_func=clock)


def _fail(engine: SecurityEngine, times: int, email: str = EMAIL, ip: str = IP) -> list[LoginOutcome]:
    return [engine.evaluate_login_attempt(email, ip, UA, success=False) for _ in range(times)]


def _types(engine: SecurityEngine) -> list[SecurityEventType]:
    return [e.type for e in engine.get_events()]


# ---------------------------------------------------------------------------
# Blocked IPs and domains
# ---------------------------------------------------------------------------


def test_blocked_ip_is_refused_and_alerted(clock):
    engine = SecurityEngine(SecurityPolicy(blocked_ips=frozenset({IP})), time_func=clock)
    assert engine.handle_login_attempt(EMAIL, IP, UA, success=True) is False

    [event] = engine.get_events()
    assert event.type is SecurityEventType.UNAUTHORIZED_ACCESS
    assert event.details == {"reason": "Blocked IP address"}
    assert event.risk_score == 10
    [alert] = engine.get_alerts()
    assert alert.severity is AlertSeverity.HIGH
    assert IP in alert.message


def test_blocked_ip_outcome(clock):
    engine = SecurityEngine(SecurityPolicy(blocked_ips=frozenset({IP})), time_func=clock)
    assert engine.evaluate_login_attempt(EMAIL, IP, UA, success=True) is LoginOutcome.BLOCKED_IP
    assert engine.is_ip_blocked(IP)
    assert not engine.is_ip_blocked("198.51.100.1")


def test_empty_allow_list_admits_any_domain(engine):
    assert engine.is_domain_allowed("anyone@anywhere.org")
    assert engine.is_domain_allowed("not-an-email")


def test_allow_list_is_case_insensitive(clock):
    engine = SecurityEngine(SecurityPolicy(allowed_domains=frozenset({"Company.com"})), time_func=clock)
    assert engine.is_domain_allowed("ops@COMPANY.COM")
    assert not engine.is_domain_allowed("ops@evil.com")
    assert not engine.is_domain_allowed("no-at-sign")


def test_disallowed_domain_is_refused(clock):
    engine = SecurityEngine(SecurityPolicy(allowed_domains=frozenset({"company.com"})), time_func=clock)
    outcome = engine.evaluate_login_attempt("ops@evil.com", IP, UA, success=True)
    assert outcome is LoginOutcome.DOMAIN_DENIED
    [event] = engine.get_events()
    assert event.type is SecurityEventType.UNAUTHORIZED_ACCESS
    assert event.details == {"reason": "Domain not allowed"}
    # Base score 8 lands between the medium and high alert thresholds.
    [alert] = engine.get_alerts()
    assert alert.severity is AlertSeverity.MEDIUM


# ---------------------------------------------------------------------------
# Login lockout
# ---------------------------------------------------------------------------


def test_successful_login_is_allowed(engine):
    assert engine.handle_login_attempt(EMAIL, IP, UA, success=True) is True
    assert _types(engine) == [SecurityEventType.LOGIN_SUCCESS]


def test_failures_below_limit_are_recorded(engine):
    outcomes = _fail(engine, 4)
    assert outcomes == [LoginOutcome.FAILED_RECORDED] * 4
    assert [e.details["attempt_count"] for e in engine.get_events()] == [1, 2, 3, 4]
    assert not engine.is_locked(EMAIL, IP)
    assert engine.get_alerts() == []


def test_fifth_failure_locks_and_raises_alert(engine):
    outcomes = _fail(engine, 5)
    assert outcomes[-1] is LoginOutcome.LOCKED
    assert engine.is_locked(EMAIL, IP)
    [alert] = engine.get_alerts()
    assert alert.severity is AlertSeverity.HIGH
    assert alert.message == f"Account {EMAIL} locked due to 5 failed login attempts"


def test_locked_account_refuses_even_correct_credentials(engine):
    _fail(engine, 5)
    assert engine.handle_login_attempt(EMAIL, IP, UA, success=True) is False
    last = engine.get_events()[-1]
    assert last.type is SecurityEventType.ACCOUNT_LOCKOUT
    assert last.details == {"reason": "Account locked due to too many failed attempts"}


def test_lockout_expires(engine, clock):
    _fail(engine, 5)
    clock.advance(15 * 60 - 1)
    assert engine.handle_login_attempt(EMAIL, IP, UA, success=True) is False
    clock.advance(1)
    assert engine.handle_login_attempt(EMAIL, IP, UA, success=True) is True
    assert not engine.is_locked(EMAIL, IP)


def test_expired_lockout_starts_a_fresh_count(engine, clock):
    _fail(engine, 5)
    clock.advance(15 * 60)
    assert _fail(engine, 1) == [LoginOutcome.FAILED_RECORDED]
    assert engine.get_events()[-1].details == {"attempt_count": 1}


def test_stale_failures_stop_counting(engine, clock):
    _fail(engine, 4)
    clock.advance(15 * 60)
    assert _fail(engine, 1) == [LoginOutcome.FAILED_RECORDED]
    assert engine.get_events()[-1].details == {"attempt_count": 1}


def test_recent_failures_keep_counting(engine, clock):
    _fail(engine, 4)
    clock.advance(15 * 60 - 1)
    assert _fail(engine, 1) == [LoginOutcome.LOCKED]


def test_success_resets_failure_count(engine):
    _fail(engine, 4)
    engine.handle_login_attempt(EMAIL, IP, UA, success=True)
    assert _fail(engine, 4) == [LoginOutcome.FAILED_RECORDED] * 4
    assert not engine.is_locked(EMAIL, IP)


def test_lockout_is_scoped_to_email_and_ip(engine):
    _fail(engine, 5)
    assert engine.handle_login_attempt(EMAIL, "198.51.100.7", UA, success=True) is True
    assert engine.handle_login_attempt("other@company.com", IP, UA, success=True) is True


def test_policy_controls_lockout(clock):
    engine = SecurityEngine(SecurityPolicy(max_login_attempts=2, lockout_duration_minutes=1), time_func=clock)
    assert _fail(engine, 2) == [LoginOutcome.FAILED_RECORDED, LoginOutcome.LOCKED]
    clock.advance(60)
    assert engine.handle_login_attempt(EMAIL, IP, UA, success=True)


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


def test_unmatched_endpoint_is_never_limited(engine):
    assert all(engine.check_rate_limit("/api/v1/health", IP) for _ in range(500))
    assert engine.retry_after("/api/v1/health", IP) == 0


def test_login_rule_blocks_sixth_request(engine):
    path = "/api/v1/auth/login-attempts"
    assert [engine.check_rate_limit(path, IP) for _ in range(5)] == [True] * 5
    assert engine.check_rate_limit(path, IP) is False
    assert engine.retry_after(path, IP) == 30 * 60


def test_block_holds_for_block_duration(engine, clock):
    path = "/auth/login"
    for _ in range(6):
        engine.check_rate_limit(path, IP)
    clock.advance(30 * 60 - 1)
    assert engine.check_rate_limit(path, IP) is False
    assert engine.retry_after(path, IP) == 1
    clock.advance(1)
    assert engine.check_rate_limit(path, IP) is True
    assert engine.retry_after(path, IP) == 0


def test_retry_after_rounds_partial_seconds_up(engine, clock):
    path = "/auth/login"
    for _ in range(6):
        engine.check_rate_limit(path, IP)
    clock.advance(0.9995)
    assert engine.retry_after(path, IP) == 30 * 60
    clock.advance(30 * 60 - 2)
    assert engine.retry_after(path, IP) == 2


def test_window_slides(engine, clock):
    path = "/auth/login"
    for _ in range(5):
        engine.check_rate_limit(path, IP)
    clock.advance(15 * 60)
    assert engine.check_rate_limit(path, IP) is True


def test_limits_are_per_ip(engine):
    path = "/auth/login"
    for _ in range(6):
        engine.check_rate_limit(path, IP)
    assert engine.check_rate_limit(path, "198.51.100.7") is True


def test_endpoints_sharing_a_pattern_share_a_bucket(clock):
    rule = RateLimitRule("/users", max_requests=2, window_seconds=60, block_seconds=60)
    engine = SecurityEngine(rate_limit_rules=[rule], time_func=clock)
    assert engine.check_rate_limit("/api/v1/users/1", IP)
    assert engine.check_rate_limit("/api/v1/users/2", IP)
    assert not engine.check_rate_limit("/api/v1/users/3", IP)


def test_first_matching_rule_wins(clock):
    rules = [
        RateLimitRule("/a", max_requests=1, window_seconds=60, block_seconds=60),
        RateLimitRule("/a/b", max_requests=100, window_seconds=60, block_seconds=60),
    ]
    engine = SecurityEngine(rate_limit_rules=rules, time_func=clock)
    assert engine.find_rate_limit_rule("/a/b/c") is rules[0]


def test_exceeding_limit_is_logged(engine, caplog):
    with caplog.at_level(logging.INFO, logger="prodreport.security"):
        for _ in range(6):
            engine.check_rate_limit("/auth/login", IP)
    assert "Rate limit exceeded for /auth/login from 203.0.113.5" in caplog.text


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def test_session_validates_for_owner_at_same_ip(engine):
    engine.create_session("sess-1", "user-1", IP)
    assert engine.validate_session("sess-1", "user-1", IP) is True


def test_unknown_session_or_wrong_user_fails_silently(engine):
    engine.create_session("sess-1", "user-1", IP)
    assert engine.validate_session("nope", "user-1", IP) is False
    assert engine.validate_session("sess-1", "user-2", IP) is False
    assert engine.get_events() == []


def test_ip_change_is_logged_as_suspicious(engine):
    engine.create_session("sess-1", "user-1", IP)
    assert engine.validate_session("sess-1", "user-1", "198.51.100.7") is False
    [event] = engine.get_events()
    assert event.type is SecurityEventType.SUSPICIOUS_ACTIVITY
    assert event.user_id == "user-1"
    assert event.details == {
        "reason": "IP address change during session",
        "original_ip": IP,
        "new_ip": "198.51.100.7",
    }
    [alert] = engine.get_alerts()
    assert alert.severity is AlertSeverity.MEDIUM
    assert alert.user_id == "user-1"


def test_idle_session_times_out(engine, clock):
    engine.create_session("sess-1", "user-1", IP)
    clock.advance(60 * 60 + 1)
    assert engine.validate_session("sess-1", "user-1", IP) is False
    assert _types(engine) == [SecurityEventType.SESSION_TIMEOUT]
    # The session is gone, so a retry fails without a second event.
    assert engine.validate_session("sess-1", "user-1", IP) is False
    assert len(engine.get_events()) == 1


def test_validation_refreshes_activity(engine, clock):
    engine.create_session("sess-1", "user-1", IP)
    for _ in range(3):
        clock.advance(50 * 60)
        assert engine.validate_session("sess-1", "user-1", IP) is True


def test_session_at_exact_timeout_is_still_valid(engine, clock):
    engine.create_session("sess-1", "user-1", IP)
    clock.advance(60 * 60)
    assert engine.validate_session("sess-1", "user-1", IP) is True


def test_destroy_session(engine):
    engine.create_session("sess-1", "user-1", IP)
    engine.destroy_session("sess-1")
    engine.destroy_session("sess-1")
    assert engine.validate_session("sess-1", "user-1", IP) is False


# ---------------------------------------------------------------------------
# Events, risk and alerts
# ---------------------------------------------------------------------------


def test_log_security_event_fills_timestamp_and_score(engine, clock):
    event = engine.log_security_event(
        SecurityEventType.DATA_ACCESS,
        ip_address=IP,
        user_agent=UA,
        user_id="user-1",
        details={"report": "q3-revenue"},
    )
    assert event.timestamp == clock.now
    assert event.risk_score == 2
    assert engine.get_events() == [event]


def test_log_security_event_accepts_string_type(engine):
    event = engine.log_security_event("logout", ip_address=IP, user_agent=UA)
    assert event.type is SecurityEventType.LOGOUT


def test_busy_ip_raises_risk(engine):
    for _ in range(11):
        engine.log_security_event(SecurityEventType.DATA_ACCESS, ip_address=IP, user_agent=UA)
    event = engine.log_security_event(SecurityEventType.DATA_ACCESS, ip_address=IP, user_agent=UA)
    assert event.risk_score == 5


def test_burst_window_forgets_old_events(engine, clock):
    for _ in range(11):
        engine.log_security_event(SecurityEventType.DATA_ACCESS, ip_address=IP, user_agent=UA)
    clock.advance(60 * 60)
    event = engine.log_security_event(SecurityEventType.DATA_ACCESS, ip_address=IP, user_agent=UA)
    assert event.risk_score == 2


def test_failures_from_three_ips_raise_alert(engine):
    _fail(engine, 1, ip="10.0.0.1")
    _fail(engine, 1, ip="10.0.0.2")
    assert engine.get_alerts() == []
    _fail(engine, 1, ip="10.0.0.3")
    [alert] = engine.get_alerts()
    assert alert.severity is AlertSeverity.HIGH
    assert alert.message == f"Suspicious login activity detected for {EMAIL}: 3 different IP addresses"


def test_distributed_failures_outside_window_are_ignored(engine, clock):
    _fail(engine, 1, ip="10.0.0.1")
    _fail(engine, 1, ip="10.0.0.2")
    clock.advance(30 * 60)
    _fail(engine, 1, ip="10.0.0.3")
    assert engine.get_alerts() == []


def test_low_risk_events_raise_no_alert(engine):
    engine.log_security_event(SecurityEventType.ACCOUNT_LOCKOUT, ip_address=IP, user_agent=UA)
    assert engine.get_alerts() == []


def test_event_history_is_capped(engine):
    for i in range(MAX_EVENTS + 5):
        engine.log_security_event(SecurityEventType.LOGOUT, ip_address=f"10.1.{i // 250}.{i % 250}", user_agent=UA)
    events = engine.get_events()
    assert len(events) == MAX_EVENTS
    assert events[0].ip_address == "10.1.0.5"


def test_alert_history_is_capped(engine):
    for i in range(MAX_ALERTS + 50):
        engine.log_security_event(
            SecurityEventType.UNAUTHORIZED_ACCESS, ip_address=f"10.0.{i // 250}.{i % 250}", user_agent=UA
        )
    alerts = engine.get_alerts()
    assert len(alerts) == MAX_ALERTS
    assert alerts[0].message.endswith("from 10.0.0.50")
    assert alerts[-1].message.endswith("from 10.0.0.149")


def test_resolve_alert(engine):
    engine.log_security_event(SecurityEventType.UNAUTHORIZED_ACCESS, ip_address=IP, user_agent=UA)
    [alert] = engine.get_alerts()
    assert alert.id.startswith("alert_")
    assert engine.resolve_alert(alert.id) is True
    assert engine.get_security_dashboard().active_alerts == []
    assert engine.resolve_alert("alert_missing") is False


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


def test_dashboard_summarizes_last_hour(clock):
    engine = SecurityEngine(SecurityPolicy(blocked_ips=frozenset({"10.9.9.9", "10.9.9.8"})), time_func=clock)
    engine.log_security_event(SecurityEventType.LOGIN_ATTEMPT, ip_address=IP, user_agent=UA)
    clock.advance(60 * 60 + 1)
    engine.log_security_event(SecurityEventType.LOGIN_ATTEMPT, ip_address=IP, user_agent=UA)
    engine.log_security_event(SecurityEventType.LOGOUT, ip_address=IP, user_agent=UA)

    dashboard = engine.get_security_dashboard()
    assert len(dashboard.recent_events) == 2
    assert dashboard.login_attempts == 1
    assert dashboard.blocked_ips == 2


def test_dashboard_keeps_twenty_most_recent_events(engine):
    for i in range(25):
        engine.log_security_event(SecurityEventType.LOGOUT, ip_address=f"10.0.0.{i}", user_agent=UA)
    recent = engine.get_security_dashboard().recent_events
    assert len(recent) == 20
    assert recent[-1].ip_address == "10.0.0.24"


def test_dashboard_counts_only_live_sessions(engine, clock):
    engine.create_session("old", "user-1", IP)
    clock.advance(60 * 60 + 1)
    engine.create_session("new", "user-2", IP)
    assert engine.get_security_dashboard().active_sessions == 1


# ---------------------------------------------------------------------------
# Audit dispatch
# ---------------------------------------------------------------------------


def test_event_is_written_to_sink_without_running_loop(clock):
    release = threading.Event()
    sink = GatedSink(release)
    engine = SecurityEngine(audit_sink=sink, time_func=clock)

    started = time.perf_counter()
    assert engine.handle_login_attempt(EMAIL, IP, UA, success=False) is False
    assert time.perf_counter() - started < 0.5
    # The caller is back while the sink is still holding the write.
    assert sink.calls == []

    release.set()
    assert engine.drain_audit(timeout=5) is True
    [(action, actor, details)] = sink.calls
    assert action == AUDIT_ACTION
    assert actor == "system"
    assert details == {
        "type": "login_failure",
        "details": {"attempt_count": 1},
        "ip_address": IP,
        "user_agent": UA,
        "risk_score": 3,
    }
    engine.close()


def test_close_finishes_pending_writes(clock):
    sink = RecordingSink()
    engine = SecurityEngine(audit_sink=sink, time_func=clock)
    _fail(engine, 3)
    engine.close()
    assert [c[2]["details"]["attempt_count"] for c in sink.calls] == [1, 2, 3]


def test_drain_times_out_on_stuck_sink(clock):
    release = threading.Event()
    engine = SecurityEngine(audit_sink=GatedSink(release), time_func=clock)
    _fail(engine, 1)
    assert engine.drain_audit(timeout=0.05) is False
    release.set()
    assert engine.drain_audit(timeout=5) is True
    engine.close()


def test_sink_receives_user_id_as_actor(clock):
    sink = RecordingSink()
    engine = SecurityEngine(audit_sink=sink, time_func=clock)
    engine.log_security_event(SecurityEventType.DATA_ACCESS, ip_address=IP, user_agent=UA, user_id="user-9")
    engine.drain_audit()
    assert sink.calls[0][1] == "user-9"


def test_event_is_written_to_sink_inside_running_loop(clock):
    sink = RecordingSink()
    engine = SecurityEngine(audit_sink=sink, time_func=clock)

    async def scenario():
        engine.handle_login_attempt(EMAIL, IP, UA, success=True)
        await engine.flush_audit()

    asyncio.run(scenario())
    assert [c[2]["type"] for c in sink.calls] == ["login_success"]


def test_sink_failure_is_logged_not_raised(clock, caplog):
    engine = SecurityEngine(audit_sink=FailingSink(), time_func=clock)
    with caplog.at_level(logging.ERROR, logger="prodreport.security"):
        assert engine.handle_login_attempt(EMAIL, IP, UA, success=True) is True
        engine.drain_audit()
    assert "Failed to log security event login_success" in caplog.text
    assert len(engine.get_events()) == 1


def test_events_persist_to_audit_store(clock, audit_store):
    engine = SecurityEngine(audit_sink=audit_store, time_func=clock)
    _fail(engine, 2)
    engine.drain_audit()
    entries = audit_store.get_audit_logs()
    assert [e.details["details"]["attempt_count"] for e in entries] == [2, 1]
    assert all(e.action == AUDIT_ACTION for e in entries)


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------


def test_sweep_reclaims_expired_state(engine, clock):
    engine.create_session("sess-1", "user-1", IP)
    for _ in range(6):
        engine.check_rate_limit("/auth/login", IP)
    _fail(engine, 5)

    assert engine.sweep() == {"sessions": 0, "rate_limits": 0, "lockouts": 0, "attempts": 0}

    clock.advance(60 * 60 + 1)
    assert engine.sweep() == {"sessions": 1, "rate_limits": 1, "lockouts": 1, "attempts": 0}
    assert engine.get_security_dashboard().active_sessions == 0
    assert engine.check_rate_limit("/auth/login", IP) is True


def test_sweep_forgets_stale_failure_counts(engine, clock):
    _fail(engine, 4)
    _fail(engine, 2, ip="198.51.100.7")
    clock.advance(15 * 60 - 1)
    _fail(engine, 1, ip="198.51.100.7")
    clock.advance(1)
    assert engine.sweep() == {"sessions": 0, "rate_limits": 0, "lockouts": 0, "attempts": 1}
    assert engine._login_attempts.keys() == {f"{EMAIL}:198.51.100.7"}


def test_sweep_logs_when_it_reclaims(engine, clock, caplog):
    engine.create_session("sess-1", "user-1", IP)
    clock.advance(60 * 60 + 1)
    with caplog.at_level(logging.INFO, logger="prodreport.security"):
        engine.sweep()
    assert "expired 1 sessions" in caplog.text


def test_start_sweep_is_idempotent(engine):
    engine.start_sweep()
    timer = engine._timer
    engine.start_sweep()
    assert engine._timer is timer
    engine.close()
    assert engine._timer is None
