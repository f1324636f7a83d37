"""
security/risk.py -- Deterministic risk scoring for security events.

The score is a bounded 0-10 heuristic: a base value per event type, raised
when the source IP is on the block list or has been unusually busy. The
engine supplies the context (block-list membership, recent event count); this
module holds only the arithmetic so it can be tested without an engine.
"""

from security.models import SecurityEventType

MAX_RISK_SCORE = 10
BLOCKED_IP_PENALTY = 5
IP_BURST_PENALTY = 3

EVENT_BASE_SCORES: dict[SecurityEventType, int] = {
    SecurityEventType.LOGIN_ATTEMPT: 1,
    SecurityEventType.LOGIN_SUCCESS: 0,
    SecurityEventType.LOGIN_FAILURE: 3,
    SecurityEventType.LOGOUT: 0,
    SecurityEventType.UNAUTHORIZED_ACCESS: 8,
    SecurityEventType.PERMISSION_DENIED: 5,
    SecurityEventType.SUSPICIOUS_ACTIVITY: 7,
    SecurityEventType.DATA_ACCESS: 2,
    SecurityEventType.DATA_MODIFICATION: 4,
    SecurityEventType.PASSWORD_CHANGE: 2,
    SecurityEventType.ACCOUNT_LOCKOUT: 6,
    SecurityEventType.SESSION_TIMEOUT: 1,
}


def score_event(
    event_type: SecurityEventType,
    ip_blocked: bool,
    recent_ip_events: int,
    burst_threshold: int = 10,
) -> int:
    """Return the risk score for an event, clamped to MAX_RISK_SCORE.

    Args:
        event_type:       Type of the event being scored.
        ip_blocked:       True if the source IP is on the block list (+5).
        recent_ip_events: Events already logged from the same IP inside the
                          burst window. More than burst_threshold adds +3.
        burst_threshold:  Event count the IP must exceed to be considered bursty.
    """
    score = EVENT_BASE_SCORES.get(event_type, 0)
    if ip_blocked:
        score += BLOCKED_IP_PENALTY
    if recent_ip_events > burst_threshold:
        score += IP_BURST_PENALTY
    return min(score, MAX_RISK_SCORE)
