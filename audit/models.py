"""
audit/models.py -- Domain dataclass for persisted audit log rows.

Layer rule: no imports from api/, auth/, cache/, or security/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class AuditLogEntry:
    """One row of the audit trail.

    actor_id is the acting user's ID, or "system" for events raised without
    an authenticated user (failed logins, blocked IPs). details is the
    JSON-decoded payload supplied by the caller.
    """

    action: str  # e.g. "SECURITY_EVENT"
    actor_id: str
    details: dict[str, Any] = field(default_factory=dict)
    id: int | None = None
    created_at: str | None = None
