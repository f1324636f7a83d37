"""
audit/store.py -- SQLAlchemy Core persistence layer for the audit trail.

Pattern: Repository + Data Mapper. AuditStore is the repository;
_row_to_entry is the mapper. Route and engine code never touches SQL directly.

AuditStore is the default AuditSink for security.engine.SecurityEngine:
log_action() is a coroutine so the engine can schedule it without blocking
the request that produced the event. The insert itself is synchronous
SQLAlchemy and runs on a worker thread via asyncio.to_thread().

Security:
  All queries use bound parameters. No f-strings in SQL.
  details is stored as JSON text; values that json cannot encode are
  stringified rather than rejected, so an odd payload never loses the row.

DB path: audit/prodreport_audit.db by default (AUDIT_DB_URL overrides).

Layer rule: no imports from api/, auth/, cache/, or security/.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Engine

from audit.models import AuditLogEntry
from core.config import get_settings

logger = logging.getLogger("prodreport.audit")

_DEFAULT_LIMIT = 50

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("action", String(64), nullable=False),
    Column("actor_id", String(255), nullable=False),  # user ID or "system"
    Column("details", Text, nullable=False),  # JSON object
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so dashboard reads never wait on audit writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_entry(row) -> AuditLogEntry:
    try:
        details = json.loads(row.details)
    except ValueError:
        details = {"raw": row.details}
    return AuditLogEntry(
        id=row.id,
        action=row.action,
        actor_id=row.actor_id,
        details=details,
        created_at=row.created_at,
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuditStore:
    """Repository for AuditLogEntry rows.

    Usage:
        store = AuditStore()
        await store.log_action("SECURITY_EVENT", "user-42", {"type": "login_success"})
        entries = store.get_audit_logs(user_id="user-42")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().audit_db_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def log_action(self, action: str, actor_id: str, details: Mapping[str, Any]) -> None:
        """Append an audit row without blocking the event loop."""
        await asyncio.to_thread(self.record, action, actor_id, details)

    def record(self, action: str, actor_id: str, details: Mapping[str, Any]) -> int:
        """Insert an audit row synchronously and return its database ID."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _audit_logs.insert().values(
                    action=action,
                    actor_id=actor_id,
                    details=json.dumps(dict(details), default=str),
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_audit_logs(self, user_id: str | None = None, limit: int = _DEFAULT_LIMIT) -> list[AuditLogEntry]:
        """Return the most recent audit rows, newest first.

        Args:
            user_id: Restrict to rows whose actor_id matches. None returns all actors.
            limit:   Maximum number of rows to return.
        """
        query = _audit_logs.select().order_by(_audit_logs.c.id.desc()).limit(limit)
        if user_id is not None:
            query = query.where(_audit_logs.c.actor_id == user_id)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_entry(r) for r in rows]

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by the health check."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception:
            logger.exception("Audit database ping failed")
            return False

    def close(self) -> None:
        self.engine.dispose()
