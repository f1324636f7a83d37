"""
tests/conftest.py -- Shared test fixtures for ProdReport tests.

This module provides:
  - FakeClock / clock: a controllable time source for TTL, lockout and
    session tests
  - make_audit_store(): isolated in-memory audit DB
  - _patch_lifespan(): wires test components into app.state, bypassing real startup
  - api: function-scoped TestClient plus the components behind it
  - admin_headers / viewer_headers: Authorization headers for each role

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because audit writes run on worker threads (asyncio.to_thread) and TestClient
runs sync route handlers in a thread pool. Plain :memory: DBs are
per-connection and would present a blank schema to each worker thread.

The API fixture is function-scoped: the security engine holds rate-limit
windows keyed by client IP, and every TestClient request comes from the same
"testclient" address, so a shared engine would leak limits between tests.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from audit.store import AuditStore
from auth.tokens import create_access_token
from cache.store import TTLCache
from security.engine import SecurityEngine
from security.models import SecurityPolicy

CLIENT_IP = "testclient"  # request.client.host under TestClient


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable time source that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_audit_store() -> AuditStore:
    """Create an audit store backed by a uniquely named shared-memory SQLite DB."""
    name = uuid.uuid4().hex[:12]
    return AuditStore(db_url=f"sqlite:///file:test_audit_{name}?mode=memory&cache=shared&uri=true")


@pytest.fixture
def audit_store() -> Generator[AuditStore, None, None]:
    store = make_audit_store()
    yield store
    store.close()


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    engine: SecurityEngine
    cache: TTLCache
    audit_store: AuditStore
    clock: FakeClock


def _patch_lifespan(cache: TTLCache, audit_store: AuditStore, engine: SecurityEngine):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test components into app.state so TestClient routes
    see isolated state. Sweep timers are not started; tests call sweep()
    or purge_expired() directly when they need one.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.started_at = 0.0
        app.state.cache = cache
        app.state.audit_store = audit_store
        app.state.security = engine
        yield
        await engine.flush_audit()
        engine.close()

    return test_lifespan


def build_harness(clock: FakeClock, policy: SecurityPolicy | None = None) -> ApiHarness:
    """Build fresh components and point the app lifespan at them. Enter harness.client to start."""
    audit_store = make_audit_store()
    cache = TTLCache(time_func=clock)
    engine = SecurityEngine(policy or SecurityPolicy(), audit_sink=audit_store, time_func=clock)
    app.router.lifespan_context = _patch_lifespan(cache, audit_store, engine)
    client = TestClient(app, raise_server_exceptions=True)
    return ApiHarness(client, engine, cache, audit_store, clock)


@pytest.fixture
def api(clock) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness whose TestClient runs against fresh components.

    The default policy has an empty domain allow-list and no blocked IPs.
    """
    harness = build_harness(clock)
    with harness.client:
        yield harness
    harness.audit_store.close()


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def admin_headers() -> dict[str, str]:
    token = create_access_token(user_id="admin-1", email="admin@prodreport.example", role="admin")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="session")
def viewer_headers() -> dict[str, str]:
    token = create_access_token(user_id="viewer-1", email="viewer@prodreport.example", role="viewer")
    return {"Authorization": f"Bearer {token}"}
