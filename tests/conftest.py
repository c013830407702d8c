"""
tests/conftest.py -- Shared test fixtures for Warden unit and integration tests.

This module provides:
  - FakeClock: injectable, manually advanced clock for time-window, expiry,
    and inactivity tests
  - settings / store / clock / facade: an in-memory component graph per test
  - make_user() / make_permission() / make_role(): seeding helpers
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: unit tests use plain sqlite:///:memory: (SQLAlchemy keeps one
connection per thread for it). The HTTP tests use named shared-memory SQLite
URIs instead because TestClient runs sync route handlers in a thread pool;
plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import threading
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
# TestClient sends Host: testserver, which TrustedHostMiddleware must accept.
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, build_facade
from auth.audit import AuditEvent
from auth.facade import AuthorizationFacade
from auth.models import Permission, Role, User
from auth.store import CredentialStore
from auth.tokens import hash_password
from core.config import Settings, get_settings

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
PASSWORD = "correct-horse-battery"
SECRET = "k" * 48


# ---------------------------------------------------------------------------
# Clock and audit doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment


class RecordingSink:
    """AuditSink that keeps every event in memory."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []
        self._lock = threading.Lock()

    def log_event(self, event: AuditEvent) -> None:
        with self._lock:
            self.events.append(event)

    def actions(self) -> list[str]:
        with self._lock:
            return [e.action for e in self.events]


def drain_audit(facade: AuthorizationFacade) -> RecordingSink:
    """Wait for queued audit events and return the recording sink."""
    facade.audit.shutdown(wait=True)
    return facade.audit.sink


# ---------------------------------------------------------------------------
# Seeding helpers
# ---------------------------------------------------------------------------


def make_user(store: CredentialStore, username: str, password: str = PASSWORD, **fields) -> int:
    return store.create_user(User(username=username, hashed_password=hash_password(password), **fields))


def make_permission(store: CredentialStore, *names: str) -> None:
    for name in names:
        store.create_permission(Permission(name=name, description=f"{name} permission"))


def make_role(store: CredentialStore, name: str, permissions=(), **fields) -> int:
    return store.create_role(Role(name=name, permissions=list(permissions), **fields))


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


def build_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": SECRET,
        "database_url": "sqlite:///:memory:",
        "access_token_ttl_seconds": 3600,
        "refresh_token_ttl_seconds": 7 * 24 * 3600,
        "session_inactivity_timeout_seconds": 30 * 60,
    }
    values.update(overrides)
    return Settings(**values)


def shipped_settings(**overrides) -> Settings:
    """Settings with the shipped token, session, and cache lifetimes.

    build_settings() stretches the identity token to an hour; this one keeps
    the 15-minute token and 30-minute inactivity timeout the service runs with.
    """
    return Settings(debug=True, secret_key=SECRET, database_url="sqlite:///:memory:", **overrides)


@pytest.fixture
def settings() -> Settings:
    return build_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def facade(store, settings, clock) -> Generator[AuthorizationFacade, None, None]:
    f = build_facade(settings, store=store, clock=clock, audit_sink=RecordingSink())
    yield f
    f.audit.shutdown(wait=True)


@pytest.fixture
def shipped_facade(store, clock) -> Generator[AuthorizationFacade, None, None]:
    f = build_facade(shipped_settings(), store=store, clock=clock, audit_sink=RecordingSink())
    yield f
    f.audit.shutdown(wait=True)


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    """Login limit counters are process-wide; start every test from zero."""
    limiter.reset()
    yield


# ---------------------------------------------------------------------------
# HTTP integration fixtures
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> CredentialStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', 'health').
    """
    return CredentialStore(db_url=f"sqlite:///file:test_warden_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(facade: AuthorizationFacade):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test facade into app.state so TestClient routes see
    an isolated store. The sweep_task is a long-sleeping coroutine so
    shutdown has a real asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.facade = facade
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, AuthorizationFacade, int], None, None]:
    """Yield (client, facade, admin_id) for API integration tests.

    Seeds:
      permissions: device.read, device.write, role.manage, user.manage
      roles:       admin (role.manage, user.manage), nurse (device.read)
      users:       admin (holds admin), nina (holds nurse), sam (no roles)
    All users share the password PASSWORD.
    """
    store = _make_test_store("api")
    make_permission(store, "device.read", "device.write", "role.manage", "user.manage")
    admin_role = make_role(store, "admin", ["role.manage", "user.manage"])
    nurse_role = make_role(store, "nurse", ["device.read"])
    admin_id = make_user(store, "admin")
    nina_id = make_user(store, "nina")
    make_user(store, "sam")

    facade = build_facade(get_settings(), store=store, audit_sink=RecordingSink())
    facade.assign_role(admin_id, admin_role)
    facade.assign_role(nina_id, nurse_role)

    app.router.lifespan_context = _patch_lifespan(facade)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, facade, admin_id

    facade.audit.shutdown(wait=True)
    store.close()
