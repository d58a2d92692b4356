"""
tests/conftest.py -- Shared test fixtures for LoanLedger tests.

This module provides:
  - FakeClock: a settable clock for services that take a `clock` callable
  - make_settings(): Settings with fixed keys, independent of the environment
  - _make_test_stores(): isolated in-memory DBs for users, ledger and audit
  - _patch_lifespan(): wires test components into app.state, bypassing real startup
  - api_client: TestClient plus one identity per role and their access tokens

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

Environment variables must be set before api.main is imported: it reads
Settings at import time for the middleware configuration.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

# CRITICAL: set before any core/api import so get_settings() auto-generates
# signing keys in dev mode and the TestClient host passes TrustedHost.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("MUTATION_RATE_LIMIT", "1000/minute")
os.environ.setdefault("SWEEPER_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from audit.store import AuditStore
from audit.trail import AuditTrail
from auth.models import Identity, Role
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password
from core.config import Settings
from ledger.service import LoanLedger
from ledger.store import LedgerStore
from ledger.sweeper import OverdueSweeper

PASSWORD = "correct-horse-battery"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime | None = None) -> None:
        # Starts at wall-clock time: jose checks exp against the real clock.
        self.now = now or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class BrokenAuditStore:
    """Stand-in audit store that fails every insert."""

    def insert(self, entry):
        raise RuntimeError("disk full")

    def select(self, **filters):
        return []


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": "a" * 32 + "-access-signing-key",
        "refresh_secret_key": "b" * 32 + "-refresh-signing-key",
        "lockout_threshold": 5,
        "lockout_minutes": 15,
        "max_loan_hours": 4,
        "sweeper_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, LedgerStore, AuditStore]:
    """Create isolated named shared-memory SQLite stores.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'api', 'cli').
    """
    url = f"sqlite:///file:test_loanledger_{db_suffix}?mode=memory&cache=shared&uri=true"
    return UserStore(url), LedgerStore(url), AuditStore(url)


def _patch_lifespan(components: SimpleNamespace):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test components into app.state so TestClient routes see
    isolated test DBs. The sweeper is constructed but never started.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = components.settings
        app.state.user_store = components.user_store
        app.state.ledger_store = components.ledger_store
        app.state.audit_store = components.audit_store
        app.state.audit = components.audit
        app.state.sessions = components.sessions
        app.state.ledger = components.ledger
        app.state.sweeper = components.sweeper
        yield

    return test_lifespan


def build_components(db_suffix: str, settings: Settings | None = None) -> SimpleNamespace:
    settings = settings or make_settings()
    user_store, ledger_store, audit_store = _make_test_stores(db_suffix)
    audit = AuditTrail(audit_store)
    return SimpleNamespace(
        settings=settings,
        user_store=user_store,
        ledger_store=ledger_store,
        audit_store=audit_store,
        audit=audit,
        sessions=SessionManager(user_store, audit, settings),
        ledger=LoanLedger(ledger_store, audit),
        sweeper=OverdueSweeper(ledger_store, audit, settings.max_loan_hours, settings.sweep_interval_seconds),
    )


def _token_for(identity: Identity, settings: Settings) -> str:
    return create_access_token(identity, settings.secret_key, datetime.now(timezone.utc), 3600)


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audit_store() -> Generator[AuditStore, None, None]:
    store = AuditStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def audit(audit_store: AuditStore, clock: FakeClock) -> AuditTrail:
    return AuditTrail(audit_store, clock=clock)


@pytest.fixture
def broken_audit(clock: FakeClock) -> AuditTrail:
    """AuditTrail whose every write fails, as when the audit table is unwritable."""
    return AuditTrail(BrokenAuditStore(), clock=clock)


@pytest.fixture
def ledger_store() -> Generator[LedgerStore, None, None]:
    store = LedgerStore("sqlite:///:memory:")
    yield store
    store.close()


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client() -> Generator[SimpleNamespace, None, None]:
    """Yield a namespace with the client, the components and per-role identities.

    Attributes:
      client     -- TestClient against the real app with a patched lifespan
      c          -- the components wired into app.state
      admin, clerk, auditor          -- Identity objects (password = PASSWORD)
      headers(role) -> dict          -- Authorization header for that role
    """
    c = build_components(f"api_{uuid.uuid4().hex[:8]}")
    identities: dict[Role, Identity] = {}
    for role in Role:
        email = f"{role.value}@example.com"
        uid = c.user_store.create_user(Identity(email=email, role=role, hashed_password=hash_password(PASSWORD)))
        identities[role] = c.user_store.get_by_id(uid)

    app.router.lifespan_context = _patch_lifespan(c)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield SimpleNamespace(
            client=client,
            c=c,
            admin=identities[Role.ADMIN],
            clerk=identities[Role.CLERK],
            auditor=identities[Role.AUDITOR],
            headers=lambda role: {"Authorization": f"Bearer {_token_for(identities[role], c.settings)}"},
        )

    c.user_store.close()
    c.ledger_store.close()
    c.audit_store.close()
