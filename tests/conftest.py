"""
tests/conftest.py -- Shared test fixtures for Passgate.

This module provides:
  - clock: FakeClock so expiry is tested without sleeping
  - store fixtures on isolated in-memory DBs (users, refresh_store, codec, states)
  - provider: FakeProvider with scripted exchange/identity results
  - sessions: a SessionService wired from the fixtures above
  - api_client: TestClient with follow_redirects=False over the real app

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Concurrency tests must not use these: a shared-cache lock conflict fails
immediately instead of waiting for the busy timeout. They use file_engine,
a file-backed DB under tmp_path.

The DEBUG env var must be set before any core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
# Keep the refresh rate limit out of the way of the functional tests.
os.environ.setdefault("REFRESH_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from api.main import app
from auth.session import SessionService
from auth.store import RefreshTokenStore, UserStore, create_auth_engine
from auth.tokens import AccessTokenCodec, LoginStateCodec
from support import (
    ACCESS_TTL,
    FRONTEND_ORIGIN,
    REFRESH_TTL,
    TEST_BASE_URL,
    TEST_SECRET,
    FakeClock,
    FakeProvider,
)

# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


def _memory_db_url() -> str:
    return f"sqlite:///file:test_passgate_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    eng = create_auth_engine(_memory_db_url())
    yield eng
    eng.dispose()


@pytest.fixture
def file_engine(tmp_path) -> Generator[Engine, None, None]:
    """File-backed engine for tests that race real threads against one DB."""
    eng = create_auth_engine(f"sqlite:///{tmp_path / 'passgate-test.db'}", timeout_seconds=10.0)
    yield eng
    eng.dispose()


@pytest.fixture
def users(engine: Engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture
def refresh_store(engine: Engine, clock: FakeClock) -> RefreshTokenStore:
    return RefreshTokenStore(engine, REFRESH_TTL, clock=clock)


@pytest.fixture
def codec(clock: FakeClock) -> AccessTokenCodec:
    return AccessTokenCodec(TEST_SECRET, ACCESS_TTL, "passgate", clock=clock)


@pytest.fixture
def states(clock: FakeClock) -> LoginStateCodec:
    return LoginStateCodec(TEST_SECRET, clock=clock)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def sessions(
    users: UserStore,
    refresh_store: RefreshTokenStore,
    codec: AccessTokenCodec,
    states: LoginStateCodec,
    provider: FakeProvider,
) -> SessionService:
    return SessionService(
        users=users,
        refresh_tokens=refresh_store,
        codec=codec,
        states=states,
        providers={"fake": provider},
        base_url=TEST_BASE_URL,
        allowed_redirect_origins=[FRONTEND_ORIGIN],
    )


# ---------------------------------------------------------------------------
# App fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(engine: Engine, sessions: SessionService):
    """Return an async context manager that replaces the real lifespan.

    Wires the test SessionService into app.state so TestClient routes use the
    isolated DB, the fake clock and the fake provider.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.sessions = sessions
        yield

    return test_lifespan


@pytest.fixture
def api_client(engine: Engine, sessions: SessionService) -> Generator[TestClient, None, None]:
    """Yield a TestClient over the real app with test stores in app.state.

    follow_redirects=False is essential: the login flow is asserted on the
    Location headers, which disappear once the client follows them.
    """
    app.router.lifespan_context = _patch_lifespan(engine, sessions)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client
