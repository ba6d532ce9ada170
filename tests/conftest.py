"""
tests/conftest.py -- Shared test fixtures for MotoManager auth tests.

This module provides:
  - FakeClock: a settable clock injected into SessionStore
  - store / directory / sessions / gateway: components over a throwaway DB
  - make_user(): creates a user through the directory with sane defaults
  - client: TestClient (follow_redirects=False) over the assembled ASGI app
  - login(): signs a TestClient in through the JSON API

Design: every test gets its own SQLite file under pytest's tmp_path.
TestClient runs sync route handlers in a thread pool, so the database must
be visible to every connection; a file database is, a plain :memory: one is
not.

Env vars are set before any app import so get_settings() sees them on its
first (cached) call.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("RATE_LIMIT_ENABLED", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import build_gateway
from asgi import app
from auth.directory import UserDirectory
from auth.gateway import AuthGateway
from auth.models import PublicUser
from auth.sessions import SessionStore
from auth.store import AuthStore
from core.limiter import limiter

DEFAULT_PASSWORD = "correct-horse-9"


class FakeClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store(tmp_path) -> Generator[AuthStore, None, None]:
    auth_store = AuthStore(f"sqlite:///{tmp_path / 'auth.db'}")
    yield auth_store
    auth_store.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def directory(store: AuthStore) -> UserDirectory:
    return UserDirectory(store)


@pytest.fixture
def sessions(store: AuthStore, clock: FakeClock) -> SessionStore:
    return SessionStore(store, timedelta(days=14), clock=clock)


@pytest.fixture
def gateway(sessions: SessionStore, directory: UserDirectory) -> AuthGateway:
    return AuthGateway(sessions, directory)


def make_user(
    directory: UserDirectory,
    username: str = "alice",
    *,
    role: str = "user",
    password: str = DEFAULT_PASSWORD,
    email: str | None = None,
    name: str | None = None,
) -> PublicUser:
    """Create a user with defaults derived from username."""
    return directory.create(
        email=email or f"{username}@example.com",
        username=username,
        name=name or username.capitalize(),
        password=password,
        role=role,
    )


# ---------------------------------------------------------------------------
# ASGI fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(auth_store: AuthStore):
    """Return a lifespan that wires the test store into app.state."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_store = auth_store
        app.state.auth = build_gateway(auth_store)
        yield

    return test_lifespan


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Rate-limit counters are process-wide; start every test from zero."""
    limiter.reset()


@pytest.fixture
def client(store: AuthStore) -> Generator[TestClient, None, None]:
    """TestClient over the full app (API + web) backed by the test store.

    follow_redirects=False lets web tests assert on Location headers, which
    disappear once the client follows the redirect.
    """
    app.router.lifespan_context = _patch_lifespan(store)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as test_client:
        yield test_client


@pytest.fixture
def app_users(client: TestClient) -> UserDirectory:
    """The directory the running app uses, for seeding accounts."""
    return app.state.auth.users


def login(client: TestClient, identifier: str, password: str = DEFAULT_PASSWORD):
    """Sign in through the JSON API; the client keeps the session cookie."""
    return client.post("/api/v1/auth/login", json={"identifier": identifier, "password": password})


def set_cookies(resp) -> list[str]:
    """All Set-Cookie header values of an httpx response."""
    return resp.headers.get_list("set-cookie")
