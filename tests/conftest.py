"""
tests/conftest.py -- Shared test fixtures for Gatehouse.

This module provides:
  - FrozenClock / clock: injectable clock so expiry and lockout are tested
    without sleeping
  - store: CredentialStore over a file-backed SQLite DB in tmp_path
  - redis_client / cache: RevocationCache over fakeredis
  - publisher: RecordingPublisher, which keeps every enriched event so tests
    can read payloads (including reset secrets)
  - engine: AuthEngine built from test Settings (bcrypt rounds 4)
  - api_client: TestClient whose lifespan wires the test engine into app.state

Design: the SQLite DB is a real file, not :memory:, because the concurrency
tests run the engine from several threads and TestClient runs sync route
handlers in a thread pool. Every connection must see the same database, and
the busy timeout serializes competing writers the way row locks would on a
server database.

The DEBUG env var must be set before any core/auth import so a stray
get_settings() call auto-generates SECRET_KEY instead of raising.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import.
os.environ.setdefault("DEBUG", "true")

import fakeredis
import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.engine import AuthEngine
from auth.events import enrich
from auth.models import Role
from auth.store import CredentialStore
from cache.store import RevocationCache
from core.config import Settings

TEST_SECRET = "test-signing-secret-0123456789abcdef0123456789"
STRONG_PASSWORD = "Str0ng!Pass"


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(debug=True, secret_key=TEST_SECRET, bcrypt_rounds=4, lockout_threshold=5, lockout_minutes=15)


@pytest.fixture
def store(tmp_path) -> Generator[CredentialStore, None, None]:
    s = CredentialStore(f"sqlite:///{tmp_path / 'auth.db'}", timeout=5.0)
    yield s
    s.close()


@pytest.fixture
def redis_client() -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def cache(redis_client) -> RevocationCache:
    return RevocationCache(redis_client)


class RecordingPublisher:
    """Keeps published events in order. Test-only: events may carry secrets."""

    def __init__(self) -> None:
        self.events: list[dict] = []

    def publish(self, event_name: str, payload: dict) -> None:
        self.events.append(enrich(event_name, payload))

    def names(self) -> list[str]:
        return [e["event"] for e in self.events]


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def engine(settings, store, cache, publisher, clock) -> AuthEngine:
    return AuthEngine.from_settings(settings, store, cache, publisher=publisher, clock=clock)


@pytest.fixture
def registered(engine):
    """A registered user: returns the AuthResult of register()."""
    return engine.register("alice@example.com", STRONG_PASSWORD, STRONG_PASSWORD)


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(engine: AuthEngine):
    """Return an async context manager that replaces the real lifespan.

    Wires the test engine into app.state so routes use the isolated stores
    instead of building real ones from Settings. The cleanup_task is a
    long-sleeping coroutine so shutdown's .cancel() has a real Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.cleanup_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.cleanup_task.cancel()

    return test_lifespan


@pytest.fixture
def api_client(engine) -> Generator[TestClient, None, None]:
    app.router.lifespan_context = _patch_lifespan(engine)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture
def admin_token(engine) -> str:
    engine.provision_user("root@example.com", STRONG_PASSWORD, Role.admin)
    return engine.login("root@example.com", STRONG_PASSWORD).access_token
