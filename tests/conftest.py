"""
tests/conftest.py -- Shared test fixtures for Latchkey.

This module provides:
  - settings: explicit Settings with a fixed secret and cheap argon2 costs
  - clock: a controllable UTC clock injected into every component
  - notifier: a recording stand-in for the email transport
  - engine / service: an AuthService over a fresh SQLite file per test
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: SQLite files under tmp_path rather than in-memory databases. The
concurrency tests and TestClient both run work on several threads; a file
database gives every pooled connection the same schema and real locking.

The DEBUG env var must be set before any api/ import so get_settings() can
auto-generate SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any api/core import.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.errors import NotificationUnavailableError
from auth.passwords import PasswordHasher
from auth.service import AuthService
from auth.store import create_db_engine
from core.config import Settings

TEST_SECRET = "test-secret-key-0123456789abcdef-0123456789"

# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable UTC clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 9, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    """Collects (to_email, subject, body) tuples instead of sending email.

    Set fail=True to make send() raise like an unreachable provider.
    """

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    def send(self, to_email: str, subject: str, body: str) -> None:
        if self.fail:
            raise NotificationUnavailableError(reason="provider down (test)")
        self.sent.append((to_email, subject, body))


def make_settings(**overrides) -> Settings:
    values = {
        "secret_key": TEST_SECRET,
        "argon2_time_cost": 1,
        "argon2_memory_cost": 1024,
        "argon2_parallelism": 1,
        "purge_interval_seconds": 0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def extract_token(body: str) -> str:
    """Pull the reset token out of a recovery email body."""
    return body.split("token=", 1)[1].split()[0]


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def hasher(settings: Settings) -> PasswordHasher:
    return PasswordHasher.from_settings(settings)


@pytest.fixture
def engine(tmp_path):
    eng = create_db_engine(f"sqlite:///{tmp_path / 'auth.db'}", timeout=5.0)
    yield eng
    eng.dispose()


@pytest.fixture
def service(settings, engine, hasher, notifier, clock) -> AuthService:
    return AuthService.build(settings, notifier=notifier, engine=engine, hasher=hasher, clock=clock)


# ---------------------------------------------------------------------------
# API fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the test AuthService into app.state so routes hit an isolated
    database and the recording notifier. No purge task is started.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_service = service
        app.state.purge_task = None
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, RecordingNotifier], None, None]:
    """Yield (client, notifier) for API integration tests.

    base_url uses localhost so TrustedHostMiddleware accepts the requests.
    Rate limiting is disabled here; tests that exercise it re-enable it.
    """
    db_path = tmp_path_factory.mktemp("api") / "auth.db"
    settings = make_settings()
    eng = create_db_engine(f"sqlite:///{db_path}")
    recording = RecordingNotifier()
    svc = AuthService.build(settings, notifier=recording, engine=eng)

    app.router.lifespan_context = _patch_lifespan(svc)
    limiter.enabled = False

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, recording

    limiter.enabled = True
    eng.dispose()


def unique_email(prefix: str = "user") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}@example.com"
