"""
tests/conftest.py -- Shared test fixtures for the intranet auth tests.

This module provides:
  - FakeClock / RecordingBackend: deterministic time and in-memory delivery
  - make_settings(): Settings with a fixed secret and admin identity
  - stores / gate / login_service: service-level fixtures on isolated DBs
  - api_client: TestClient with admin JWT for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool, and because the
UserStore and AccessStore engines must see the same database. The named URI
format (file:name?mode=memory&cache=shared&uri=true) shares one in-memory
instance across all connections in the same process.

The DEBUG env var must be set before any api/ import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core/api import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, wire_services
from auth.access_store import AccessStore
from auth.authorization import AuthorizationGate
from auth.codes import InMemoryCodeRegistry
from auth.login import LoginService
from auth.models import Role, User
from auth.notify import DispatchResult, NotificationDispatcher
from auth.store import UserStore
from auth.tokens import TokenService, hash_password
from core.config import Settings

TEST_SECRET = "test-secret-key-0123456789abcdef-0123456789"
ADMIN_EMAIL = "admin@corp.com"
ADMIN_PHONE = "+5511900000000"
ADMIN_PASSWORD = "bootstrap-pass-123"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingBackend:
    """Delivery backend that remembers what it was asked to send."""

    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.sent: list[tuple[str, str, str]] = []

    def send(self, to: str, subject: str, body: str) -> DispatchResult:
        self.sent.append((to, subject, body))
        if not self.succeed:
            return DispatchResult(False, "Delivery failed.")
        return DispatchResult(True, "Recorded.")


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": TEST_SECRET,
        "admin_email": ADMIN_EMAIL,
        "admin_phone": ADMIN_PHONE,
        "admin_password": ADMIN_PASSWORD,
    }
    values.update(overrides)
    return Settings(**values)


def memory_db_url(name: str) -> str:
    return f"sqlite:///file:test_auth_{name}?mode=memory&cache=shared&uri=true"


# ---------------------------------------------------------------------------
# Service-level fixtures -- fresh database per test
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Rate-limit counters are process-wide; start each test from zero."""
    limiter.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def stores() -> Generator[tuple[UserStore, AccessStore], None, None]:
    url = memory_db_url(uuid.uuid4().hex)
    users = UserStore(db_url=url)
    entries = AccessStore(db_url=url)
    yield users, entries
    entries.close()
    users.close()


@pytest.fixture
def email_backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def sms_backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def dispatcher(email_backend, sms_backend) -> NotificationDispatcher:
    return NotificationDispatcher(email_backend, sms_backend, code_ttl_minutes=15)


@pytest.fixture
def gate(stores, settings, dispatcher, clock) -> AuthorizationGate:
    users, entries = stores
    return AuthorizationGate(users, entries, settings, dispatcher, clock=clock)


@pytest.fixture
def codes(clock) -> InMemoryCodeRegistry:
    return InMemoryCodeRegistry(ttl_minutes=15, clock=clock)


@pytest.fixture
def tokens() -> TokenService:
    return TokenService(TEST_SECRET, expire_seconds=3600)


@pytest.fixture
def login_service(stores, gate, codes, dispatcher, tokens, settings, clock) -> LoginService:
    users, _ = stores
    return LoginService(users, gate, codes, dispatcher, tokens, settings, clock=clock)


# ---------------------------------------------------------------------------
# API fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


def _patch_lifespan(
    settings: Settings,
    users: UserStore,
    entries: AccessStore,
    dispatcher: NotificationDispatcher,
    token_service: TokenService,
):
    """Return an async context manager that replaces the real lifespan.

    Wires the test stores and recording dispatcher into app.state so
    TestClient routes see isolated in-memory databases and never reach a
    real mail or SMS provider.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        codes = InMemoryCodeRegistry(ttl_minutes=settings.code_ttl_minutes)
        wire_services(app, settings, users, entries, codes, dispatcher, token_service)
        yield
        codes.close()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores. The
    admin user (ADMIN_EMAIL) is created before the client starts and the JWT
    is generated for use in Authorization headers. The recording backends are
    reachable as client.app.state.dispatcher.
    """
    settings = make_settings()
    url = memory_db_url(f"api_{request.module.__name__.rsplit('.', 1)[-1]}_{uuid.uuid4().hex[:8]}")
    users = UserStore(db_url=url)
    entries = AccessStore(db_url=url)
    token_service = TokenService(settings.secret_key, expire_seconds=3600)
    dispatcher = NotificationDispatcher(RecordingBackend(), RecordingBackend())

    admin = User(
        email=ADMIN_EMAIL,
        role=Role.ADMIN,
        hashed_password=hash_password(ADMIN_PASSWORD),
        password_last_changed=datetime.now(timezone.utc),
    )
    uid = users.create_user(admin)
    token = token_service.issue(users.get_by_id(uid))

    app.router.lifespan_context = _patch_lifespan(settings, users, entries, dispatcher, token_service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, uid

    entries.close()
    users.close()


def sent_codes(backend: RecordingBackend, to: str) -> list[str]:
    """Six-digit codes delivered to `to`, oldest first."""
    found = []
    for recipient, _subject, body in backend.sent:
        if recipient == to:
            found.extend(word.rstrip(".") for word in body.split() if word.rstrip(".").isdigit())
    return [c for c in found if len(c) == 6]

