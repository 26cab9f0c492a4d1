"""
tests/conftest.py -- Shared test fixtures for WebAuth.

This module provides:
  - make_engine(): a fresh named shared-memory SQLite engine with the schema
  - stores: (UserStore, TokenStore, EventJournal) on an isolated engine
  - FakeMailer: records messages instead of talking SMTP
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - client: TestClient with follow_redirects=False over https://testserver

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. A uuid in the name keeps every test on its own database.

Environment variables must be set before any core/auth import so that
get_settings() sees them on first (cached) use.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("SSE_EVENTS", '["", "event1"]')
os.environ.setdefault("MAIL_FROM", "webauth@example.com")
os.environ.setdefault("BASE_URL", "https://testserver")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine

from asgi import app
from auth.events import EventJournal
from auth.schema import create_db_engine
from auth.session import SESSION_COOKIE
from auth.store import UserStore
from auth.tokens import TokenStore
from sse.broadcaster import Broadcaster

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_engine() -> Engine:
    url = f"sqlite:///file:test_webauth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    return create_db_engine(url)


@dataclass
class Stores:
    engine: Engine
    users: UserStore
    tokens: TokenStore
    journal: EventJournal


@pytest.fixture
def stores() -> Generator[Stores, None, None]:
    engine = make_engine()
    tokens = TokenStore(engine)
    yield Stores(engine=engine, users=UserStore(engine, tokens), tokens=tokens, journal=EventJournal(engine))
    engine.dispose()


# ---------------------------------------------------------------------------
# Mail
# ---------------------------------------------------------------------------


@dataclass
class SentMessage:
    from_addr: str
    recipients: list[str]
    subject: str
    body: str


@dataclass
class FakeMailer:
    """Stands in for mail.smtp.Mailer; set `fail` to an exception to raise it."""

    sent: list[SentMessage] = field(default_factory=list)
    fail: Exception | None = None

    def send_message(self, from_addr: str, recipients: list[str], subject: str, body: str) -> None:
        if self.fail is not None:
            raise self.fail
        self.sent.append(SentMessage(from_addr, list(recipients), subject, body))


# ---------------------------------------------------------------------------
# App client
# ---------------------------------------------------------------------------


def _patch_lifespan(stores: Stores, mailer: FakeMailer):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown can cancel a
    real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = stores.engine
        app.state.user_store = stores.users
        app.state.token_store = stores.tokens
        app.state.journal = stores.journal
        app.state.mailer = mailer
        broadcaster = Broadcaster()
        broadcaster.register_events("", "event1")
        broadcaster.run()
        app.state.broadcaster = broadcaster
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()
        await broadcaster.close()

    return test_lifespan


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def client(stores: Stores, mailer: FakeMailer) -> Generator[TestClient, None, None]:
    """TestClient over https so Secure cookies are sent back.

    follow_redirects=False is essential: tests assert on redirect Location
    headers and on the Set-Cookie of the redirect response itself.
    """
    app.router.lifespan_context = _patch_lifespan(stores, mailer)
    with TestClient(
        app,
        base_url="https://testserver",
        follow_redirects=False,
        raise_server_exceptions=True,
    ) as c:
        yield c


# ---------------------------------------------------------------------------
# Shortcuts
# ---------------------------------------------------------------------------


def register(stores: Stores, username: str = "alice", password: str = "pw", email: str | None = None) -> None:
    stores.users.register(username, username.title(), email or f"{username}@example.com", password)


def login(client: TestClient, username: str = "alice", password: str = "pw") -> str:
    """Log in through the form and return the session cookie value."""
    resp = client.post("/login", data={"username": username, "password": password})
    assert resp.status_code == 303
    return resp.cookies[SESSION_COOKIE]
