"""
Shared fixtures: a temporary SQLite database, a scripted completion provider
and the real-time services wired together the same way the app wires them.
"""

import asyncio
from types import SimpleNamespace
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from sitechat.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from sitechat.core.config import Settings
from sitechat.core.database import create_db_engine, create_session_factory, init_db
from sitechat.main import create_app
from sitechat.services import store
from sitechat.services.assets import AssetStore
from sitechat.services.auth import Identity
from sitechat.services.orchestrator import BotOrchestrator
from sitechat.services.pipeline import MessagePipeline
from sitechat.services.registry import Connection, SessionRegistry
from sitechat.services.room_queue import RoomLocks, RoomTaskQueue


class FakeProvider:
    """
    Scripted completion provider.

    Replies "Reply to: <last user text>" unless a fixed reply is given.
    `delays` maps a user text to seconds to wait before answering; `error`
    is raised on every call.
    """

    def __init__(self, reply: Optional[str] = None, delays: Optional[dict] = None, error: Optional[Exception] = None):
        self.reply = reply
        self.delays = delays or {}
        self.error = error
        self.calls = []

    async def complete(self, messages):
        self.calls.append(list(messages))
        last = messages[-1].content
        text = last if isinstance(last, str) else " ".join(
            p.get("text", "") for p in last if isinstance(p, dict)
        )

        delay = self.delays.get(text)
        if delay:
            await asyncio.sleep(delay)
        if self.error is not None:
            raise self.error
        if self.reply is not None:
            return self.reply
        return f"Reply to: {text}"


class FakeTransport:
    """Stands in for a WebSocket; records every frame sent."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(data)

    def events(self, name: str):
        return [frame["data"] for frame in self.sent if frame["event"] == name]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        jwt_secret="test-secret",
        upload_dir=tmp_path / "uploads",
        provider_timeout=1.0,
        log_level="WARNING",
    )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def app(settings, provider):
    return create_app(settings, provider=provider)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def session_factory(settings):
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


def build_services(session_factory, settings, provider, failure_threshold: int = 5):
    registry = SessionRegistry(session_factory)
    locks = RoomLocks()
    queue = RoomTaskQueue()
    assets = AssetStore(settings.upload_dir, settings.max_upload_bytes)
    breaker = CircuitBreaker("provider", CircuitBreakerConfig(failure_threshold=failure_threshold))
    orchestrator = BotOrchestrator(
        session_factory,
        registry,
        locks,
        assets,
        provider,
        breaker,
        timeout=settings.provider_timeout,
    )
    pipeline = MessagePipeline(session_factory, registry, orchestrator, locks, queue)
    return SimpleNamespace(
        registry=registry,
        locks=locks,
        queue=queue,
        assets=assets,
        breaker=breaker,
        orchestrator=orchestrator,
        pipeline=pipeline,
    )


@pytest.fixture
def services(session_factory, settings, provider):
    return build_services(session_factory, settings, provider)


@pytest.fixture
def make_user(session_factory):
    def _make_user(username: str = "alice") -> Identity:
        with session_factory() as db:
            user = store.create_user(db, username, "not-a-real-hash")
        return Identity(user_id=user.id, username=user.username)
    return _make_user


@pytest.fixture
def make_session(session_factory):
    def _make_session(identity: Identity, title: str = "New Chat"):
        with session_factory() as db:
            return store.create_session(db, identity.user_id, title)
    return _make_session


def connect(identity: Identity, fail: bool = False) -> Connection:
    return Connection(identity=identity, transport=FakeTransport(fail=fail))


def register(client: TestClient, username: str = "alice", password: str = "secret1") -> str:
    response = client.post("/api/register", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["token"]


def auth_header(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
