"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Iterator

os.environ.setdefault("DATABASE_DSN", "sqlite+pysqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.setdefault("REALTIME_AUTH_TIMEOUT_SECONDS", "0")

import pytest
from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketState
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from conecta.realtime.errors import AuthenticationError
from conecta.realtime.hub import RealtimeHub
from conecta.realtime.managers import configure_realtime, get_hub

from app.core.security import JwtCredentialVerifier, create_access_token
from app.database import get_db
from app.main import app
from app.models import Base, Room, User
from app.services.chat_store import SqlMessageStore, SqlRoomCatalog, SqlUserDirectory


class DummyTransport:
    """Collect frames pushed to one fake client connection."""

    def __init__(self, *, fail: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail = fail
        self.application_state = WebSocketState.CONNECTED

    async def send_json(self, data: dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(data)

    def close(self) -> None:
        self.application_state = WebSocketState.DISCONNECTED

    def events(self, event_type: str | None = None) -> list[dict[str, Any]]:
        if event_type is None:
            return list(self.sent)
        return [frame for frame in self.sent if frame["type"] == event_type]

    def clear(self) -> None:
        self.sent.clear()


class StaticVerifier:
    """Accept ``token-<user id>`` style credentials."""

    def verify(self, token: str) -> int:
        prefix, _, user_id = token.partition("-")
        if prefix != "token" or not user_id.isdigit():
            raise AuthenticationError("Could not validate credentials")
        return int(user_id)



class FakeSocket:
    """Client side websocket double answering the authenticate frame."""

    def __init__(self, *, reply: str | None = "authenticated", user_id: int = 7) -> None:
        self.reply = reply
        self.user_id = user_id
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._incoming: asyncio.Queue[str | None] = asyncio.Queue()

    async def send(self, raw: str) -> None:
        if self.closed:
            raise OSError("socket closed")
        frame = json.loads(raw)
        self.sent.append(frame)
        if frame["type"] == "authenticate" and self.reply == "authenticated":
            self.push("authenticated", {"sessionId": f"s-{id(self)}", "userId": self.user_id})
        elif frame["type"] == "authenticate" and self.reply == "auth_error":
            self.push("auth_error", {"code": "authentication_error", "detail": "Token expired"})

    def push(self, event: str, data: dict[str, Any] | None = None) -> None:
        self._incoming.put_nowait(json.dumps({"type": event, "data": data or {}}))

    def drop(self) -> None:
        """Simulate the server closing the connection."""

        self._incoming.put_nowait(None)

    async def recv(self) -> str:
        raw = await self._incoming.get()
        if raw is None:
            raise OSError("connection dropped")
        return raw

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> str:
        raw = await self._incoming.get()
        if raw is None:
            raise StopAsyncIteration
        return raw

    async def close(self) -> None:
        self.closed = True

    def types(self) -> list[str]:
        return [frame["type"] for frame in self.sent]


class FakeConnector:
    """Hand out queued sockets; an exception in the queue is raised instead."""

    def __init__(self, *items: Any) -> None:
        self.items = list(items)
        self.urls: list[str] = []

    async def __call__(self, url: str) -> Any:
        self.urls.append(url)
        item = self.items.pop(0) if len(self.items) > 1 else self.items[0]
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return await item()
        return item

    @property
    def calls(self) -> int:
        return len(self.urls)


async def wait_for_condition(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)

@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True, expire_on_commit=False)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def users(session_factory) -> dict[str, int]:
    """Create alice, bob and carol and return their ids by name."""

    with session_factory() as session:
        created = [
            User(name="Alice", email="alice@example.com"),
            User(name="Bob", email="bob@example.com"),
            User(name="Carol", email="carol@example.com"),
        ]
        session.add_all(created)
        session.commit()
        return {user.name.lower(): user.id for user in created}


@pytest.fixture()
def room_id(session_factory) -> int:
    with session_factory() as session:
        room = Room(title="General")
        session.add(room)
        session.commit()
        return room.id


@pytest.fixture()
def tokens(users) -> dict[str, str]:
    return {name: create_access_token({"sub": str(user_id)}) for name, user_id in users.items()}


@pytest.fixture()
def make_hub(session_factory):
    """Build a hub over the SQL stores; keyword arguments override defaults."""

    def factory(**overrides: Any) -> RealtimeHub:
        options: dict[str, Any] = {
            "verifier": JwtCredentialVerifier(session_factory),
            "catalog": SqlRoomCatalog(session_factory),
            "store": SqlMessageStore(session_factory),
            "directory": SqlUserDirectory(session_factory),
        }
        options.update(overrides)
        return RealtimeHub(**options)

    return factory


@pytest.fixture()
def hub(make_hub) -> RealtimeHub:
    return make_hub()


@pytest.fixture()
def transport_factory():
    return DummyTransport


@pytest.fixture()
def static_verifier() -> StaticVerifier:
    return StaticVerifier()


@pytest.fixture()
def client(session_factory, hub) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient wired to the test database and hub."""

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    configure_realtime(hub)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_hub] = lambda: hub
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def auth_headers(tokens):
    """Return the bearer headers of a seeded user by name."""

    def build(name: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {tokens[name]}"}

    return build


@pytest.fixture()
def fake_socket():
    return FakeSocket


@pytest.fixture()
def fake_connector():
    return FakeConnector


@pytest.fixture()
def wait_until():
    return wait_for_condition
