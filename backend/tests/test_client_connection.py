from __future__ import annotations

import asyncio

import pytest

from conecta.client import ClientConfig, ConnectionManager, ConnectionState, DeliveryTracker
from conecta.client.connection import resolve_token
from conecta.realtime.errors import AuthenticationError, ConnectionTimeoutError, RealtimeTransportError
from conecta.realtime.events import CommandType, EventType


def _config(**overrides) -> ClientConfig:
    options = {"ws_url": "ws://chat.test/ws/chat", "api_url": "http://chat.test/api", "backoff_base": 0}
    options.update(overrides)
    return ClientConfig(**options)


def _record_states(manager: ConnectionManager) -> list[str]:
    states: list[str] = []
    manager.events.on(EventType.CONNECTION_STATE_CHANGE, lambda change: states.append(change["state"]))
    return states


def test_first_retry_is_immediate_then_backoff_doubles_to_the_cap() -> None:
    config = ClientConfig(ws_url="ws://x", api_url="http://x", backoff_base=1, backoff_max=30)
    assert [config.backoff_delay(attempt) for attempt in range(0, 8)] == [0, 0, 1, 2, 4, 8, 16, 30]


@pytest.mark.anyio
async def test_token_provider_may_be_sync_or_async() -> None:
    async def provider():
        return "token-1"

    assert await resolve_token(provider) == "token-1"
    assert await resolve_token(lambda: "") is None


@pytest.mark.anyio
async def test_connect_walks_through_every_state(fake_socket, fake_connector) -> None:
    socket = fake_socket(user_id=42)
    manager = ConnectionManager(_config(), lambda: "token-42", connector=fake_connector(socket))
    states = _record_states(manager)

    assert await manager.connect() is True

    assert states == ["connecting", "connected", "authenticating", "authenticated", "active"]
    assert manager.user_id == 42
    assert manager.session_id is not None
    assert socket.sent[0] == {"type": "authenticate", "data": {"token": "token-42"}}
    # Connecting again while active is a no-op.
    assert await manager.connect() is True
    await manager.disconnect()


@pytest.mark.anyio
async def test_missing_token_fails_before_connecting(fake_socket, fake_connector) -> None:
    connector = fake_connector(fake_socket())
    manager = ConnectionManager(_config(), lambda: None, connector=connector)
    states = _record_states(manager)

    with pytest.raises(AuthenticationError):
        await manager.connect()

    assert connector.calls == 0
    assert states == []
    assert manager.state is ConnectionState.DISCONNECTED


@pytest.mark.anyio
async def test_connect_timeout(fake_connector) -> None:
    async def never_answers():
        await asyncio.sleep(1)

    manager = ConnectionManager(
        _config(connect_timeout=0.05), lambda: "token-1", connector=fake_connector(never_answers)
    )

    with pytest.raises(ConnectionTimeoutError):
        await manager.connect()
    assert manager.state is ConnectionState.DISCONNECTED


@pytest.mark.anyio
async def test_refused_connection_is_a_transport_error(fake_connector) -> None:
    manager = ConnectionManager(_config(), lambda: "token-1", connector=fake_connector(OSError("refused")))

    with pytest.raises(RealtimeTransportError):
        await manager.connect()
    assert not manager.reconnecting


@pytest.mark.anyio
async def test_auth_error_and_auth_timeout_close_the_socket(fake_socket, fake_connector) -> None:
    rejected = fake_socket(reply="auth_error")
    manager = ConnectionManager(_config(), lambda: "token-1", connector=fake_connector(rejected))
    with pytest.raises(AuthenticationError):
        await manager.connect()
    assert rejected.closed
    assert manager.state is ConnectionState.DISCONNECTED

    silent = fake_socket(reply=None)
    manager = ConnectionManager(_config(auth_timeout=0.05), lambda: "token-1", connector=fake_connector(silent))
    with pytest.raises(ConnectionTimeoutError):
        await manager.connect()
    assert silent.closed


@pytest.mark.anyio
async def test_activation_rejoins_backfills_then_flushes_queue(fake_socket, fake_connector) -> None:
    tracker = DeliveryTracker()
    tracker.accept({"_id": 11, "roomId": 5, "createdAt": "2026-01-01T10:00:00Z"})
    socket = fake_socket()
    manager = ConnectionManager(_config(), lambda: "token-1", connector=fake_connector(socket), tracker=tracker)

    assert await manager.join_room(5) is False
    assert await manager.join_room(6) is False
    assert await manager.send(CommandType.SEND_MESSAGE, {"roomId": 5, "content": "queued"}) is False
    assert await manager.send(CommandType.TYPING, {"roomId": 5}, queue=False) is False
    assert manager.queued == 1

    await manager.connect()

    assert socket.types() == ["authenticate", "join_room", "backfill", "join_room", "send_message"]
    assert socket.sent[2]["data"] == {"roomId": 5, "since": "2026-01-01T10:00:00+00:00", "sinceId": 11}
    assert socket.sent[3]["data"] == {"roomId": 6}
    assert manager.queued == 0
    assert await manager.send(CommandType.TYPING, {"roomId": 5}) is True
    await manager.disconnect()


@pytest.mark.anyio
async def test_server_frames_are_reemitted(fake_socket, fake_connector, wait_until) -> None:
    socket = fake_socket()
    manager = ConnectionManager(_config(), lambda: "token-1", connector=fake_connector(socket))
    received: list[dict] = []
    manager.events.on(EventType.NEW_MESSAGE, received.append)
    await manager.connect()

    socket.push("new_message", {"roomId": 1, "message": {"_id": 3}})
    await wait_until(lambda: received)

    assert received == [{"roomId": 1, "message": {"_id": 3}}]
    await manager.disconnect()


@pytest.mark.anyio
async def test_server_drop_reconnects_and_rejoins(fake_socket, fake_connector, wait_until) -> None:
    first, second = fake_socket(), fake_socket()
    connector = fake_connector(first, second)
    tracker = DeliveryTracker()
    manager = ConnectionManager(_config(), lambda: "token-1", connector=connector, tracker=tracker)
    states = _record_states(manager)
    await manager.join_room(5)
    await manager.connect()
    tracker.accept({"_id": 20, "roomId": 5, "createdAt": "2026-01-01T10:00:00Z"})

    first.drop()
    await wait_until(lambda: connector.calls == 2 and manager.is_active)

    assert second.types() == ["authenticate", "join_room", "backfill"]
    assert second.sent[2]["data"] == tracker.backfill_request(5)
    assert states.count("disconnected") == 1
    assert manager.reconnect_attempts == 0
    await manager.disconnect()


@pytest.mark.anyio
async def test_quiet_room_is_backfilled_from_join_time(fake_socket, fake_connector, wait_until) -> None:
    first, second = fake_socket(), fake_socket()
    connector = fake_connector(first, second)
    tracker = DeliveryTracker()
    manager = ConnectionManager(_config(), lambda: "token-1", connector=connector, tracker=tracker)
    await manager.join_room(5)
    await manager.connect()

    first.push("room_joined", {"roomId": 5, "onlineUsers": [7], "joinedAt": "2026-01-01T09:00:00Z"})
    await wait_until(lambda: tracker.position(5) is not None)
    first.drop()
    await wait_until(lambda: connector.calls == 2 and manager.is_active)

    assert second.types() == ["authenticate", "join_room", "backfill"]
    assert second.sent[2]["data"] == {"roomId": 5, "since": "2026-01-01T09:00:00+00:00", "sinceId": 0}
    await manager.disconnect()


@pytest.mark.anyio
async def test_repeated_join_does_not_move_resume_position(fake_socket, fake_connector, wait_until) -> None:
    socket = fake_socket()
    tracker = DeliveryTracker()
    tracker.accept({"_id": 30, "roomId": 5, "createdAt": "2026-01-01T08:00:00Z"})
    manager = ConnectionManager(_config(), lambda: "token-1", connector=fake_connector(socket), tracker=tracker)
    received: list[dict] = []
    manager.events.on(EventType.ROOM_JOINED, received.append)
    await manager.connect()

    socket.push("room_joined", {"roomId": 5, "joinedAt": "2026-01-01T09:00:00Z"})
    await wait_until(lambda: received)

    assert tracker.backfill_request(5)["sinceId"] == 30
    await manager.disconnect()


@pytest.mark.anyio
async def test_reconnect_gives_up_after_budget(fake_socket, fake_connector, wait_until) -> None:
    first = fake_socket()
    connector = fake_connector(first, OSError("refused"))
    manager = ConnectionManager(_config(max_reconnect_attempts=3), lambda: "token-1", connector=connector)
    exhausted: list = []
    manager.events.on(EventType.MAX_RECONNECT_ATTEMPTS_EXCEEDED, exhausted.append)
    await manager.connect()

    first.drop()
    await wait_until(lambda: exhausted)

    assert exhausted[0].attempts == 3
    assert connector.calls == 4
    assert manager.state is ConnectionState.DISCONNECTED
    assert not manager.reconnecting


@pytest.mark.anyio
async def test_rejected_reconnect_stops_retrying(fake_socket, fake_connector, wait_until) -> None:
    first = fake_socket()
    connector = fake_connector(first, fake_socket(reply="auth_error"))
    manager = ConnectionManager(_config(), lambda: "token-1", connector=connector)
    auth_errors: list[dict] = []
    manager.events.on(EventType.AUTH_ERROR, auth_errors.append)
    await manager.connect()

    first.drop()
    await wait_until(lambda: auth_errors)

    assert auth_errors[0]["code"] == "authentication_error"
    assert connector.calls == 2
    assert not manager.reconnecting


@pytest.mark.anyio
async def test_disconnect_leaves_rooms_and_does_not_reconnect(fake_socket, fake_connector) -> None:
    socket = fake_socket()
    connector = fake_connector(socket)
    manager = ConnectionManager(_config(), lambda: "token-1", connector=connector)
    await manager.connect()
    assert await manager.join_room(3) is True

    await manager.disconnect()
    await asyncio.sleep(0.05)

    assert socket.types()[-2:] == ["join_room", "leave_room"]
    assert socket.closed
    assert manager.rooms == []
    assert manager.state is ConnectionState.DISCONNECTED
    assert connector.calls == 1


@pytest.mark.anyio
async def test_force_reconnect_keeps_rooms(fake_socket, fake_connector) -> None:
    first, second = fake_socket(), fake_socket()
    manager = ConnectionManager(_config(), lambda: "token-1", connector=fake_connector(first, second))
    await manager.connect()
    await manager.join_room(8)

    assert await manager.force_reconnect() is True

    assert first.closed
    assert second.types() == ["authenticate", "join_room"]
    assert manager.rooms == [8]
    await manager.disconnect()
