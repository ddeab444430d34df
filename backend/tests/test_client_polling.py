from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Callable

import httpx
import pytest

from conecta.client import ClientConfig, DeliveryTracker, OutboxStatus, PollingBridge, RealtimeClient, TransportMode
from conecta.realtime.errors import AuthenticationError, RealtimeTransportError, RoomNotFoundError
from conecta.realtime.events import EventType
from conecta.realtime.records import MessageCursor

API_URL = "http://chat.test/api"


def _config(**overrides) -> ClientConfig:
    options = {
        "ws_url": "ws://chat.test/ws/chat",
        "api_url": API_URL,
        "backoff_base": 0,
        "message_poll_interval": 10,
        "room_poll_interval": 10,
        "presence_poll_interval": 10,
    }
    options.update(overrides)
    return ClientConfig(**options)


def _message(message_id: int, room_id: int = 1, created_at: str = "2026-01-01T10:00:00Z") -> dict:
    return {"_id": message_id, "roomId": room_id, "createdAt": created_at, "content": f"m{message_id}"}


def _window(*updates: dict, until: str = "2026-01-01T10:05:00Z", cursor: str | None = None) -> dict:
    window = {"updates": list(updates), "until": until}
    if cursor is not None:
        window["cursor"] = cursor
    return window


class FakeApi:
    """Route mocked REST calls by path and remember every request."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[str, Callable[[httpx.Request], httpx.Response]] = {
            "/api/chat/updates": lambda request: httpx.Response(200, json=_window()),
            "/api/rooms/updates": lambda request: httpx.Response(200, json=_window()),
            "/api/users/notifications": lambda request: httpx.Response(200, json=_window()),
        }
        self.client = httpx.AsyncClient(transport=httpx.MockTransport(self._handle), base_url=API_URL)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.routes[request.url.path](request)

    def calls(self, path: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]


@pytest.fixture()
async def api():
    fake = FakeApi()
    yield fake
    await fake.client.aclose()


@pytest.mark.anyio
async def test_each_window_resumes_from_previous_until(api) -> None:
    windows = iter(
        [
            _window({"event": "new_message", "data": {"roomId": 1, "message": _message(1)}}, until="T1"),
            _window(until="T2"),
        ]
    )
    api.routes["/api/chat/updates"] = lambda request: httpx.Response(200, json=next(windows))
    bridge = PollingBridge(_config(), lambda: "secret", client=api.client)
    bridge.set_rooms([2, 1])
    received: list[dict] = []
    bridge.on(EventType.NEW_MESSAGE, received.append)

    assert await bridge.poll_once("messages") == 1
    assert await bridge.poll_once("messages") == 0

    first, second = api.calls("/api/chat/updates")
    assert "since" not in first.url.params
    assert first.url.params["rooms"] == "1,2"
    assert first.headers["Authorization"] == "Bearer secret"
    assert second.url.params["since"] == "T1"
    assert bridge.targets["messages"].since == "T2"
    assert received[0]["message"]["_id"] == 1


@pytest.mark.anyio
async def test_message_cursor_is_passed_back_and_covers_quiet_rooms(api) -> None:
    cursor = MessageCursor(datetime(2026, 1, 1, 10, tzinfo=timezone.utc), 1).encode()
    windows = iter(
        [
            _window({"event": "new_message", "data": {"roomId": 1, "message": _message(1)}}, cursor=cursor),
            _window(cursor=cursor),
        ]
    )
    api.routes["/api/chat/updates"] = lambda request: httpx.Response(200, json=next(windows))
    tracker = DeliveryTracker()
    bridge = PollingBridge(_config(), lambda: "secret", tracker=tracker, client=api.client)
    bridge.set_rooms([1, 2])

    await bridge.poll_once("messages")
    await bridge.poll_once("messages")

    first, second = api.calls("/api/chat/updates")
    assert "cursor" not in first.url.params
    assert second.url.params["cursor"] == cursor
    assert "since" not in second.url.params
    # Room 2 saw no traffic but is known to be complete up to the cursor.
    assert tracker.backfill_request(2) == {"roomId": 2, "since": "2026-01-01T10:00:00+00:00", "sinceId": 1}


@pytest.mark.anyio
async def test_start_seeds_message_window_from_tracker(api, wait_until) -> None:
    tracker = DeliveryTracker()
    tracker.accept(_message(4, created_at="2026-01-02T08:00:00Z"))
    bridge = PollingBridge(_config(), lambda: "secret", tracker=tracker, client=api.client)

    await bridge.start([1])
    await wait_until(lambda: len(api.requests) == 3)
    await bridge.stop()

    (request,) = api.calls("/api/chat/updates")
    resumed = MessageCursor.decode(request.url.params["cursor"])
    assert resumed == MessageCursor(datetime(2026, 1, 2, 8, tzinfo=timezone.utc), 4)
    assert "since" not in request.url.params
    assert not bridge.running


@pytest.mark.anyio
@pytest.mark.parametrize(
    "status_code, error",
    [(401, AuthenticationError), (404, RoomNotFoundError), (500, RealtimeTransportError)],
)
async def test_http_errors_map_to_realtime_errors(api, status_code, error) -> None:
    api.routes["/api/chat/updates"] = lambda request: httpx.Response(status_code, json={"detail": "nope"})
    bridge = PollingBridge(_config(), lambda: "secret", client=api.client)

    with pytest.raises(error) as excinfo:
        await bridge.poll_once("messages")
    assert excinfo.value.detail == "nope"


@pytest.mark.anyio
async def test_rejected_credential_stops_the_poll_loop(api) -> None:
    api.routes["/api/chat/updates"] = lambda request: httpx.Response(401, json={"detail": "expired"})
    bridge = PollingBridge(_config(message_poll_interval=0.01), lambda: "secret", client=api.client)

    await bridge.start()
    await asyncio.sleep(0.1)

    assert len(api.calls("/api/chat/updates")) == 1
    await bridge.stop()


@pytest.mark.anyio
async def test_fallback_then_upgrade_never_repeats_messages(api, fake_socket, fake_connector, wait_until) -> None:
    api.routes["/api/chat/updates"] = lambda request: httpx.Response(
        200, json=_window({"event": "new_message", "data": {"roomId": 1, "message": _message(1)}})
    )
    socket = fake_socket()
    connector = fake_connector(OSError("refused"), socket)
    client = RealtimeClient(
        _config(upgrade_interval=0.05), lambda: "secret", connector=connector, http_client=api.client
    )
    received: list[int] = []
    client.on(EventType.NEW_MESSAGE, lambda data: received.append(data["message"]["_id"]))
    await client.join_room(1)

    assert await client.connect() is True
    assert client.mode is TransportMode.POLLING
    await wait_until(lambda: received == [1])

    await wait_until(lambda: client.mode is TransportMode.PUSH)
    assert not client.polling.running
    assert socket.types() == ["authenticate", "join_room", "backfill"]
    assert socket.sent[2]["data"]["sinceId"] == 1

    socket.push("new_message", {"roomId": 1, "message": _message(1)})
    socket.push(
        "backfill",
        {"roomId": 1, "messages": [_message(1), _message(2, created_at="2026-01-01T10:01:00Z")]},
    )
    socket.push("new_message", {"roomId": 1, "message": _message(3, created_at="2026-01-01T10:02:00Z")})
    await wait_until(lambda: len(received) == 3)

    assert received == [1, 2, 3]
    await client.aclose()


@pytest.mark.anyio
async def test_polling_send_confirms_outbox_entry(api) -> None:
    def accept(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(201, json={"clientId": body["clientId"], "message": _message(9)})

    api.routes["/api/chat/rooms/1/messages"] = accept
    api.routes["/api/chat/rooms/2/messages"] = lambda request: httpx.Response(404, json={"detail": "Room 2 does not exist"})
    client = RealtimeClient(_config(force_polling=True), lambda: "secret", http_client=api.client)
    failures: list[dict] = []
    client.on(EventType.MESSAGE_FAILED, failures.append)

    assert await client.connect() is True
    assert client.mode is TransportMode.POLLING
    assert await client.typing(1) is False

    entry = await client.send_message(1, "over http")
    assert entry.status is OutboxStatus.CONFIRMED
    assert entry.message["_id"] == 9

    failed = await client.send_message(2, "nowhere")
    assert failed.status is OutboxStatus.FAILED
    assert failures[0]["code"] == "room_not_found"
    await client.aclose()


@pytest.mark.anyio
async def test_push_send_is_confirmed_by_message_sent(fake_socket, fake_connector, wait_until) -> None:
    socket = fake_socket()
    client = RealtimeClient(_config(), lambda: "secret", connector=fake_connector(socket))
    await client.connect()
    assert client.mode is TransportMode.PUSH

    entry = await client.send_message(1, "hello")
    assert socket.sent[-1]["data"]["clientId"] == entry.client_id
    assert client.status().pending == 1

    socket.push("message_sent", {"clientId": entry.client_id, "message": _message(5)})
    await wait_until(lambda: entry.status is OutboxStatus.CONFIRMED)
    assert client.status().pending == 0

    unanswered = await client.send_message(1, "never confirmed")
    await client.disconnect()
    assert unanswered.status is OutboxStatus.FAILED
    assert unanswered.error == "disconnected"
    await client.aclose()


@pytest.mark.anyio
async def test_auth_failure_keeps_client_offline(fake_socket, fake_connector) -> None:
    connector = fake_connector(fake_socket(reply="auth_error"))
    client = RealtimeClient(_config(), lambda: "secret", connector=connector)
    errors: list[dict] = []
    client.on(EventType.AUTH_ERROR, errors.append)

    assert await client.connect() is False

    assert client.mode is TransportMode.OFFLINE
    assert errors[0]["code"] == "authentication_error"
    assert not client.polling.running
    await client.aclose()


@pytest.mark.anyio
async def test_exhausted_reconnects_fall_back_to_polling(api, fake_socket, fake_connector, wait_until) -> None:
    socket = fake_socket()
    connector = fake_connector(socket, OSError("refused"))
    client = RealtimeClient(
        _config(max_reconnect_attempts=1, upgrade_interval=10),
        lambda: "secret",
        connector=connector,
        http_client=api.client,
    )
    exhausted: list = []
    client.on(EventType.MAX_RECONNECT_ATTEMPTS_EXCEEDED, exhausted.append)
    await client.connect()

    socket.drop()
    await wait_until(lambda: client.mode is TransportMode.POLLING)

    assert exhausted[0].attempts == 1
    assert client.polling.running
    await client.disconnect()
    assert client.mode is TransportMode.OFFLINE
    assert not client.polling.running
    await client.aclose()
