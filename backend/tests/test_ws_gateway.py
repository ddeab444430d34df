from __future__ import annotations

import time

import pytest
from fastapi.websockets import WebSocketDisconnect
from starlette.testclient import WebSocketTestSession

from conecta.realtime.errors import ValidationError
from conecta.realtime.events import CommandType
from conecta.realtime.protocol import SendMessageCommand, parse_command

from app.api import ws as ws_module


def _receive_until(connection: WebSocketTestSession, event_type: str) -> dict:
    while True:
        frame = connection.receive_json()
        if frame["type"] == event_type:
            return frame


def test_parse_command_validates_frames() -> None:
    command, data = parse_command(
        {"type": "send_message", "data": {"roomId": 3, "content": "hi", "clientId": "c-9"}}
    )
    assert command is CommandType.SEND_MESSAGE
    assert isinstance(data, SendMessageCommand)
    assert (data.room_id, data.client_id) == (3, "c-9")

    command, _ = parse_command({"type": "get_online_users"})
    assert command is CommandType.GET_ONLINE_USERS


@pytest.mark.parametrize(
    "frame",
    [
        "join_room",
        {"type": "fly"},
        {"type": "join_room", "data": [1]},
        {"type": "join_room", "data": {"roomId": "lobby"}},
    ],
)
def test_parse_command_rejects_malformed_frames(frame) -> None:
    with pytest.raises(ValidationError):
        parse_command(frame)


def test_authenticate_frame_then_join(client, users, tokens, room_id) -> None:
    with client.websocket_connect("/ws/chat") as connection:
        connection.send_json({"type": "join_room", "data": {"roomId": room_id}})
        error = _receive_until(connection, "error")
        assert error["data"]["code"] == "permission_denied"

        connection.send_json({"type": "authenticate", "data": {"token": tokens["alice"]}})
        authenticated = _receive_until(connection, "authenticated")
        assert authenticated["data"]["userId"] == users["alice"]
        assert authenticated["data"]["anonymous"] is False

        connection.send_json({"type": "join_room", "data": {"roomId": room_id}})
        joined = _receive_until(connection, "room_joined")
        assert joined["data"]["roomId"] == room_id
        assert joined["data"]["onlineUsers"] == [users["alice"]]
        assert joined["data"]["joinedAt"]


def test_bad_token_yields_auth_error(client, users) -> None:
    with client.websocket_connect("/ws/chat") as connection:
        connection.send_json({"type": "authenticate", "data": {"token": "forged"}})
        error = _receive_until(connection, "auth_error")
        assert error["data"]["code"] == "authentication_error"


def test_malformed_frames_report_errors(client, tokens, room_id) -> None:
    with client.websocket_connect(f"/ws/chat?token={tokens['alice']}") as connection:
        _receive_until(connection, "authenticated")

        connection.send_text("{not json")
        error = _receive_until(connection, "error")
        assert error["data"] == {"code": "validation_error", "detail": "Invalid message format"}

        connection.send_json({"type": "teleport", "data": {}})
        error = _receive_until(connection, "error")
        assert error["data"]["code"] == "validation_error"

        connection.send_json({"type": "join_room", "data": {"roomId": 404}})
        failure = _receive_until(connection, "room_join_error")
        assert failure["data"]["roomId"] == 404
        assert failure["data"]["code"] == "room_not_found"

        connection.send_json({"type": "send_message", "data": {"roomId": room_id, "content": "", "clientId": "c-0"}})
        failed = _receive_until(connection, "message_failed")
        assert failed["data"]["clientId"] == "c-0"
        assert failed["data"]["code"] == "validation_error"


def test_message_round_trip_between_sessions(client, users, tokens, room_id) -> None:
    with client.websocket_connect(f"/ws/chat?token={tokens['alice']}") as alice, client.websocket_connect(
        f"/ws/chat?token={tokens['bob']}"
    ) as bob:
        _receive_until(alice, "authenticated")
        _receive_until(bob, "authenticated")
        for connection in (alice, bob):
            connection.send_json({"type": "join_room", "data": {"roomId": room_id}})
            _receive_until(connection, "room_joined")

        alice.send_json(
            {"type": "send_message", "data": {"roomId": room_id, "content": "hello bob", "clientId": "tmp-1"}}
        )
        sent = _receive_until(alice, "message_sent")
        assert sent["data"]["clientId"] == "tmp-1"

        received = _receive_until(bob, "new_message")
        assert received["data"]["message"]["_id"] == sent["data"]["message"]["_id"]
        assert received["data"]["message"]["sender"]["name"] == "Alice"

        bob.send_json({"type": "typing", "data": {"roomId": room_id, "isTyping": True}})
        typing = _receive_until(alice, "user_typing")
        assert typing["data"] == {"roomId": room_id, "userId": users["bob"], "isTyping": True}

        bob.send_json({"type": "get_user_status", "data": {"userId": users["alice"]}})
        status = _receive_until(bob, "user_status_response")
        assert status["data"]["isOnline"] is True


def test_unauthenticated_socket_is_closed_after_timeout(client) -> None:
    settings = ws_module.settings
    original_timeout = settings.realtime_auth_timeout_seconds
    settings.realtime_auth_timeout_seconds = 0.1

    try:
        with client.websocket_connect("/ws/chat") as connection:
            with pytest.raises(WebSocketDisconnect) as excinfo:
                connection.receive_json()
        assert excinfo.value.code == 1008
    finally:
        settings.realtime_auth_timeout_seconds = original_timeout


def test_connection_survives_keepalive_timeout(client, tokens) -> None:
    """Ensure that the server side keepalive pings keep the socket open."""

    settings = ws_module.settings
    original_timeout = settings.websocket_keepalive_timeout_seconds
    original_interval = settings.websocket_keepalive_ping_interval_seconds

    settings.websocket_keepalive_timeout_seconds = 0.1
    settings.websocket_keepalive_ping_interval_seconds = 0.05

    try:
        with client.websocket_connect(f"/ws/chat?token={tokens['alice']}") as connection:
            _assert_keepalive_sequence(connection)
    finally:
        settings.websocket_keepalive_timeout_seconds = original_timeout
        settings.websocket_keepalive_ping_interval_seconds = original_interval


def _assert_keepalive_sequence(connection: WebSocketTestSession) -> None:
    """Observe two keepalive pings with client pings keeping the connection active."""

    _receive_until(connection, "authenticated")

    time.sleep(0.15)
    ping = _receive_until(connection, "ping")
    assert ping["data"] == {}
    connection.send_json({"type": "ping"})
    assert _receive_until(connection, "pong")["data"]["timestamp"]

    time.sleep(0.12)
    _receive_until(connection, "ping")
    connection.send_json({"type": "ping"})
    assert _receive_until(connection, "pong")["type"] == "pong"
