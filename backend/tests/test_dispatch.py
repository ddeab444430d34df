from __future__ import annotations

from datetime import datetime

import pytest

from conecta.realtime.errors import (
    MessageNotFoundError,
    PermissionDeniedError,
    RoomNotFoundError,
    ValidationError,
)
from conecta.realtime.records import DELETED_PLACEHOLDER, conversation_id

from app.models import ChatMessage, Room


async def _connect(hub, token, transport_factory, *, fail: bool = False):
    transport = transport_factory(fail=fail)
    session = await hub.open_session(transport)
    await hub.registry.authenticate(session.id, token)
    return session, transport


async def _room_with_alice_and_bob(hub, tokens, room_id, transport_factory):
    alice, alice_ws = await _connect(hub, tokens["alice"], transport_factory)
    bob, bob_ws = await _connect(hub, tokens["bob"], transport_factory)
    await hub.rooms.join(alice.id, room_id)
    await hub.rooms.join(bob.id, room_id)
    alice_ws.clear()
    bob_ws.clear()
    return alice_ws, bob_ws


@pytest.mark.anyio
async def test_message_reaches_room_and_is_read_by_sender_only(
    hub, users, tokens, room_id, transport_factory, session_factory
) -> None:
    alice_ws, bob_ws = await _room_with_alice_and_bob(hub, tokens, room_id, transport_factory)

    message = await hub.dispatch.send_message(users["alice"], room_id, "  hello  ", client_id="tmp-1")
    await hub.dispatch.drain()

    assert message["content"] == "hello"
    assert message["sender"] == {"_id": users["alice"], "name": "Alice"}
    assert [receipt["user"] for receipt in message["readBy"]] == [users["alice"]]

    (frame,) = bob_ws.events("new_message")
    assert frame["data"]["message"]["content"] == "hello"
    assert frame["data"]["clientId"] == "tmp-1"
    # The sender's own devices receive the echo too.
    assert len(alice_ws.events("new_message")) == 1

    with session_factory() as db:
        stored = db.get(ChatMessage, message["_id"])
        assert stored.sender_id == users["alice"]
        assert [receipt.user_id for receipt in stored.receipts] == [users["alice"]]

    updated = await hub.dispatch.mark_read(room_id, users["bob"])
    assert updated == [message["_id"]]
    (read,) = alice_ws.events("messages_read")
    assert read["data"]["userId"] == users["bob"]
    assert read["data"]["messageIds"] == [message["_id"]]
    assert await hub.dispatch.mark_read(room_id, users["bob"]) == []


@pytest.mark.anyio
async def test_send_touches_room_activity(hub, users, room_id) -> None:
    message = await hub.dispatch.send_message(users["alice"], room_id, "hi")
    await hub.dispatch.drain()

    (room,) = await hub.catalog.list_rooms()
    assert room.last_activity_at is not None
    assert room.last_activity_at == _ts(message["createdAt"])


@pytest.mark.anyio
@pytest.mark.parametrize("content", ["", "   ", "x" * 1001])
async def test_invalid_content_is_rejected_before_persistence(hub, users, room_id, session_factory, content) -> None:
    with pytest.raises(ValidationError):
        await hub.dispatch.send_message(users["alice"], room_id, content)

    with session_factory() as db:
        assert db.query(ChatMessage).count() == 0


@pytest.mark.anyio
async def test_send_to_unknown_room_or_bad_type_fails(hub, users) -> None:
    with pytest.raises(RoomNotFoundError):
        await hub.dispatch.send_message(users["alice"], 404, "hi")
    with pytest.raises(ValidationError):
        await hub.dispatch.send_message(users["alice"], 404, "hi", "sticker")


@pytest.mark.anyio
async def test_reply_must_target_message_in_same_room(hub, users, room_id, session_factory) -> None:
    with session_factory() as db:
        other = Room(title="Other")
        db.add(other)
        db.commit()
        other_id = other.id

    foreign = await hub.dispatch.send_message(users["bob"], other_id, "elsewhere")
    with pytest.raises(ValidationError):
        await hub.dispatch.send_message(users["alice"], room_id, "re", reply_to=foreign["_id"])

    parent = await hub.dispatch.send_message(users["bob"], room_id, "question")
    reply = await hub.dispatch.send_message(users["alice"], room_id, "answer", reply_to=parent["_id"])
    assert reply["replyTo"]["_id"] == parent["_id"]
    assert reply["replyTo"]["content"] == "question"
    assert reply["replyTo"]["sender"]["name"] == "Bob"


@pytest.mark.anyio
async def test_soft_delete_keeps_message_with_placeholder(
    hub, users, tokens, room_id, transport_factory
) -> None:
    alice_ws, bob_ws = await _room_with_alice_and_bob(hub, tokens, room_id, transport_factory)
    first = await hub.dispatch.send_message(users["alice"], room_id, "secret")
    await hub.dispatch.send_message(users["bob"], room_id, "reply")

    with pytest.raises(PermissionDeniedError):
        await hub.dispatch.delete_message(first["_id"], users["bob"])

    deleted = await hub.dispatch.delete_message(first["_id"], users["alice"])
    again = await hub.dispatch.delete_message(first["_id"], users["alice"])

    assert deleted["deleted"] is True
    assert deleted["content"] == DELETED_PLACEHOLDER
    assert deleted["attachments"] == []
    assert again == deleted
    assert len(bob_ws.events("message_deleted")) == 1

    items, _ = await hub.dispatch.history(room_id)
    assert len(items) == 2
    assert [item["content"] for item in items] == ["reply", DELETED_PLACEHOLDER]
    backfill = await hub.dispatch.backfill(room_id)
    assert DELETED_PLACEHOLDER in [item["content"] for item in backfill]
    assert "secret" not in str(bob_ws.sent[-1])

    with pytest.raises(ValidationError):
        await hub.dispatch.edit_message(first["_id"], users["alice"], "resurrected")
    with pytest.raises(MessageNotFoundError):
        await hub.dispatch.delete_message(99999, users["alice"])


@pytest.mark.anyio
async def test_edit_is_sender_only_and_broadcast(hub, users, tokens, room_id, transport_factory) -> None:
    alice_ws, bob_ws = await _room_with_alice_and_bob(hub, tokens, room_id, transport_factory)
    message = await hub.dispatch.send_message(users["alice"], room_id, "helo")

    with pytest.raises(PermissionDeniedError):
        await hub.dispatch.edit_message(message["_id"], users["bob"], "hijack")

    edited = await hub.dispatch.edit_message(message["_id"], users["alice"], "hello")
    assert edited["content"] == "hello"
    assert edited["edited"] is True
    assert edited["editedAt"] is not None
    assert bob_ws.events("message_edited")[0]["data"]["message"]["content"] == "hello"


@pytest.mark.anyio
async def test_one_reaction_per_user_and_clearing(hub, users, tokens, room_id, transport_factory) -> None:
    alice_ws, bob_ws = await _room_with_alice_and_bob(hub, tokens, room_id, transport_factory)
    message = await hub.dispatch.send_message(users["alice"], room_id, "vote")

    await hub.dispatch.set_reaction(message["_id"], users["bob"], "👍")
    reactions = await hub.dispatch.set_reaction(message["_id"], users["bob"], "🎉")
    assert reactions == [{"user": users["bob"], "emoji": "🎉"}]

    reactions = await hub.dispatch.set_reaction(message["_id"], users["alice"], "👍")
    assert sorted(item["user"] for item in reactions) == sorted([users["alice"], users["bob"]])

    reactions = await hub.dispatch.set_reaction(message["_id"], users["bob"], None)
    assert reactions == [{"user": users["alice"], "emoji": "👍"}]
    assert len(alice_ws.events("message_reaction")) == 4


@pytest.mark.anyio
async def test_broken_session_does_not_block_room_delivery(
    hub, users, tokens, room_id, transport_factory, caplog
) -> None:
    alice_ws, bob_ws = await _room_with_alice_and_bob(hub, tokens, room_id, transport_factory)
    carol, carol_ws = await _connect(hub, tokens["carol"], transport_factory)
    await hub.rooms.join(carol.id, room_id)
    carol_ws.fail = True

    message = await hub.dispatch.send_message(users["alice"], room_id, "still delivered")

    assert bob_ws.events("new_message")[0]["data"]["message"]["_id"] == message["_id"]
    assert "Room fan-out partially failed" in caplog.text
    items, _ = await hub.dispatch.history(room_id)
    assert [item["_id"] for item in items] == [message["_id"]]


@pytest.mark.anyio
async def test_backfill_returns_strictly_newer_messages(hub, users, room_id) -> None:
    sent = [await hub.dispatch.send_message(users["alice"], room_id, f"m{index}") for index in range(5)]
    last_seen = sent[1]

    newer = await hub.dispatch.backfill(room_id, since=_ts(last_seen["createdAt"]), since_id=last_seen["_id"])
    assert [item["_id"] for item in newer] == [item["_id"] for item in sent[2:]]

    latest = await hub.dispatch.backfill(room_id, limit=2)
    assert [item["_id"] for item in latest] == [item["_id"] for item in sent[3:]]


@pytest.mark.anyio
async def test_direct_message_reaches_both_participants(
    hub, users, tokens, transport_factory
) -> None:
    _, alice_ws = await _connect(hub, tokens["alice"], transport_factory)
    _, bob_ws = await _connect(hub, tokens["bob"], transport_factory)
    _, carol_ws = await _connect(hub, tokens["carol"], transport_factory)

    message = await hub.dispatch.send_direct_message(users["alice"], users["bob"], "psst", client_id="dm-1")

    assert alice_ws.events("private_message")[0]["data"]["clientId"] == "dm-1"
    assert bob_ws.events("private_message")[0]["data"]["message"]["content"] == "psst"
    assert carol_ws.events("private_message") == []
    assert message["conversationId"] == conversation_id(users["alice"], users["bob"])

    with pytest.raises(ValidationError):
        await hub.dispatch.send_direct_message(users["alice"], users["alice"], "me")
    with pytest.raises(ValidationError):
        await hub.dispatch.send_direct_message(users["alice"], 12345, "nobody")

    items, cursor = await hub.dispatch.direct_history(users["bob"], users["alice"])
    assert [item["_id"] for item in items] == [message["_id"]]
    assert cursor is None
    assert await hub.dispatch.mark_conversation_read(users["bob"], users["alice"]) == 1
    assert await hub.dispatch.mark_conversation_read(users["bob"], users["alice"]) == 0


def _ts(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))
