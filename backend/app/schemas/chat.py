"""Request and response schemas of the chat HTTP surface."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field

from conecta.realtime.protocol import AttachmentPayload, WireModel
from conecta.realtime.records import MessageType


class SendMessageRequest(WireModel):
    """Payload for posting a room message over HTTP."""

    content: str = ""
    type: MessageType = MessageType.TEXT
    attachments: list[AttachmentPayload] = Field(default_factory=list)
    reply_to: int | None = None
    client_id: str | None = Field(default=None, max_length=64)


class MarkReadRequest(WireModel):
    message_ids: list[int] | None = Field(
        default=None, description="Messages to mark; omit to mark every unread message"
    )


class MarkReadResponse(WireModel):
    room_id: int
    message_ids: list[int]


class EditMessageRequest(WireModel):
    content: str


class ReactionRequest(WireModel):
    emoji: str | None = Field(default=None, max_length=32, description="Null clears the reaction")


class ReactionResponse(WireModel):
    message_id: int
    reactions: list[dict[str, Any]]


class MessagePage(WireModel):
    """Cursor based page, newest first."""

    items: list[dict[str, Any]]
    next_cursor: str | None = None


class RoomSummary(WireModel):
    id: int = Field(alias="_id")
    title: str
    last_activity_at: datetime | None = None
    unread_count: int = 0
    online_count: int = 0
    last_message: dict[str, Any] | None = None


class OnlineUsersResponse(WireModel):
    room_id: int
    users: list[int]


class PollingUpdate(WireModel):
    event: str
    data: dict[str, Any]


class PollingResponse(WireModel):
    """Events observed in ``(since, until]``; ``until`` is the next ``since``.

    Message polls also carry ``cursor``, the position to resume from.
    """

    updates: list[PollingUpdate]
    until: datetime
    cursor: str | None = None


class ConversationRequest(WireModel):
    user_id: int


class ConversationResponse(WireModel):
    conversation_id: str
    participants: list[int]


class DirectMessageRequest(WireModel):
    recipient_id: int
    content: str
    type: MessageType = MessageType.TEXT
    client_id: str | None = Field(default=None, max_length=64)


class ConversationReadRequest(WireModel):
    user_id: int


class ConversationReadResponse(WireModel):
    conversation_id: str
    updated: int


class UserStatusResponse(WireModel):
    user_id: int
    name: str
    is_online: bool
    last_seen: datetime | None = None
