"""Wire models for realtime frames.

Inbound frames are parsed into one command model per command type at the
gateway boundary; outbound payloads are produced from records through the
payload models below so every consumer sees a single canonical shape.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .errors import ValidationError
from .events import CommandType
from .records import (
    DELETED_PLACEHOLDER,
    Attachment,
    DirectMessageRecord,
    MessageRecord,
    MessageType,
    UserProfile,
    as_utc,
)


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# ---------------------------------------------------------------------------
# Outbound payloads
# ---------------------------------------------------------------------------


class SenderPayload(WireModel):
    id: int = Field(alias="_id")
    name: str


class AttachmentPayload(WireModel):
    url: str = Field(min_length=1)
    type: str | None = None
    name: str | None = None
    size: int | None = Field(default=None, ge=0)

    def to_record(self) -> Attachment:
        return Attachment(url=self.url, type=self.type, name=self.name, size=self.size)


class ReadReceiptPayload(WireModel):
    user: int
    read_at: datetime


class ReactionPayload(WireModel):
    user: int
    emoji: str


class ReplyPreview(WireModel):
    id: int = Field(alias="_id")
    content: str
    sender: SenderPayload
    deleted: bool = False


class MessagePayload(WireModel):
    """Canonical room message as seen by clients."""

    id: int = Field(alias="_id")
    room_id: int
    sender: SenderPayload
    content: str
    type: MessageType
    attachments: list[AttachmentPayload] = Field(default_factory=list)
    reply_to: ReplyPreview | None = None
    created_at: datetime
    read_by: list[ReadReceiptPayload] = Field(default_factory=list)
    reactions: list[ReactionPayload] = Field(default_factory=list)
    deleted: bool = False
    edited: bool = False
    edited_at: datetime | None = None


class DirectMessagePayload(WireModel):
    id: int = Field(alias="_id")
    conversation_id: str
    sender: SenderPayload
    recipient_id: int
    content: str
    type: MessageType
    created_at: datetime
    read: bool = False
    read_at: datetime | None = None


def sender_payload(user_id: int, profile: UserProfile | None) -> SenderPayload:
    name = profile.name if profile is not None else f"user-{user_id}"
    return SenderPayload(id=user_id, name=name)


def reactions_payload(record: MessageRecord) -> list[dict[str, Any]]:
    return [
        ReactionPayload(user=reaction.user_id, emoji=reaction.emoji).to_wire()
        for reaction in record.reactions
    ]


def serialize_message(
    record: MessageRecord,
    sender: UserProfile | None,
    *,
    reply_to: MessageRecord | None = None,
    reply_sender: UserProfile | None = None,
) -> dict[str, Any]:
    """Hydrate a stored message into its wire payload.

    Deleted messages keep their id, ordering timestamp and receipts but expose
    the placeholder text and no attachments.
    """

    preview = None
    if reply_to is not None:
        preview = ReplyPreview(
            id=reply_to.id,
            content=reply_to.visible_content,
            sender=sender_payload(reply_to.sender_id, reply_sender),
            deleted=reply_to.deleted,
        )
    payload = MessagePayload(
        id=record.id,
        room_id=record.room_id,
        sender=sender_payload(record.sender_id, sender),
        content=record.visible_content,
        type=record.type,
        attachments=[]
        if record.deleted
        else [
            AttachmentPayload(url=item.url, type=item.type, name=item.name, size=item.size)
            for item in record.attachments
        ],
        reply_to=preview,
        created_at=as_utc(record.created_at),
        read_by=[
            ReadReceiptPayload(user=receipt.user_id, read_at=as_utc(receipt.read_at))
            for receipt in record.read_by
        ],
        reactions=[
            ReactionPayload(user=reaction.user_id, emoji=reaction.emoji)
            for reaction in record.reactions
        ],
        deleted=record.deleted,
        edited=record.edited,
        edited_at=as_utc(record.edited_at),
    )
    return payload.to_wire()


def serialize_direct_message(
    record: DirectMessageRecord, sender: UserProfile | None
) -> dict[str, Any]:
    return DirectMessagePayload(
        id=record.id,
        conversation_id=record.conversation_id,
        sender=sender_payload(record.sender_id, sender),
        recipient_id=record.recipient_id,
        content=DELETED_PLACEHOLDER if record.deleted else record.content,
        type=record.type,
        created_at=as_utc(record.created_at),
        read=record.read,
        read_at=as_utc(record.read_at),
    ).to_wire()


# ---------------------------------------------------------------------------
# Inbound commands
# ---------------------------------------------------------------------------


class AuthenticateCommand(WireModel):
    token: str | None = None


class RoomCommand(WireModel):
    room_id: int


class SendMessageCommand(WireModel):
    room_id: int
    content: str = ""
    type: MessageType = MessageType.TEXT
    attachments: list[AttachmentPayload] = Field(default_factory=list)
    reply_to: int | None = None
    client_id: str | None = Field(default=None, max_length=64)


class TypingCommand(WireModel):
    room_id: int
    is_typing: bool = True


class MarkReadCommand(WireModel):
    room_id: int
    message_ids: list[int] | None = None


class MessageCommand(WireModel):
    message_id: int


class EditMessageCommand(WireModel):
    message_id: int
    content: str


class SetReactionCommand(WireModel):
    message_id: int
    emoji: str | None = Field(default=None, max_length=32)


class BackfillCommand(WireModel):
    room_id: int
    since: datetime | None = None
    since_id: int | None = None


class SendDirectMessageCommand(WireModel):
    recipient_id: int
    content: str
    type: MessageType = MessageType.TEXT
    client_id: str | None = Field(default=None, max_length=64)


class UserStatusCommand(WireModel):
    user_id: int


class EmptyCommand(WireModel):
    pass


COMMAND_MODELS: dict[CommandType, Type[WireModel]] = {
    CommandType.AUTHENTICATE: AuthenticateCommand,
    CommandType.JOIN_ROOM: RoomCommand,
    CommandType.LEAVE_ROOM: RoomCommand,
    CommandType.SEND_MESSAGE: SendMessageCommand,
    CommandType.TYPING: TypingCommand,
    CommandType.MARK_READ: MarkReadCommand,
    CommandType.DELETE_MESSAGE: MessageCommand,
    CommandType.EDIT_MESSAGE: EditMessageCommand,
    CommandType.SET_REACTION: SetReactionCommand,
    CommandType.BACKFILL: BackfillCommand,
    CommandType.SEND_DIRECT_MESSAGE: SendDirectMessageCommand,
    CommandType.GET_ONLINE_USERS: EmptyCommand,
    CommandType.GET_USER_STATUS: UserStatusCommand,
    CommandType.PING: EmptyCommand,
}


def parse_command(frame: Any) -> tuple[CommandType, WireModel]:
    """Validate an inbound ``{"type", "data"}`` frame.

    Raises ValidationError for anything that is not a known, well formed
    command, so handlers never branch on payload shape.
    """

    if not isinstance(frame, dict):
        raise ValidationError("Frame must be a JSON object")
    try:
        command = CommandType(frame.get("type"))
    except ValueError as exc:
        raise ValidationError(f"Unknown command: {frame.get('type')!r}") from exc
    data = frame.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Command data must be a JSON object")
    try:
        return command, COMMAND_MODELS[command].model_validate(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(f"{location}: {first.get('msg')}" if location else first.get("msg")) from exc


__all__ = [
    "AttachmentPayload",
    "AuthenticateCommand",
    "BackfillCommand",
    "COMMAND_MODELS",
    "DirectMessagePayload",
    "EditMessageCommand",
    "EmptyCommand",
    "MarkReadCommand",
    "MessageCommand",
    "MessagePayload",
    "ReactionPayload",
    "RoomCommand",
    "SendDirectMessageCommand",
    "SendMessageCommand",
    "SetReactionCommand",
    "TypingCommand",
    "UserStatusCommand",
    "WireModel",
    "parse_command",
    "reactions_payload",
    "sender_payload",
    "serialize_direct_message",
    "serialize_message",
]
