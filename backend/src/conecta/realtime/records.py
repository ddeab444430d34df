"""Plain records exchanged between the core and its storage collaborators."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from .errors import ValidationError


class MessageType(str, Enum):
    """Kinds of chat message."""

    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"


DELETED_PLACEHOLDER = "This message was deleted"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive timestamps coming back from the database."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def conversation_id(first_user_id: int | str, second_user_id: int | str) -> str:
    """Deterministic identifier for the direct conversation between two users."""

    low, high = sorted((str(first_user_id), str(second_user_id)))
    return f"{low}_{high}"


@dataclass(slots=True, frozen=True)
class MessageCursor:
    """Position of a message in the (created_at, id) total order."""

    created_at: datetime
    message_id: int

    def encode(self) -> str:
        created_at = as_utc(self.created_at) or self.created_at
        payload = f"v1|{created_at.isoformat()}|{self.message_id}"
        return base64.urlsafe_b64encode(payload.encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, cursor: str) -> "MessageCursor":
        try:
            raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
            version, timestamp, message_id = raw.split("|", 2)
            if version != "v1":
                raise ValueError("Unsupported cursor version")
            return cls(as_utc(datetime.fromisoformat(timestamp)), int(message_id))  # type: ignore[arg-type]
        except (ValueError, UnicodeDecodeError) as exc:
            raise ValidationError("Invalid cursor") from exc


@dataclass(slots=True)
class Attachment:
    url: str
    type: str | None = None
    name: str | None = None
    size: int | None = None


@dataclass(slots=True)
class ReadReceipt:
    user_id: int
    read_at: datetime


@dataclass(slots=True)
class Reaction:
    user_id: int
    emoji: str


@dataclass(slots=True)
class UserProfile:
    id: int
    name: str
    email: str | None = None
    is_online: bool = False
    last_seen: datetime | None = None


@dataclass(slots=True)
class NewMessage:
    """Validated message about to be persisted."""

    room_id: int
    sender_id: int
    content: str
    type: MessageType = MessageType.TEXT
    attachments: list[Attachment] = field(default_factory=list)
    reply_to_id: int | None = None


@dataclass(slots=True)
class MessageRecord:
    """A persisted room message."""

    id: int
    room_id: int
    sender_id: int
    content: str
    type: MessageType
    created_at: datetime
    attachments: list[Attachment] = field(default_factory=list)
    reply_to_id: int | None = None
    deleted: bool = False
    deleted_at: datetime | None = None
    edited: bool = False
    edited_at: datetime | None = None
    original_content: str | None = None
    read_by: list[ReadReceipt] = field(default_factory=list)
    reactions: list[Reaction] = field(default_factory=list)

    @property
    def cursor(self) -> MessageCursor:
        return MessageCursor(self.created_at, self.id)

    @property
    def visible_content(self) -> str:
        return DELETED_PLACEHOLDER if self.deleted else self.content

    def is_read_by(self, user_id: int) -> bool:
        return any(receipt.user_id == user_id for receipt in self.read_by)


@dataclass(slots=True)
class DirectMessageRecord:
    """A persisted direct (one to one) message."""

    id: int
    conversation_id: str
    sender_id: int
    recipient_id: int
    content: str
    type: MessageType
    created_at: datetime
    read: bool = False
    read_at: datetime | None = None
    deleted: bool = False


@dataclass(slots=True)
class RoomRecord:
    id: int
    title: str
    is_active: bool = True
    last_activity_at: datetime | None = None
    updated_at: datetime | None = None


__all__ = [
    "Attachment",
    "DELETED_PLACEHOLDER",
    "DirectMessageRecord",
    "MessageCursor",
    "MessageRecord",
    "MessageType",
    "NewMessage",
    "Reaction",
    "ReadReceipt",
    "RoomRecord",
    "UserProfile",
    "as_utc",
    "conversation_id",
    "utcnow",
]
