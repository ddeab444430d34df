"""Collaborator protocols consumed by the realtime core."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, Sequence

from .records import (
    DirectMessageRecord,
    MessageCursor,
    MessageRecord,
    NewMessage,
    Reaction,
    RoomRecord,
    UserProfile,
)


class SessionTransport(Protocol):
    """Anything able to push a JSON frame to one connected client."""

    async def send_json(self, data: dict[str, Any]) -> None:
        """Send a frame; raise when the connection is gone."""


class RoomCatalog(Protocol):
    async def room_exists(self, room_id: int) -> bool:
        """Return True for an existing, active room."""

    async def touch_activity(self, room_id: int, timestamp: datetime) -> None:
        """Record the last activity timestamp of a room."""

    async def list_rooms(self) -> list[RoomRecord]:
        """Return every active room."""

    async def rooms_updated_since(self, since: datetime) -> list[RoomRecord]:
        """Return active rooms updated strictly after *since*."""


class MessageStore(Protocol):
    async def insert(self, message: NewMessage) -> MessageRecord:
        """Persist a message, assigning id and creation timestamp."""

    async def get(self, message_id: int) -> MessageRecord | None:
        """Fetch a single message."""

    async def find_by_room(
        self, room_id: int, before: MessageCursor | None, limit: int
    ) -> list[MessageRecord]:
        """Return up to *limit* messages older than *before*, newest first."""

    async def find_since(
        self, room_ids: Sequence[int], since: MessageCursor | datetime, limit: int
    ) -> list[MessageRecord]:
        """Return messages strictly after *since*, oldest first."""

    async def update_read_by(
        self,
        room_id: int,
        user_id: int,
        message_ids: Sequence[int] | None,
        timestamp: datetime,
    ) -> list[int]:
        """Add a receipt for *user_id*; return the ids that gained one."""

    async def set_deleted(self, message_id: int) -> MessageRecord:
        """Soft delete a message and return its new state."""

    async def update_content(self, message_id: int, content: str) -> MessageRecord:
        """Replace the content, keeping the original text."""

    async def set_reaction(
        self, message_id: int, user_id: int, emoji: str | None
    ) -> list[Reaction]:
        """Replace or clear the reaction of *user_id*; return all reactions."""

    async def unread_count(self, room_id: int, user_id: int) -> int:
        """Count messages of other users not yet read by *user_id*."""

    async def insert_direct(
        self, sender_id: int, recipient_id: int, content: str, message_type: str
    ) -> DirectMessageRecord:
        """Persist a direct message."""

    async def find_direct(
        self, conversation_id: str, before: MessageCursor | None, limit: int
    ) -> list[DirectMessageRecord]:
        """Return direct messages of a conversation, newest first."""

    async def mark_direct_read(
        self, conversation_id: str, reader_id: int, timestamp: datetime
    ) -> int:
        """Mark messages addressed to *reader_id* as read; return the count."""


class UserDirectory(Protocol):
    async def resolve_profile(self, user_id: int) -> UserProfile | None:
        """Return the public profile of a user."""

    async def set_online_status(
        self, user_id: int, is_online: bool, last_seen: datetime
    ) -> None:
        """Mirror presence into persistent storage."""

    async def status_changes_since(self, since: datetime) -> list[UserProfile]:
        """Return users whose last_seen moved after *since*."""

    async def reset_online_statuses(self) -> int:
        """Mark every user offline; return the number of rows changed."""


class CredentialVerifier(Protocol):
    def verify(self, token: str) -> int:
        """Return the user id for *token* or raise AuthenticationError."""


__all__ = [
    "CredentialVerifier",
    "MessageStore",
    "RoomCatalog",
    "SessionTransport",
    "UserDirectory",
]
