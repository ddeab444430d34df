"""Validation, persistence and room fan-out of chat messages."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, Sequence, Set

from app.monitoring.metrics import realtime_messages_total

from .errors import (
    DeliveryPartialFailure,
    MessageNotFoundError,
    PermissionDeniedError,
    RoomNotFoundError,
    ValidationError,
)
from .events import EventType, build_envelope
from .interfaces import MessageStore, RoomCatalog, UserDirectory
from .records import (
    Attachment,
    MessageCursor,
    MessageRecord,
    MessageType,
    NewMessage,
    UserProfile,
    as_utc,
    conversation_id,
    utcnow,
)
from .protocol import reactions_payload, serialize_direct_message, serialize_message
from .rooms import RoomMembershipTracker
from .sessions import SessionRegistry

logger = logging.getLogger(__name__)


class MessageDispatchPipeline:
    """Validate, persist and deliver chat messages.

    Every mutation of a room's messages holds that room's lock across the
    store call and the fan-out, so sessions observe messages in the order
    they were persisted. Nothing is persisted when validation fails.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        rooms: RoomMembershipTracker,
        catalog: RoomCatalog,
        store: MessageStore,
        directory: UserDirectory,
        *,
        max_length: int = 1000,
        history_default_limit: int = 50,
        history_max_limit: int = 100,
    ) -> None:
        self._registry = registry
        self._rooms = rooms
        self._catalog = catalog
        self._store = store
        self._directory = directory
        self._max_length = max_length
        self._history_default_limit = history_default_limit
        self._history_max_limit = history_max_limit
        self._room_locks: Dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._background: Set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Validation and hydration
    # ------------------------------------------------------------------

    def _clean_content(self, content: str | None, *, allow_empty: bool = False) -> str:
        text = (content or "").strip()
        if not text and not allow_empty:
            raise ValidationError("Message content must not be empty")
        if len(text) > self._max_length:
            raise ValidationError(
                f"Message content exceeds {self._max_length} characters"
            )
        return text

    @staticmethod
    def _message_type(value: MessageType | str) -> MessageType:
        try:
            return MessageType(value)
        except ValueError as exc:
            raise ValidationError(f"Unsupported message type: {value!r}") from exc

    async def _require_room(self, room_id: int) -> None:
        if not await self._catalog.room_exists(room_id):
            raise RoomNotFoundError(f"Room {room_id} does not exist")

    async def _require_message(self, message_id: int) -> MessageRecord:
        record = await self._store.get(message_id)
        if record is None:
            raise MessageNotFoundError(f"Message {message_id} does not exist")
        return record

    async def _profiles(self, user_ids: Iterable[int]) -> dict[int, UserProfile | None]:
        return {user_id: await self._directory.resolve_profile(user_id) for user_id in set(user_ids)}

    async def hydrate(self, records: Sequence[MessageRecord]) -> list[dict[str, Any]]:
        """Resolve sender profiles and reply previews into wire payloads."""

        reply_ids = {record.reply_to_id for record in records if record.reply_to_id}
        replies: dict[int, MessageRecord] = {}
        for reply_id in reply_ids:
            reply = await self._store.get(reply_id)
            if reply is not None:
                replies[reply_id] = reply
        profiles = await self._profiles(
            [record.sender_id for record in records]
            + [reply.sender_id for reply in replies.values()]
        )
        payloads = []
        for record in records:
            reply = replies.get(record.reply_to_id) if record.reply_to_id else None
            payloads.append(
                serialize_message(
                    record,
                    profiles.get(record.sender_id),
                    reply_to=reply,
                    reply_sender=profiles.get(reply.sender_id) if reply else None,
                )
            )
        return payloads

    # ------------------------------------------------------------------
    # Room messages
    # ------------------------------------------------------------------

    async def send_message(
        self,
        sender_id: int,
        room_id: int,
        content: str,
        message_type: MessageType | str = MessageType.TEXT,
        *,
        attachments: Sequence[Attachment] | None = None,
        reply_to: int | None = None,
        client_id: str | None = None,
    ) -> dict[str, Any]:
        """Persist a message and deliver it to the room and the sender's devices."""

        attachments = list(attachments or ())
        kind = self._message_type(message_type)
        text = self._clean_content(content, allow_empty=bool(attachments) and kind != MessageType.TEXT)
        await self._require_room(room_id)
        if reply_to is not None:
            parent = await self._store.get(reply_to)
            if parent is None or parent.room_id != room_id:
                raise ValidationError("Reply target is not a message of this room")

        async with self._room_locks[room_id]:
            record = await self._store.insert(
                NewMessage(
                    room_id=room_id,
                    sender_id=sender_id,
                    content=text,
                    type=kind,
                    attachments=attachments,
                    reply_to_id=reply_to,
                )
            )
            realtime_messages_total.labels("room").inc()
            (payload,) = await self.hydrate([record])
            await self._rooms.broadcast(
                room_id,
                build_envelope(
                    EventType.NEW_MESSAGE,
                    {"roomId": room_id, "message": payload, "clientId": client_id},
                ),
                extra_sessions=self._registry.sessions_for_user(sender_id),
            )

        self._spawn(self._touch_activity(room_id, record.created_at))
        logger.debug(
            "Dispatched message",
            extra={"room_id": room_id, "message_id": record.id, "sender_id": sender_id},
        )
        return payload

    async def mark_read(
        self,
        room_id: int,
        user_id: int,
        message_ids: Sequence[int] | None = None,
    ) -> list[int]:
        """Add read receipts; without ids every unread message of the room is marked."""

        await self._require_room(room_id)
        timestamp = utcnow()
        async with self._room_locks[room_id]:
            updated = await self._store.update_read_by(
                room_id, user_id, list(message_ids) if message_ids is not None else None, timestamp
            )
            if updated:
                await self._rooms.broadcast(
                    room_id,
                    build_envelope(
                        EventType.MESSAGES_READ,
                        {
                            "roomId": room_id,
                            "userId": user_id,
                            "messageIds": updated,
                            "readAt": timestamp.isoformat(),
                        },
                    ),
                    extra_sessions=self._registry.sessions_for_user(user_id),
                )
        return updated

    async def delete_message(self, message_id: int, user_id: int) -> dict[str, Any]:
        """Soft delete a message of *user_id*; deleting twice is harmless."""

        record = await self._require_message(message_id)
        if record.sender_id != user_id:
            raise PermissionDeniedError("Only the sender can delete this message")
        if record.deleted:
            (payload,) = await self.hydrate([record])
            return payload

        async with self._room_locks[record.room_id]:
            record = await self._store.set_deleted(message_id)
            (payload,) = await self.hydrate([record])
            await self._rooms.broadcast(
                record.room_id,
                build_envelope(
                    EventType.MESSAGE_DELETED,
                    {"roomId": record.room_id, "messageId": record.id, "message": payload},
                ),
                extra_sessions=self._registry.sessions_for_user(user_id),
            )
        return payload

    async def edit_message(self, message_id: int, user_id: int, content: str) -> dict[str, Any]:
        text = self._clean_content(content)
        record = await self._require_message(message_id)
        if record.sender_id != user_id:
            raise PermissionDeniedError("Only the sender can edit this message")
        if record.deleted:
            raise ValidationError("Deleted messages cannot be edited")

        async with self._room_locks[record.room_id]:
            record = await self._store.update_content(message_id, text)
            (payload,) = await self.hydrate([record])
            await self._rooms.broadcast(
                record.room_id,
                build_envelope(
                    EventType.MESSAGE_EDITED,
                    {"roomId": record.room_id, "messageId": record.id, "message": payload},
                ),
                extra_sessions=self._registry.sessions_for_user(user_id),
            )
        return payload

    async def set_reaction(
        self, message_id: int, user_id: int, emoji: str | None
    ) -> list[dict[str, Any]]:
        """Replace or clear the single reaction of *user_id* on a message."""

        emoji = (emoji or "").strip() or None
        record = await self._require_message(message_id)
        if record.deleted:
            raise ValidationError("Deleted messages cannot be reacted to")

        async with self._room_locks[record.room_id]:
            record.reactions = await self._store.set_reaction(message_id, user_id, emoji)
            reactions = reactions_payload(record)
            await self._rooms.broadcast(
                record.room_id,
                build_envelope(
                    EventType.MESSAGE_REACTION,
                    {"roomId": record.room_id, "messageId": record.id, "reactions": reactions},
                ),
                extra_sessions=self._registry.sessions_for_user(user_id),
            )
        return reactions

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _limit(self, limit: int | None) -> int:
        if limit is None:
            return self._history_default_limit
        return max(1, min(int(limit), self._history_max_limit))

    async def history(
        self, room_id: int, cursor: str | None = None, limit: int | None = None
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Return one page of messages, newest first, and the next page cursor."""

        await self._require_room(room_id)
        before = MessageCursor.decode(cursor) if cursor else None
        page_size = self._limit(limit)
        records = await self._store.find_by_room(room_id, before, page_size + 1)
        has_more = len(records) > page_size
        records = records[:page_size]
        next_cursor = records[-1].cursor.encode() if has_more and records else None
        return await self.hydrate(records), next_cursor

    async def backfill(
        self,
        room_id: int,
        since: datetime | None = None,
        since_id: int | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Messages strictly after the given position, oldest first.

        Without a position the most recent page is returned in ascending order.
        """

        await self._require_room(room_id)
        page_size = self._limit(limit)
        if since is None:
            records = await self._store.find_by_room(room_id, None, page_size)
            records.reverse()
        else:
            since = as_utc(since) or since
            position: MessageCursor | datetime = (
                MessageCursor(since, since_id) if since_id is not None else since
            )
            records = await self._store.find_since([room_id], position, page_size)
        return await self.hydrate(records)

    async def updates_since(
        self,
        room_ids: Sequence[int],
        since: MessageCursor | datetime,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Messages of *room_ids* after *since*, oldest first."""

        if not room_ids:
            return []
        if isinstance(since, datetime):
            since = as_utc(since) or since
        records = await self._store.find_since(list(room_ids), since, self._limit(limit))
        return await self.hydrate(records)

    # ------------------------------------------------------------------
    # Direct messages
    # ------------------------------------------------------------------

    async def send_direct_message(
        self,
        sender_id: int,
        recipient_id: int,
        content: str,
        message_type: MessageType | str = MessageType.TEXT,
        *,
        client_id: str | None = None,
    ) -> dict[str, Any]:
        kind = self._message_type(message_type)
        text = self._clean_content(content)
        if recipient_id == sender_id:
            raise ValidationError("Cannot send a direct message to yourself")
        if await self._directory.resolve_profile(recipient_id) is None:
            raise ValidationError(f"User {recipient_id} does not exist")

        record = await self._store.insert_direct(sender_id, recipient_id, text, kind.value)
        realtime_messages_total.labels("direct").inc()
        payload = serialize_direct_message(record, await self._directory.resolve_profile(sender_id))
        targets = self._registry.sessions_for_user(sender_id) | self._registry.sessions_for_user(recipient_id)
        try:
            await self._registry.deliver(
                targets,
                build_envelope(EventType.PRIVATE_MESSAGE, {"message": payload, "clientId": client_id}),
            )
        except DeliveryPartialFailure as exc:
            logger.warning(
                "Direct message fan-out partially failed",
                extra={"message_id": record.id, "failed_sessions": exc.failed},
            )
        return payload

    async def direct_history(
        self,
        user_id: int,
        other_user_id: int,
        cursor: str | None = None,
        limit: int | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        before = MessageCursor.decode(cursor) if cursor else None
        page_size = self._limit(limit)
        records = await self._store.find_direct(
            conversation_id(user_id, other_user_id), before, page_size + 1
        )
        has_more = len(records) > page_size
        records = records[:page_size]
        profiles = await self._profiles(record.sender_id for record in records)
        items = [serialize_direct_message(record, profiles.get(record.sender_id)) for record in records]
        next_cursor = None
        if has_more and records:
            next_cursor = MessageCursor(records[-1].created_at, records[-1].id).encode()
        return items, next_cursor

    async def mark_conversation_read(self, reader_id: int, other_user_id: int) -> int:
        return await self._store.mark_direct_read(
            conversation_id(reader_id, other_user_id), reader_id, utcnow()
        )

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _touch_activity(self, room_id: int, timestamp: datetime) -> None:
        try:
            await self._catalog.touch_activity(room_id, timestamp)
        except Exception:
            logger.warning(
                "Failed to update room activity",
                extra={"room_id": room_id},
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )

    async def drain(self) -> None:
        """Wait for pending background work (activity touches)."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)


__all__ = ["MessageDispatchPipeline"]
