"""SQLAlchemy implementations of the realtime core's storage collaborators."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from conecta.realtime.errors import MessageNotFoundError
from conecta.realtime.records import (
    Attachment,
    DirectMessageRecord,
    MessageCursor,
    MessageRecord,
    MessageType,
    NewMessage,
    Reaction,
    ReadReceipt,
    RoomRecord,
    UserProfile,
    as_utc,
    conversation_id,
    utcnow,
)

from app.models import ChatMessage, DirectMessage, MessageReaction, MessageReceipt, Room, User

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


# ---------------------------------------------------------------------------
# Row to record conversion
# ---------------------------------------------------------------------------


def _message_record(message: ChatMessage) -> MessageRecord:
    return MessageRecord(
        id=message.id,
        room_id=message.room_id,
        sender_id=message.sender_id,
        content=message.content,
        type=MessageType(message.message_type),
        created_at=as_utc(message.created_at),  # type: ignore[arg-type]
        attachments=[
            Attachment(
                url=item.get("url", ""),
                type=item.get("type"),
                name=item.get("name"),
                size=item.get("size"),
            )
            for item in (message.attachments or [])
        ],
        reply_to_id=message.reply_to_id,
        deleted=message.deleted,
        deleted_at=as_utc(message.deleted_at),
        edited=message.edited,
        edited_at=as_utc(message.edited_at),
        original_content=message.original_content,
        read_by=[
            ReadReceipt(user_id=receipt.user_id, read_at=as_utc(receipt.read_at))  # type: ignore[arg-type]
            for receipt in message.receipts
        ],
        reactions=[
            Reaction(user_id=reaction.user_id, emoji=reaction.emoji)
            for reaction in message.reactions
        ],
    )


def _direct_record(message: DirectMessage) -> DirectMessageRecord:
    return DirectMessageRecord(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        recipient_id=message.recipient_id,
        content=message.content,
        type=MessageType(message.message_type),
        created_at=as_utc(message.created_at),  # type: ignore[arg-type]
        read=message.read,
        read_at=as_utc(message.read_at),
        deleted=message.deleted,
    )


def _room_record(room: Room) -> RoomRecord:
    return RoomRecord(
        id=room.id,
        title=room.title,
        is_active=room.is_active,
        last_activity_at=as_utc(room.last_activity_at),
        updated_at=as_utc(room.updated_at),
    )


def _profile(user: User) -> UserProfile:
    return UserProfile(
        id=user.id,
        name=user.name,
        email=user.email,
        is_online=user.is_online,
        last_seen=as_utc(user.last_seen),
    )


def _with_children():
    return (selectinload(ChatMessage.receipts), selectinload(ChatMessage.reactions))


def _after(column_ts, column_id, position: MessageCursor | datetime):
    if isinstance(position, MessageCursor):
        return or_(
            column_ts > position.created_at,
            and_(column_ts == position.created_at, column_id > position.message_id),
        )
    return column_ts > position


def _before(column_ts, column_id, position: MessageCursor):
    return or_(
        column_ts < position.created_at,
        and_(column_ts == position.created_at, column_id < position.message_id),
    )


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class SqlRoomCatalog:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def room_exists(self, room_id: int) -> bool:
        with self._session_factory() as db:
            room = db.get(Room, room_id)
            return room is not None and room.is_active

    async def touch_activity(self, room_id: int, timestamp: datetime) -> None:
        with self._session_factory() as db:
            db.execute(
                update(Room)
                .where(Room.id == room_id)
                .values(last_activity_at=timestamp, updated_at=utcnow())
            )
            db.commit()

    async def list_rooms(self) -> list[RoomRecord]:
        with self._session_factory() as db:
            rooms = db.execute(
                select(Room).where(Room.is_active.is_(True)).order_by(Room.id)
            ).scalars()
            return [_room_record(room) for room in rooms]

    async def rooms_updated_since(self, since: datetime) -> list[RoomRecord]:
        with self._session_factory() as db:
            rooms = db.execute(
                select(Room)
                .where(Room.is_active.is_(True), Room.updated_at > since)
                .order_by(Room.updated_at, Room.id)
            ).scalars()
            return [_room_record(room) for room in rooms]


class SqlMessageStore:
    """Room and direct message persistence.

    Pages are ordered by ``(created_at, id)`` so equal timestamps never cause
    duplicates or gaps between pages.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    def _load(self, db: Session, message_id: int) -> ChatMessage | None:
        return db.execute(
            select(ChatMessage).where(ChatMessage.id == message_id).options(*_with_children())
        ).scalar_one_or_none()

    def _require(self, db: Session, message_id: int) -> ChatMessage:
        message = self._load(db, message_id)
        if message is None:
            raise MessageNotFoundError(f"Message {message_id} does not exist")
        return message

    async def insert(self, message: NewMessage) -> MessageRecord:
        created_at = utcnow()
        with self._session_factory() as db:
            row = ChatMessage(
                room_id=message.room_id,
                sender_id=message.sender_id,
                content=message.content,
                message_type=message.type,
                reply_to_id=message.reply_to_id,
                attachments=[
                    {"url": item.url, "type": item.type, "name": item.name, "size": item.size}
                    for item in message.attachments
                ],
                created_at=created_at,
            )
            row.receipts.append(MessageReceipt(user_id=message.sender_id, read_at=created_at))
            db.add(row)
            db.commit()
            return _message_record(self._require(db, row.id))

    async def get(self, message_id: int) -> MessageRecord | None:
        with self._session_factory() as db:
            message = self._load(db, message_id)
            return _message_record(message) if message is not None else None

    async def find_by_room(
        self, room_id: int, before: MessageCursor | None, limit: int
    ) -> list[MessageRecord]:
        with self._session_factory() as db:
            stmt = select(ChatMessage).where(ChatMessage.room_id == room_id)
            if before is not None:
                stmt = stmt.where(_before(ChatMessage.created_at, ChatMessage.id, before))
            stmt = (
                stmt.order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
                .limit(limit)
                .options(*_with_children())
            )
            return [_message_record(message) for message in db.execute(stmt).scalars()]

    async def find_since(
        self, room_ids: Sequence[int], since: MessageCursor | datetime, limit: int
    ) -> list[MessageRecord]:
        with self._session_factory() as db:
            stmt = (
                select(ChatMessage)
                .where(
                    ChatMessage.room_id.in_(list(room_ids)),
                    _after(ChatMessage.created_at, ChatMessage.id, since),
                )
                .order_by(ChatMessage.created_at, ChatMessage.id)
                .limit(limit)
                .options(*_with_children())
            )
            return [_message_record(message) for message in db.execute(stmt).scalars()]

    async def update_read_by(
        self,
        room_id: int,
        user_id: int,
        message_ids: Sequence[int] | None,
        timestamp: datetime,
    ) -> list[int]:
        with self._session_factory() as db:
            stmt = select(ChatMessage.id).where(
                ChatMessage.room_id == room_id,
                ~ChatMessage.receipts.any(MessageReceipt.user_id == user_id),
            )
            if message_ids is not None:
                if not message_ids:
                    return []
                stmt = stmt.where(ChatMessage.id.in_(list(message_ids)))
            targets = sorted(db.execute(stmt).scalars())
            for message_id in targets:
                db.add(MessageReceipt(message_id=message_id, user_id=user_id, read_at=timestamp))
            db.commit()
            return targets

    async def set_deleted(self, message_id: int) -> MessageRecord:
        with self._session_factory() as db:
            message = self._require(db, message_id)
            if not message.deleted:
                message.deleted = True
                message.deleted_at = utcnow()
                db.commit()
            return _message_record(self._require(db, message_id))

    async def update_content(self, message_id: int, content: str) -> MessageRecord:
        with self._session_factory() as db:
            message = self._require(db, message_id)
            if message.original_content is None:
                message.original_content = message.content
            message.content = content
            message.edited = True
            message.edited_at = utcnow()
            db.commit()
            return _message_record(self._require(db, message_id))

    async def set_reaction(
        self, message_id: int, user_id: int, emoji: str | None
    ) -> list[Reaction]:
        with self._session_factory() as db:
            message = self._require(db, message_id)
            existing = next(
                (reaction for reaction in message.reactions if reaction.user_id == user_id), None
            )
            if emoji is None:
                if existing is not None:
                    message.reactions.remove(existing)
            elif existing is not None:
                existing.emoji = emoji
            else:
                message.reactions.append(MessageReaction(user_id=user_id, emoji=emoji))
            db.commit()
            return _message_record(self._require(db, message_id)).reactions

    async def unread_count(self, room_id: int, user_id: int) -> int:
        with self._session_factory() as db:
            return db.execute(
                select(func.count(ChatMessage.id)).where(
                    ChatMessage.room_id == room_id,
                    ChatMessage.sender_id != user_id,
                    ChatMessage.deleted.is_(False),
                    ~ChatMessage.receipts.any(MessageReceipt.user_id == user_id),
                )
            ).scalar_one()

    async def insert_direct(
        self, sender_id: int, recipient_id: int, content: str, message_type: str
    ) -> DirectMessageRecord:
        with self._session_factory() as db:
            row = DirectMessage(
                conversation_id=conversation_id(sender_id, recipient_id),
                sender_id=sender_id,
                recipient_id=recipient_id,
                content=content,
                message_type=MessageType(message_type),
                created_at=utcnow(),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return _direct_record(row)

    async def find_direct(
        self, conversation: str, before: MessageCursor | None, limit: int
    ) -> list[DirectMessageRecord]:
        with self._session_factory() as db:
            stmt = select(DirectMessage).where(DirectMessage.conversation_id == conversation)
            if before is not None:
                stmt = stmt.where(_before(DirectMessage.created_at, DirectMessage.id, before))
            stmt = stmt.order_by(DirectMessage.created_at.desc(), DirectMessage.id.desc()).limit(limit)
            return [_direct_record(message) for message in db.execute(stmt).scalars()]

    async def mark_direct_read(
        self, conversation: str, reader_id: int, timestamp: datetime
    ) -> int:
        with self._session_factory() as db:
            result = db.execute(
                update(DirectMessage)
                .where(
                    DirectMessage.conversation_id == conversation,
                    DirectMessage.recipient_id == reader_id,
                    DirectMessage.read.is_(False),
                )
                .values(read=True, read_at=timestamp)
            )
            db.commit()
            return result.rowcount or 0


class SqlUserDirectory:
    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def resolve_profile(self, user_id: int) -> UserProfile | None:
        with self._session_factory() as db:
            user = db.get(User, user_id)
            return _profile(user) if user is not None else None

    async def set_online_status(
        self, user_id: int, is_online: bool, last_seen: datetime
    ) -> None:
        with self._session_factory() as db:
            db.execute(
                update(User)
                .where(User.id == user_id)
                .values(is_online=is_online, last_seen=last_seen)
            )
            db.commit()

    async def status_changes_since(self, since: datetime) -> list[UserProfile]:
        with self._session_factory() as db:
            users = db.execute(
                select(User).where(User.last_seen > since).order_by(User.last_seen, User.id)
            ).scalars()
            return [_profile(user) for user in users]

    async def reset_online_statuses(self) -> int:
        with self._session_factory() as db:
            result = db.execute(
                update(User).where(User.is_online.is_(True)).values(is_online=False)
            )
            db.commit()
            count = result.rowcount or 0
        if count:
            logger.info("Reset stale online flags", extra={"users": count})
        return count


__all__ = ["SqlMessageStore", "SqlRoomCatalog", "SqlUserDirectory"]
