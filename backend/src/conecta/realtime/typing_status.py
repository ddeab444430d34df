"""Per-room typing indicators with automatic expiry."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Set, Tuple

from app.monitoring.metrics import realtime_typing_expired_total

from .events import EventType, build_envelope
from .rooms import RoomMembershipTracker
from .sessions import Session

logger = logging.getLogger(__name__)

TypingKey = Tuple[int, int]


@dataclass(slots=True)
class _TypingEntry:
    generation: int
    timer: asyncio.TimerHandle | None = None


class TypingIndicatorAggregator:
    """Track who is typing in which room.

    Only the start of a typing streak is broadcast; refreshes inside the TTL
    window just push the expiry back. An explicit stop, TTL expiry or leaving
    the room clears the entry and broadcasts ``isTyping=false`` once.
    """

    def __init__(self, rooms: RoomMembershipTracker, *, ttl_seconds: float = 5.0) -> None:
        self._rooms = rooms
        self._ttl = ttl_seconds
        self._entries: Dict[TypingKey, _TypingEntry] = {}
        self._generation = 0
        self._tasks: Set[asyncio.Task[None]] = set()
        self._lock = asyncio.Lock()
        rooms.typing_source = self.typing_users
        rooms.add_leave_hook(self._on_leave)

    @property
    def ttl(self) -> float:
        return self._ttl

    def typing_users(self, room_id: int) -> list[int]:
        return sorted(user_id for (room, user_id) in self._entries if room == room_id)

    def is_typing(self, room_id: int, user_id: int) -> bool:
        return (room_id, user_id) in self._entries

    async def set_typing(self, room_id: int, user_id: int, is_typing: bool) -> bool:
        """Update the typing state; return True when an event was broadcast."""

        async with self._lock:
            key = (room_id, user_id)
            entry = self._entries.get(key)
            if not is_typing:
                if entry is None:
                    return False
                self._drop(key)
                await self._broadcast(room_id, user_id, False)
                return True

            self._generation += 1
            if entry is not None:
                if entry.timer is not None:
                    entry.timer.cancel()
                entry.generation = self._generation
                entry.timer = self._schedule(key, entry.generation)
                return False

            entry = _TypingEntry(generation=self._generation)
            entry.timer = self._schedule(key, entry.generation)
            self._entries[key] = entry
            await self._broadcast(room_id, user_id, True)
            return True

    async def clear_user(self, room_id: int, user_id: int) -> bool:
        return await self.set_typing(room_id, user_id, False)

    async def close(self) -> None:
        async with self._lock:
            for key in list(self._entries):
                self._drop(key)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _drop(self, key: TypingKey) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()

    def _schedule(self, key: TypingKey, generation: int) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(self._ttl, self._start_expiry, key, generation)

    def _start_expiry(self, key: TypingKey, generation: int) -> None:
        task = asyncio.get_running_loop().create_task(self._expire(key, generation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _expire(self, key: TypingKey, generation: int) -> None:
        async with self._lock:
            entry = self._entries.get(key)
            # A refresh or stop after this timer fired supersedes it.
            if entry is None or entry.generation != generation:
                return
            self._entries.pop(key, None)
            realtime_typing_expired_total.inc()
            logger.debug("Typing indicator expired", extra={"room_id": key[0], "user_id": key[1]})
            await self._broadcast(key[0], key[1], False)

    async def _broadcast(self, room_id: int, user_id: int, is_typing: bool) -> None:
        await self._rooms.broadcast(
            room_id,
            build_envelope(
                EventType.USER_TYPING,
                {"roomId": room_id, "userId": user_id, "isTyping": is_typing},
            ),
            exclude=self._rooms.registry.sessions_for_user(user_id),
        )

    async def _on_leave(self, session: Session, room_id: int) -> None:
        if session.user_id is None:
            return
        if self._rooms.user_in_room(room_id, session.user_id):
            return
        await self.clear_user(room_id, session.user_id)


__all__ = ["TypingIndicatorAggregator"]
