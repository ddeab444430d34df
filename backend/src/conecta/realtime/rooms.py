"""Room membership tracking and room scoped fan-out."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Set

from .errors import DeliveryPartialFailure, RoomNotFoundError
from .events import EventType, build_envelope
from .interfaces import RoomCatalog
from .records import utcnow
from .sessions import Session, SessionRegistry

logger = logging.getLogger(__name__)

LeaveHook = Callable[[Session, int], Awaitable[None]]
TypingSource = Callable[[int], list[int]]


class RoomMembershipTracker:
    """Map room ids to the sessions currently subscribed to them.

    A session is a member of a room iff it joined and has not left or
    disconnected since. Rooms without members are dropped from the map.
    """

    def __init__(self, registry: SessionRegistry, catalog: RoomCatalog) -> None:
        self._registry = registry
        self._catalog = catalog
        self._members: Dict[int, Set[str]] = {}
        self._lock = asyncio.Lock()
        self._leave_hooks: list[LeaveHook] = []
        self.typing_source: TypingSource | None = None
        registry.add_cleanup_hook(self.leave_all)

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def add_leave_hook(self, hook: LeaveHook) -> None:
        self._leave_hooks.append(hook)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def members_of(self, room_id: int) -> set[str]:
        return set(self._members.get(room_id, ()))

    def online_users(self, room_id: int) -> list[int]:
        return sorted(self._registry.users_for_sessions(self._members.get(room_id, ())))

    def user_in_room(self, room_id: int, user_id: int) -> bool:
        members = self._members.get(room_id, ())
        return any(session_id in members for session_id in self._registry.sessions_for_user(user_id))

    def snapshot(self, room_id: int) -> dict[str, Any]:
        online = self.online_users(room_id)
        typing = self.typing_source(room_id) if self.typing_source is not None else []
        return {
            "roomId": room_id,
            "memberCount": len(online),
            "onlineUsers": online,
            "typing": typing,
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def join(self, session_id: str, room_id: int) -> dict[str, Any]:
        """Subscribe a session to a room and return the membership snapshot.

        Joining twice is a no-op apart from resending the snapshot. The
        snapshot carries ``joinedAt``, a server timestamp taken before the
        subscription; messages created from then on reach the session live or
        through backfill from that point.
        """

        session = self._registry.get(session_id)
        if session is None:
            raise KeyError(session_id)
        if not await self._catalog.room_exists(room_id):
            raise RoomNotFoundError(f"Room {room_id} does not exist")

        joined_at = utcnow()
        async with self._lock:
            members = self._members.setdefault(room_id, set())
            added = session_id not in members
            members.add(session_id)
            session.rooms.add(room_id)

        snapshot = {**self.snapshot(room_id), "joinedAt": joined_at.isoformat()}
        await self._registry.send(session_id, build_envelope(EventType.ROOM_JOINED, snapshot))
        if added:
            logger.debug(
                "Session joined room",
                extra={"session_id": session_id, "room_id": room_id, "user_id": session.user_id},
            )
            await self.broadcast(
                room_id,
                build_envelope(
                    EventType.USER_JOINED_ROOM,
                    {
                        "roomId": room_id,
                        "userId": session.user_id,
                        "memberCount": snapshot["memberCount"],
                    },
                ),
                exclude=[session_id],
            )
        return snapshot

    async def leave(self, session_id: str, room_id: int) -> bool:
        """Unsubscribe a session; leaving a room it is not in is a no-op."""

        session = self._registry.get(session_id)
        async with self._lock:
            members = self._members.get(room_id)
            if not members or session_id not in members:
                return False
            members.discard(session_id)
            if not members:
                self._members.pop(room_id, None)
            if session is not None:
                session.rooms.discard(room_id)

        if session is not None:
            for hook in self._leave_hooks:
                try:
                    await hook(session, room_id)
                except Exception:
                    logger.exception(
                        "Room leave hook failed",
                        extra={"session_id": session_id, "room_id": room_id},
                    )

        await self.broadcast(
            room_id,
            build_envelope(
                EventType.USER_LEFT_ROOM,
                {
                    "roomId": room_id,
                    "userId": session.user_id if session is not None else None,
                    "memberCount": len(self.online_users(room_id)),
                },
            ),
        )
        return True

    async def leave_all(self, session: Session) -> None:
        for room_id in sorted(session.rooms):
            await self.leave(session.id, room_id)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def broadcast(
        self,
        room_id: int,
        payload: dict[str, Any],
        *,
        exclude: Iterable[str] | None = None,
        extra_sessions: Iterable[str] = (),
    ) -> int:
        """Deliver *payload* to the room's sessions plus *extra_sessions*.

        Unreachable sessions are logged and skipped; they catch up through
        backfill when they reconnect.
        """

        targets = self.members_of(room_id) | set(extra_sessions)
        try:
            return await self._registry.deliver(targets, payload, exclude=exclude)
        except DeliveryPartialFailure as exc:
            logger.warning(
                "Room fan-out partially failed",
                extra={
                    "room_id": room_id,
                    "event": payload.get("type"),
                    "failed_sessions": exc.failed,
                    "delivered": exc.delivered,
                },
            )
            return exc.delivered


__all__ = ["RoomMembershipTracker"]
