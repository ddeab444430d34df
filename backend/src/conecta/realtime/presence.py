"""Online presence derived from the session registry."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, Dict, Set

from .events import EventEmitter, EventType
from .interfaces import UserDirectory
from .records import as_utc
from .sessions import PRESENCE_OFFLINE, PRESENCE_ONLINE, SessionRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class PresenceChange:
    user_id: int
    is_online: bool
    at: datetime

    def to_payload(self) -> dict[str, object]:
        return {
            "userId": self.user_id,
            "isOnline": self.is_online,
            "lastSeen": self.at.isoformat(),
        }


class PresenceTracker:
    """Read model over the registry's presence transitions.

    State only changes in reaction to ``presence_online``/``presence_offline``.
    Each transition is re-emitted as ``user_status_update`` on :attr:`events`
    and mirrored to the user directory best effort.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        directory: UserDirectory | None = None,
        history_size: int = 1000,
    ) -> None:
        self._registry = registry
        self._directory = directory
        self._online: Set[int] = set()
        self._last_seen: Dict[int, datetime] = {}
        self._changes: Deque[PresenceChange] = deque(maxlen=history_size)
        self.events = EventEmitter()
        registry.events.on(PRESENCE_ONLINE, self._on_online)
        registry.events.on(PRESENCE_OFFLINE, self._on_offline)

    def is_online(self, user_id: int) -> bool:
        return user_id in self._online

    def last_seen(self, user_id: int) -> datetime | None:
        return self._last_seen.get(user_id)

    def online_users(self) -> list[int]:
        return sorted(self._online)

    def status(self, user_id: int) -> dict[str, object]:
        last_seen = self._last_seen.get(user_id)
        return {
            "userId": user_id,
            "isOnline": user_id in self._online,
            "lastSeen": last_seen.isoformat() if last_seen else None,
        }

    def changes_since(self, since: datetime) -> list[PresenceChange]:
        """Transitions recorded strictly after *since*, oldest first."""

        since = as_utc(since) or since
        return [change for change in self._changes if change.at > since]

    async def _on_online(self, user_id: int, at: datetime) -> None:
        self._online.add(user_id)
        self._last_seen[user_id] = at
        await self._record(PresenceChange(user_id, True, at))

    async def _on_offline(self, user_id: int, at: datetime) -> None:
        self._online.discard(user_id)
        self._last_seen[user_id] = at
        await self._record(PresenceChange(user_id, False, at))

    async def _record(self, change: PresenceChange) -> None:
        self._changes.append(change)
        logger.info(
            "Presence changed",
            extra={"user_id": change.user_id, "is_online": change.is_online},
        )
        await self.events.emit(EventType.USER_STATUS_UPDATE, change)
        if self._directory is None:
            return
        try:
            await self._directory.set_online_status(change.user_id, change.is_online, change.at)
        except Exception:
            logger.warning(
                "Failed to persist presence",
                extra={"user_id": change.user_id},
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )


__all__ = ["PresenceChange", "PresenceTracker"]
