"""Last seen message positions shared by the push and polling paths."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable


def parse_timestamp(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass(slots=True, frozen=True)
class Position:
    """A point in the (created_at, id) order; id 0 sorts before any message."""

    created_at: datetime
    message_id: int = 0

    def __lt__(self, other: "Position") -> bool:
        return (self.created_at, self.message_id) < (other.created_at, other.message_id)


class DeliveryTracker:
    """Remember which room messages were already handed to listeners.

    A message is accepted at most once, whichever path delivered it first.
    Each room keeps a resume position: the newest point up to which nothing
    is missing. Accepted messages advance it, and so do join acknowledgements
    and completed polls for rooms that stayed quiet.
    """

    def __init__(self, max_seen: int = 5000) -> None:
        self._max_seen = max_seen
        self._seen: "OrderedDict[int, None]" = OrderedDict()
        self._positions: Dict[int, Position] = {}

    def accept(self, message: dict[str, Any]) -> bool:
        """Record *message*; return ``False`` when it was already delivered."""

        message_id = int(message["_id"])
        if message_id in self._seen:
            return False
        self._seen[message_id] = None
        while len(self._seen) > self._max_seen:
            self._seen.popitem(last=False)

        room_id = message.get("roomId")
        created_at = message.get("createdAt")
        if room_id is not None and created_at:
            self.mark(int(room_id), created_at, message_id)
        return True

    def mark(self, room_id: int, created_at: str | datetime, message_id: int = 0) -> None:
        """Move the resume position of *room_id* forward to the given point."""

        position = Position(parse_timestamp(created_at), message_id)
        current = self._positions.get(room_id)
        if current is None or current < position:
            self._positions[room_id] = position

    def position(self, room_id: int) -> Position | None:
        return self._positions.get(room_id)

    def resume_point(self, room_ids: Iterable[int]) -> Position | None:
        """Oldest resume position over *room_ids*, or ``None`` if one is unknown."""

        positions = [self._positions.get(room_id) for room_id in room_ids]
        if not positions or any(position is None for position in positions):
            return None
        return min(positions, key=lambda position: (position.created_at, position.message_id))

    def backfill_request(self, room_id: int) -> dict[str, Any]:
        """Payload of a ``backfill`` command resuming strictly after the resume position."""

        position = self._positions.get(room_id)
        if position is None:
            return {"roomId": room_id}
        return {
            "roomId": room_id,
            "since": position.created_at.isoformat(),
            "sinceId": position.message_id,
        }


__all__ = ["DeliveryTracker", "Position", "parse_timestamp"]
