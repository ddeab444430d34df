"""Pull endpoints backing the fallback polling transport.

Each endpoint returns the events of the window ``(since, until]`` using the
same event names and payloads as the push channel. Clients pass ``until``
back as the next ``since``. The message poll also returns a ``cursor``: the
``(createdAt, id)`` position of the last message served. Passing it back
resumes strictly after that message, even when several share a timestamp.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Query

from conecta.realtime.events import EventType
from conecta.realtime.hub import RealtimeHub
from conecta.realtime.managers import get_hub
from conecta.realtime.records import MessageCursor, as_utc, utcnow

from app.api.deps import get_current_user
from app.config import get_settings
from app.models import User
from app.monitoring.metrics import polling_requests_total
from app.schemas import PollingResponse, PollingUpdate

router = APIRouter(tags=["polling"])

settings = get_settings()

logger = logging.getLogger(__name__)


def _window_start(since: datetime | None) -> datetime:
    if since is None:
        return utcnow() - timedelta(seconds=settings.polling_default_window_seconds)
    return as_utc(since) or since


def _created_at(message: dict) -> datetime:
    return datetime.fromisoformat(message["createdAt"].replace("Z", "+00:00"))


def _parse_room_ids(raw: str | None) -> list[int] | None:
    if not raw:
        return None
    room_ids: list[int] = []
    for item in raw.split(","):
        item = item.strip()
        if item.isdigit():
            room_ids.append(int(item))
    return room_ids


@router.get("/chat/updates", response_model=PollingResponse)
async def poll_messages(
    since: datetime | None = Query(default=None),
    cursor: str | None = Query(default=None, description="Position returned by the previous poll"),
    rooms: str | None = Query(default=None, description="Comma separated room ids"),
    limit: int = Query(default=settings.chat_history_max_limit, ge=1, le=settings.chat_history_max_limit),
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> PollingResponse:
    """New room messages positioned after *cursor*, or created from *since* on."""

    polling_requests_total.labels("messages").inc()
    position = MessageCursor.decode(cursor) if cursor else MessageCursor(_window_start(since), 0)
    until = utcnow()
    room_ids = _parse_room_ids(rooms)
    if room_ids is None:
        room_ids = [room.id for room in await hub.catalog.list_rooms()]
    messages = await hub.dispatch.updates_since(room_ids, position, limit)
    if messages:
        last = messages[-1]
        position = MessageCursor(_created_at(last), int(last["_id"]))
        if len(messages) >= limit:
            until = position.created_at
    logger.debug(
        "Served message poll",
        extra={"user_id": current_user.id, "rooms": room_ids, "count": len(messages)},
    )
    return PollingResponse(
        updates=[
            PollingUpdate(
                event=EventType.NEW_MESSAGE.value,
                data={"roomId": message["roomId"], "message": message, "clientId": None},
            )
            for message in messages
        ],
        until=until,
        cursor=position.encode(),
    )


@router.get("/rooms/updates", response_model=PollingResponse)
async def poll_rooms(
    since: datetime | None = Query(default=None),
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> PollingResponse:
    """Rooms whose metadata or activity changed after *since*."""

    polling_requests_total.labels("rooms").inc()
    until = utcnow()
    rooms = await hub.catalog.rooms_updated_since(_window_start(since))
    return PollingResponse(
        updates=[
            PollingUpdate(
                event=EventType.ROOM_UPDATE.value,
                data={
                    "roomId": room.id,
                    "title": room.title,
                    "lastActivityAt": room.last_activity_at.isoformat() if room.last_activity_at else None,
                    "onlineUsers": hub.rooms.online_users(room.id),
                },
            )
            for room in rooms
        ],
        until=until,
    )


@router.get("/users/notifications", response_model=PollingResponse)
async def poll_presence(
    since: datetime | None = Query(default=None),
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> PollingResponse:
    """Presence transitions recorded after *since*."""

    polling_requests_total.labels("presence").inc()
    until = utcnow()
    changes = hub.presence.changes_since(_window_start(since))
    return PollingResponse(
        updates=[
            PollingUpdate(event=EventType.USER_STATUS_UPDATE.value, data=change.to_payload())
            for change in changes
            if change.at <= until
        ],
        until=until,
    )
