"""HTTP endpoints for room chat, routed through the realtime pipeline."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from conecta.realtime.errors import RoomNotFoundError
from conecta.realtime.hub import RealtimeHub
from conecta.realtime.managers import get_hub

from app.api.deps import get_current_user
from app.config import get_settings
from app.models import User
from app.schemas import (
    EditMessageRequest,
    MarkReadRequest,
    MarkReadResponse,
    MessagePage,
    OnlineUsersResponse,
    ReactionRequest,
    ReactionResponse,
    RoomSummary,
    SendMessageRequest,
)

router = APIRouter(prefix="/chat", tags=["chat"])

settings = get_settings()


@router.get("/rooms", response_model=list[RoomSummary])
async def list_rooms(
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> list[RoomSummary]:
    """Active rooms with unread counters and the latest message."""

    summaries: list[RoomSummary] = []
    for room in await hub.catalog.list_rooms():
        items, _ = await hub.dispatch.history(room.id, None, 1)
        summaries.append(
            RoomSummary(
                id=room.id,
                title=room.title,
                last_activity_at=room.last_activity_at,
                unread_count=await hub.store.unread_count(room.id, current_user.id),
                online_count=len(hub.rooms.online_users(room.id)),
                last_message=items[0] if items else None,
            )
        )
    return summaries


@router.get("/rooms/{room_id}/messages", response_model=MessagePage)
async def room_history(
    room_id: int,
    cursor: str | None = Query(default=None),
    limit: int = Query(default=settings.chat_history_default_limit, ge=1, le=settings.chat_history_max_limit),
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> MessagePage:
    items, next_cursor = await hub.dispatch.history(room_id, cursor, limit)
    return MessagePage(items=items, next_cursor=next_cursor)


@router.post("/rooms/{room_id}/messages", status_code=status.HTTP_201_CREATED)
async def post_message(
    room_id: int,
    payload: SendMessageRequest,
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> dict:
    message = await hub.dispatch.send_message(
        current_user.id,
        room_id,
        payload.content,
        payload.type,
        attachments=[item.to_record() for item in payload.attachments],
        reply_to=payload.reply_to,
        client_id=payload.client_id,
    )
    return {"clientId": payload.client_id, "message": message}


@router.post("/rooms/{room_id}/read", response_model=MarkReadResponse)
async def mark_room_read(
    room_id: int,
    payload: MarkReadRequest,
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> MarkReadResponse:
    updated = await hub.dispatch.mark_read(room_id, current_user.id, payload.message_ids)
    return MarkReadResponse(room_id=room_id, message_ids=updated)


@router.get("/rooms/{room_id}/online", response_model=OnlineUsersResponse)
async def room_online_users(
    room_id: int,
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> OnlineUsersResponse:
    if not await hub.catalog.room_exists(room_id):
        raise RoomNotFoundError(f"Room {room_id} does not exist")
    return OnlineUsersResponse(room_id=room_id, users=hub.rooms.online_users(room_id))


@router.patch("/messages/{message_id}")
async def edit_message(
    message_id: int,
    payload: EditMessageRequest,
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> dict:
    return await hub.dispatch.edit_message(message_id, current_user.id, payload.content)


@router.delete("/messages/{message_id}")
async def delete_message(
    message_id: int,
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> dict:
    return await hub.dispatch.delete_message(message_id, current_user.id)


@router.put("/messages/{message_id}/reaction", response_model=ReactionResponse)
async def set_reaction(
    message_id: int,
    payload: ReactionRequest,
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> ReactionResponse:
    reactions = await hub.dispatch.set_reaction(message_id, current_user.id, payload.emoji)
    return ReactionResponse(message_id=message_id, reactions=reactions)
