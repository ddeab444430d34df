"""HTTP endpoints for one to one conversations."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from conecta.realtime.hub import RealtimeHub
from conecta.realtime.managers import get_hub
from conecta.realtime.records import conversation_id

from app.api.deps import get_current_user
from app.config import get_settings
from app.models import User
from app.schemas import (
    ConversationReadRequest,
    ConversationReadResponse,
    ConversationRequest,
    ConversationResponse,
    DirectMessageRequest,
    MessagePage,
)

router = APIRouter(prefix="/messages", tags=["direct-messages"])

settings = get_settings()


@router.post("/conversations", response_model=ConversationResponse)
async def open_conversation(
    payload: ConversationRequest,
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> ConversationResponse:
    """Resolve the conversation id shared with another user."""

    if payload.user_id == current_user.id:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Cannot message yourself")
    if await hub.directory.resolve_profile(payload.user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return ConversationResponse(
        conversation_id=conversation_id(current_user.id, payload.user_id),
        participants=sorted({current_user.id, payload.user_id}),
    )


@router.get("", response_model=MessagePage)
async def conversation_history(
    user_id: int = Query(..., alias="userId"),
    cursor: str | None = Query(default=None),
    limit: int = Query(default=settings.chat_history_default_limit, ge=1, le=settings.chat_history_max_limit),
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> MessagePage:
    items, next_cursor = await hub.dispatch.direct_history(current_user.id, user_id, cursor, limit)
    return MessagePage(items=items, next_cursor=next_cursor)


@router.post("", status_code=status.HTTP_201_CREATED)
async def send_direct_message(
    payload: DirectMessageRequest,
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> dict:
    message = await hub.dispatch.send_direct_message(
        current_user.id,
        payload.recipient_id,
        payload.content,
        payload.type,
        client_id=payload.client_id,
    )
    return {"clientId": payload.client_id, "message": message}


@router.post("/read", response_model=ConversationReadResponse)
async def mark_conversation_read(
    payload: ConversationReadRequest,
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> ConversationReadResponse:
    updated = await hub.dispatch.mark_conversation_read(current_user.id, payload.user_id)
    return ConversationReadResponse(
        conversation_id=conversation_id(current_user.id, payload.user_id),
        updated=updated,
    )
