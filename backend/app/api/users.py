"""User presence lookups."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from conecta.realtime.hub import RealtimeHub
from conecta.realtime.managers import get_hub

from app.api.deps import get_current_user
from app.models import User
from app.schemas import UserStatusResponse

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/{user_id}/status", response_model=UserStatusResponse)
async def user_status(
    user_id: int,
    current_user: User = Depends(get_current_user),
    hub: RealtimeHub = Depends(get_hub),
) -> UserStatusResponse:
    """Live presence of a user, falling back to the persisted last seen."""

    profile = await hub.directory.resolve_profile(user_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return UserStatusResponse(
        user_id=user_id,
        name=profile.name,
        is_online=hub.presence.is_online(user_id),
        last_seen=hub.presence.last_seen(user_id) or profile.last_seen,
    )
