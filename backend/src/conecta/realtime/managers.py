"""Process wide realtime hub wired to the SQL stores and settings."""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings

from .hub import RealtimeHub

logger = logging.getLogger(__name__)

_hub: RealtimeHub | None = None


def build_default_hub() -> RealtimeHub:
    from app.core.security import JwtCredentialVerifier
    from app.database import SessionLocal
    from app.services.chat_store import SqlMessageStore, SqlRoomCatalog, SqlUserDirectory

    settings = get_settings()
    return RealtimeHub(
        verifier=JwtCredentialVerifier(SessionLocal),
        catalog=SqlRoomCatalog(SessionLocal),
        store=SqlMessageStore(SessionLocal),
        directory=SqlUserDirectory(SessionLocal),
        allow_anonymous=settings.realtime_allow_anonymous,
        typing_ttl_seconds=settings.realtime_typing_ttl_seconds,
        max_message_length=settings.chat_message_max_length,
        history_default_limit=settings.chat_history_default_limit,
        history_max_limit=settings.chat_history_max_limit,
    )


def configure_realtime(hub: RealtimeHub | None = None) -> RealtimeHub:
    """Install *hub* (or a freshly built default one) as the process hub."""

    global _hub
    _hub = hub if hub is not None else build_default_hub()
    return _hub


def get_hub() -> RealtimeHub:
    if _hub is None:
        return configure_realtime()
    return _hub


async def startup_realtime() -> None:
    hub = get_hub()
    # No session survives a restart, so persisted online flags are stale.
    try:
        await hub.directory.reset_online_statuses()
    except SQLAlchemyError:
        logger.warning(
            "Could not reset persisted presence during startup",
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )


async def shutdown_realtime() -> None:
    if _hub is not None:
        await _hub.shutdown()


__all__ = [
    "build_default_hub",
    "configure_realtime",
    "get_hub",
    "shutdown_realtime",
    "startup_realtime",
]
