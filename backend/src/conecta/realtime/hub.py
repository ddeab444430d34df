"""Composition root of the server side realtime components."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from .dispatch import MessageDispatchPipeline
from .errors import DeliveryPartialFailure
from .events import EventType, build_envelope
from .gateway import RealtimeGateway
from .interfaces import (
    CredentialVerifier,
    MessageStore,
    RoomCatalog,
    SessionTransport,
    UserDirectory,
)
from .presence import PresenceChange, PresenceTracker
from .rooms import RoomMembershipTracker
from .sessions import Session, SessionRegistry
from .typing_status import TypingIndicatorAggregator

logger = logging.getLogger(__name__)


class RealtimeHub:
    """Own one instance of every realtime registry for a server process.

    Dependencies point one way: rooms use the registry, typing uses rooms,
    presence observes the registry and dispatch uses all of them. Destroying a
    session leaves its rooms (which clears its typing state) before the
    registry decrements the user's session count.
    """

    def __init__(
        self,
        *,
        verifier: CredentialVerifier,
        catalog: RoomCatalog,
        store: MessageStore,
        directory: UserDirectory,
        allow_anonymous: bool = False,
        typing_ttl_seconds: float = 5.0,
        max_message_length: int = 1000,
        history_default_limit: int = 50,
        history_max_limit: int = 100,
    ) -> None:
        self.catalog = catalog
        self.store = store
        self.directory = directory
        self.registry = SessionRegistry(verifier, allow_anonymous=allow_anonymous)
        self.rooms = RoomMembershipTracker(self.registry, catalog)
        self.typing = TypingIndicatorAggregator(self.rooms, ttl_seconds=typing_ttl_seconds)
        self.presence = PresenceTracker(self.registry, directory=directory)
        self.dispatch = MessageDispatchPipeline(
            self.registry,
            self.rooms,
            catalog,
            store,
            directory,
            max_length=max_message_length,
            history_default_limit=history_default_limit,
            history_max_limit=history_max_limit,
        )
        self.gateway = RealtimeGateway(self)
        self.presence.events.on(EventType.USER_STATUS_UPDATE, self._broadcast_status)

    async def open_session(self, transport: SessionTransport) -> Session:
        return await self.registry.register_session(uuid.uuid4().hex, transport)

    async def close_session(self, session_id: str) -> None:
        await self.registry.destroy_session(session_id)

    async def handle(self, session_id: str, frame: Any) -> None:
        await self.gateway.handle(session_id, frame)

    async def _broadcast_status(self, change: PresenceChange) -> None:
        try:
            await self.registry.deliver(
                self.registry.authenticated_session_ids(),
                build_envelope(EventType.USER_STATUS_UPDATE, change.to_payload()),
            )
        except DeliveryPartialFailure as exc:
            logger.debug(
                "Presence fan-out partially failed",
                extra={"user_id": change.user_id, "failed_sessions": exc.failed},
            )

    async def shutdown(self) -> None:
        await self.typing.close()
        await self.dispatch.drain()


__all__ = ["RealtimeHub"]
