"""Transport agnostic realtime client used by host applications."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

import httpx

from conecta.realtime.errors import (
    AuthenticationError,
    MaxReconnectAttemptsExceeded,
    RealtimeError,
    RealtimeTransportError,
)
from conecta.realtime.events import CommandType, EventEmitter, EventType

from .config import ClientConfig
from .connection import ConnectionManager, ConnectionState, Connector, TokenProvider
from .polling import PollingBridge
from .tracker import DeliveryTracker

logger = logging.getLogger(__name__)


class TransportMode(str, Enum):
    PUSH = "push"
    POLLING = "polling"
    OFFLINE = "offline"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(slots=True)
class OutboxEntry:
    """A message sent by this client, matched to its server copy by ``client_id``."""

    client_id: str
    room_id: int
    content: str
    status: OutboxStatus = OutboxStatus.PENDING
    message: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(slots=True, frozen=True)
class ClientStatus:
    mode: TransportMode
    connection_state: ConnectionState
    reconnect_attempts: int
    rooms: tuple[int, ...]
    pending: int


# Events forwarded from either transport to the application.
RELAYED_EVENTS = (
    EventType.AUTHENTICATED,
    EventType.AUTH_ERROR,
    EventType.ROOM_JOINED,
    EventType.ROOM_JOIN_ERROR,
    EventType.USER_JOINED_ROOM,
    EventType.USER_LEFT_ROOM,
    EventType.MESSAGE_DELETED,
    EventType.MESSAGE_EDITED,
    EventType.MESSAGE_REACTION,
    EventType.MESSAGES_READ,
    EventType.USER_TYPING,
    EventType.USER_STATUS_UPDATE,
    EventType.ONLINE_USERS,
    EventType.USER_STATUS_RESPONSE,
    EventType.PRIVATE_MESSAGE,
    EventType.ROOM_UPDATE,
    EventType.ERROR,
    EventType.CONNECTION_STATE_CHANGE,
)


class RealtimeClient:
    """One entry point over the push channel and its polling fallback.

    Listeners registered with :meth:`on` receive the same events whichever
    transport is live. Room messages pass through a shared
    :class:`DeliveryTracker` so a message seen on one path is never repeated
    by the other.
    """

    def __init__(
        self,
        config: ClientConfig,
        token_provider: TokenProvider,
        *,
        connector: Connector | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.events = EventEmitter()
        self.tracker = DeliveryTracker()
        self.connection = ConnectionManager(
            config, token_provider, connector=connector, tracker=self.tracker
        )
        self.polling = PollingBridge(
            config, token_provider, tracker=self.tracker, client=http_client
        )
        self._mode = TransportMode.OFFLINE
        self._rooms: Dict[int, None] = {}
        self._outbox: Dict[str, OutboxEntry] = {}
        self._upgrade_task: asyncio.Task[None] | None = None
        self._upgrade_attempt = False

        for source in (self.connection.events, self.polling.events):
            for event in RELAYED_EVENTS:
                source.on(event, self._relay(event))
            source.on(EventType.NEW_MESSAGE, self._on_new_message)
        self.connection.events.on(EventType.BACKFILL, self._on_backfill)
        self.connection.events.on(EventType.MESSAGE_SENT, self._on_message_sent)
        self.connection.events.on(EventType.MESSAGE_FAILED, self._on_message_failed)
        self.connection.events.on(EventType.CONNECTION_STATE_CHANGE, self._on_state_change)
        self.connection.events.on(
            EventType.MAX_RECONNECT_ATTEMPTS_EXCEEDED, self._on_reconnect_exhausted
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def mode(self) -> TransportMode:
        return self._mode

    def status(self) -> ClientStatus:
        return ClientStatus(
            mode=self._mode,
            connection_state=self.connection.state,
            reconnect_attempts=self.connection.reconnect_attempts,
            rooms=tuple(self._rooms),
            pending=sum(1 for entry in self._outbox.values() if entry.status is OutboxStatus.PENDING),
        )

    def outbox(self, client_id: str) -> OutboxEntry | None:
        return self._outbox.get(client_id)

    def on(self, event: Any, callback: Any):
        return self.events.on(event, callback)

    def off(self, event: Any, callback: Any = None) -> None:
        self.events.off(event, callback)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """Bring up a transport; ``True`` when push or polling is live.

        Credential errors leave the client offline. When the push channel is
        unreachable and fallback is enabled, polling takes over while an
        upgrade loop keeps retrying the push channel.
        """

        if self.config.force_polling:
            await self._start_polling(upgrade=False)
            return True
        try:
            return await self.connection.connect()
        except AuthenticationError as exc:
            logger.warning("Realtime authentication failed", extra={"detail": exc.detail})
            await self.events.emit(EventType.AUTH_ERROR, {"code": exc.code, "detail": exc.detail})
            return False
        except RealtimeTransportError as exc:
            logger.warning("Push channel unavailable", extra={"detail": exc.detail})
            if not self.config.fallback_to_polling:
                return False
            await self._start_polling(upgrade=True)
            return True

    async def disconnect(self) -> None:
        self._cancel_upgrade(force=True)
        await self.polling.stop()
        await self.connection.disconnect()
        for entry in self._outbox.values():
            if entry.status is OutboxStatus.PENDING:
                entry.status = OutboxStatus.FAILED
                entry.error = "disconnected"
        self._rooms.clear()
        self._mode = TransportMode.OFFLINE

    async def force_reconnect(self) -> bool:
        try:
            return await self.connection.force_reconnect()
        except RealtimeError as exc:
            logger.warning("Forced reconnection failed", extra={"detail": exc.detail})
            return False

    async def aclose(self) -> None:
        await self.disconnect()
        await self.polling.aclose()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def join_room(self, room_id: int) -> None:
        self._rooms[room_id] = None
        self.polling.set_rooms(self._rooms)
        await self.connection.join_room(room_id)

    async def leave_room(self, room_id: int) -> None:
        self._rooms.pop(room_id, None)
        self.polling.set_rooms(self._rooms)
        await self.connection.leave_room(room_id)

    async def send_message(
        self,
        room_id: int,
        content: str,
        message_type: str = "text",
        *,
        attachments: list[dict[str, Any]] | None = None,
        reply_to: int | None = None,
    ) -> OutboxEntry:
        """Send a room message tagged with a fresh client id.

        Over push the entry is confirmed by ``message_sent``; over polling by
        the HTTP response. Sends made while no transport is live are queued
        and flushed once the push session becomes active.
        """

        entry = OutboxEntry(client_id=uuid.uuid4().hex, room_id=room_id, content=content)
        self._outbox[entry.client_id] = entry

        if self._mode is TransportMode.POLLING:
            try:
                response = await self.polling.send_message(
                    room_id,
                    content,
                    message_type,
                    attachments=attachments,
                    reply_to=reply_to,
                    client_id=entry.client_id,
                )
            except (RealtimeError, httpx.HTTPError) as exc:
                entry.status = OutboxStatus.FAILED
                entry.error = getattr(exc, "detail", None) or str(exc)
                await self.events.emit(
                    EventType.MESSAGE_FAILED,
                    {"clientId": entry.client_id, "code": getattr(exc, "code", "transport_error"), "detail": entry.error},
                )
                return entry
            await self._on_message_sent(response)
            return entry

        data: dict[str, Any] = {
            "roomId": room_id,
            "content": content,
            "type": message_type,
            "clientId": entry.client_id,
        }
        if attachments:
            data["attachments"] = attachments
        if reply_to is not None:
            data["replyTo"] = reply_to
        await self.connection.send(CommandType.SEND_MESSAGE, data)
        return entry

    async def typing(self, room_id: int, is_typing: bool = True) -> bool:
        if self._mode is not TransportMode.PUSH:
            return False
        return await self.connection.send(
            CommandType.TYPING, {"roomId": room_id, "isTyping": is_typing}, queue=False
        )

    async def mark_read(self, room_id: int, message_ids: list[int] | None = None) -> None:
        if self._mode is TransportMode.POLLING:
            await self.polling.mark_read(room_id, message_ids)
            return
        await self.connection.send(
            CommandType.MARK_READ, {"roomId": room_id, "messageIds": message_ids}
        )

    # ------------------------------------------------------------------
    # Event plumbing
    # ------------------------------------------------------------------

    def _relay(self, event: EventType):
        async def forward(data: Any) -> None:
            await self.events.emit(event, data)

        return forward

    async def _on_new_message(self, data: dict[str, Any]) -> None:
        message = data.get("message") or {}
        if "_id" not in message or not self.tracker.accept(message):
            return
        await self.events.emit(EventType.NEW_MESSAGE, data)

    async def _on_backfill(self, data: dict[str, Any]) -> None:
        for message in data.get("messages") or []:
            if self.tracker.accept(message):
                await self.events.emit(
                    EventType.NEW_MESSAGE,
                    {"roomId": message.get("roomId"), "message": message, "clientId": None},
                )

    async def _on_message_sent(self, data: dict[str, Any]) -> None:
        entry = self._outbox.get(data.get("clientId") or "")
        if entry is not None:
            entry.status = OutboxStatus.CONFIRMED
            entry.message = data.get("message")
        await self.events.emit(EventType.MESSAGE_SENT, data)

    async def _on_message_failed(self, data: dict[str, Any]) -> None:
        entry = self._outbox.get(data.get("clientId") or "")
        if entry is not None:
            entry.status = OutboxStatus.FAILED
            entry.error = data.get("detail")
        await self.events.emit(EventType.MESSAGE_FAILED, data)

    async def _on_state_change(self, change: dict[str, str]) -> None:
        state = change.get("state")
        if state == ConnectionState.AUTHENTICATED.value:
            # Rejoin and backfill follow this callback, so polling must be down first.
            self._cancel_upgrade()
            await self.polling.stop()
        elif state == ConnectionState.ACTIVE.value:
            self._set_mode(TransportMode.PUSH)
        elif state == ConnectionState.DISCONNECTED.value and self._mode is TransportMode.PUSH:
            self._set_mode(TransportMode.OFFLINE)

    async def _on_reconnect_exhausted(self, error: MaxReconnectAttemptsExceeded) -> None:
        await self.events.emit(EventType.MAX_RECONNECT_ATTEMPTS_EXCEEDED, error)
        if self.config.fallback_to_polling:
            await self._start_polling(upgrade=True)

    # ------------------------------------------------------------------
    # Polling fallback
    # ------------------------------------------------------------------

    def _set_mode(self, mode: TransportMode) -> None:
        if mode is self._mode:
            return
        logger.info("Transport mode changed", extra={"mode": mode.value, "previous": self._mode.value})
        self._mode = mode

    async def _start_polling(self, *, upgrade: bool) -> None:
        await self.polling.start(self._rooms)
        self._set_mode(TransportMode.POLLING)
        if upgrade and (self._upgrade_task is None or self._upgrade_task.done()):
            self._upgrade_task = asyncio.create_task(self._upgrade_loop(), name="conecta-upgrade")

    def _cancel_upgrade(self, *, force: bool = False) -> None:
        task = self._upgrade_task
        if task is None or task is asyncio.current_task():
            return
        # An upgrade attempt in flight finishes on its own once the session is up.
        if self._upgrade_attempt and not force:
            return
        task.cancel()
        self._upgrade_task = None

    async def _upgrade_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.upgrade_interval)
            if self.connection.state is not ConnectionState.DISCONNECTED:
                continue
            self._upgrade_attempt = True
            try:
                if await self.connection.connect():
                    break
            except RealtimeError as exc:
                logger.debug("Push upgrade attempt failed", extra={"detail": exc.detail})
            finally:
                self._upgrade_attempt = False
        self._upgrade_task = None
        logger.info("Upgraded from polling to push")


__all__ = [
    "ClientStatus",
    "OutboxEntry",
    "OutboxStatus",
    "RealtimeClient",
    "TransportMode",
]
