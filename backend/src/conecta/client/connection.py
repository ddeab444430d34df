"""Client side connection state machine over a websocket transport."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import json
import logging
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from conecta.realtime.errors import (
    AuthenticationError,
    ConnectionTimeoutError,
    MaxReconnectAttemptsExceeded,
    RealtimeTransportError,
)
from conecta.realtime.events import CommandType, EventEmitter, EventType, build_envelope

from .config import ClientConfig
from .tracker import DeliveryTracker

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]
TokenProvider = Callable[[], Union[str, None, Awaitable[Union[str, None]]]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"


async def _default_connector(url: str) -> Any:
    return await websockets.connect(url)


async def resolve_token(provider: TokenProvider) -> str | None:
    token = provider()
    if inspect.isawaitable(token):
        token = await token
    return token or None


class ConnectionManager:
    """Connect, authenticate, rejoin rooms and keep the push channel alive.

    Every state transition is announced as ``connection_state_change`` with
    ``{"state", "previous"}``. Server frames are re-emitted on :attr:`events`
    under their own event name with the frame's ``data`` as the argument.
    """

    def __init__(
        self,
        config: ClientConfig,
        token_provider: TokenProvider,
        *,
        connector: Connector | None = None,
        tracker: DeliveryTracker | None = None,
    ) -> None:
        self.events = EventEmitter()
        self._config = config
        self._token_provider = token_provider
        self._connector = connector or _default_connector
        self._tracker = tracker or DeliveryTracker()
        self._state = ConnectionState.DISCONNECTED
        self._transport: Any | None = None
        self._rooms: Dict[int, None] = {}
        self._queue: Deque[dict[str, Any]] = deque()
        self._receiver_task: asyncio.Task[None] | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._closing = False
        self._attempts = 0
        self.session_id: str | None = None
        self.user_id: int | None = None
        self.events.on(EventType.ROOM_JOINED, self._on_room_joined)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is ConnectionState.ACTIVE

    @property
    def rooms(self) -> list[int]:
        return list(self._rooms)

    @property
    def queued(self) -> int:
        return len(self._queue)

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    @property
    def reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """Open the push channel; ``True`` once the session is active.

        Raises :class:`AuthenticationError`, :class:`ConnectionTimeoutError`
        or :class:`RealtimeTransportError` when the attempt fails. A call
        cancelled by :meth:`disconnect` returns ``False``.
        """

        if self._state is not ConnectionState.DISCONNECTED:
            return self.is_active
        self._closing = False
        self._attempts = 0
        self._cancel_reconnect()
        task = asyncio.create_task(self._open(), name="conecta-connect")
        self._connect_task = task
        try:
            await task
        except asyncio.CancelledError:
            if self._closing:
                return False
            raise
        finally:
            if self._connect_task is task:
                self._connect_task = None
        return self.is_active

    async def disconnect(self) -> None:
        """Client initiated shutdown: no automatic reconnection follows."""

        self._closing = True
        self._cancel_reconnect()
        if self._connect_task is not None and self._connect_task is not asyncio.current_task():
            self._connect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._connect_task
            self._connect_task = None
        self._queue.clear()
        if self.is_active:
            for room_id in list(self._rooms):
                await self._send_now(build_envelope(CommandType.LEAVE_ROOM, {"roomId": room_id}))
        self._rooms.clear()
        await self._drop_transport()
        await self._set_state(ConnectionState.DISCONNECTED)

    async def force_reconnect(self) -> bool:
        """Drop the current transport and connect again right away.

        Joined rooms and queued frames survive the cycle.
        """

        self._cancel_reconnect()
        self._closing = True
        await self._drop_transport()
        await self._set_state(ConnectionState.DISCONNECTED)
        return await self.connect()

    # ------------------------------------------------------------------
    # Outbound frames
    # ------------------------------------------------------------------

    async def send(
        self,
        command: Union[CommandType, str],
        data: dict[str, Any] | None = None,
        *,
        queue: bool = True,
    ) -> bool:
        """Send a command now, or queue it until the session is active.

        Returns ``True`` when the frame went out immediately.
        """

        frame = build_envelope(command, data)
        if self.is_active and await self._send_now(frame):
            return True
        if queue:
            self._queue.append(frame)
        return False

    async def join_room(self, room_id: int) -> bool:
        self._rooms[room_id] = None
        if not self.is_active:
            return False
        return await self._send_now(build_envelope(CommandType.JOIN_ROOM, {"roomId": room_id}))

    async def leave_room(self, room_id: int) -> bool:
        if room_id not in self._rooms:
            return False
        del self._rooms[room_id]
        if not self.is_active:
            return False
        return await self._send_now(build_envelope(CommandType.LEAVE_ROOM, {"roomId": room_id}))

    async def _send_now(self, frame: dict[str, Any]) -> bool:
        transport = self._transport
        if transport is None:
            return False
        try:
            await transport.send(json.dumps(frame))
        except (ConnectionClosed, OSError, RuntimeError):
            logger.debug("Failed to send frame", extra={"type": frame.get("type")})
            return False
        return True

    # ------------------------------------------------------------------
    # Connection sequence
    # ------------------------------------------------------------------

    async def _set_state(self, state: ConnectionState) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        logger.debug(
            "Connection state changed",
            extra={"state": state.value, "previous": previous.value},
        )
        await self.events.emit(
            EventType.CONNECTION_STATE_CHANGE,
            {"state": state.value, "previous": previous.value},
        )

    async def _open(self) -> None:
        token = await resolve_token(self._token_provider)
        if token is None and not self._config.allow_anonymous:
            raise AuthenticationError("Missing credential")

        await self._set_state(ConnectionState.CONNECTING)
        try:
            transport = await asyncio.wait_for(
                self._connector(self._config.ws_url), timeout=self._config.connect_timeout
            )
        except asyncio.TimeoutError as exc:
            await self._set_state(ConnectionState.DISCONNECTED)
            raise ConnectionTimeoutError(
                f"No connection after {self._config.connect_timeout:g}s"
            ) from exc
        except (OSError, WebSocketException) as exc:
            await self._set_state(ConnectionState.DISCONNECTED)
            raise RealtimeTransportError(str(exc) or exc.__class__.__name__) from exc

        self._transport = transport
        self._closing = False
        await self._set_state(ConnectionState.CONNECTED)

        try:
            await self._set_state(ConnectionState.AUTHENTICATING)
            await transport.send(json.dumps(build_envelope(CommandType.AUTHENTICATE, {"token": token})))
            data = await asyncio.wait_for(
                self._await_authentication(transport), timeout=self._config.auth_timeout
            )
        except asyncio.TimeoutError as exc:
            await self._abort(transport)
            raise ConnectionTimeoutError("Authentication was not acknowledged in time") from exc
        except AuthenticationError:
            await self._abort(transport)
            raise
        except (ConnectionClosed, OSError) as exc:
            await self._abort(transport)
            raise RealtimeTransportError("Connection lost during authentication") from exc
        except asyncio.CancelledError:
            await self._abort(transport)
            raise

        self.session_id = data.get("sessionId")
        self.user_id = data.get("userId")
        self._attempts = 0
        await self._set_state(ConnectionState.AUTHENTICATED)
        await self.events.emit(EventType.AUTHENTICATED, data)
        await self._activate(transport)

    async def _await_authentication(self, transport: Any) -> dict[str, Any]:
        while True:
            frame = _decode(await transport.recv())
            if frame is None:
                continue
            data = frame.get("data") or {}
            if frame.get("type") == EventType.AUTHENTICATED.value:
                return data
            if frame.get("type") == EventType.AUTH_ERROR.value:
                raise AuthenticationError(data.get("detail"))

    async def _activate(self, transport: Any) -> None:
        for room_id in list(self._rooms):
            await self._send_now(build_envelope(CommandType.JOIN_ROOM, {"roomId": room_id}))
            # Rooms this client never joined before have nothing to catch up on.
            if self._tracker.position(room_id) is not None:
                await self._send_now(
                    build_envelope(CommandType.BACKFILL, self._tracker.backfill_request(room_id))
                )
        while self._queue:
            frame = self._queue[0]
            if not await self._send_now(frame):
                break
            self._queue.popleft()
        self._receiver_task = asyncio.create_task(
            self._receive_loop(transport), name="conecta-receiver"
        )
        await self._set_state(ConnectionState.ACTIVE)
        logger.info(
            "Realtime session active",
            extra={"session_id": self.session_id, "rooms": list(self._rooms)},
        )

    async def _abort(self, transport: Any) -> None:
        self._transport = None
        with contextlib.suppress(ConnectionClosed, OSError, RuntimeError):
            await transport.close()
        await self._set_state(ConnectionState.DISCONNECTED)

    async def _drop_transport(self) -> None:
        receiver = self._receiver_task
        self._receiver_task = None
        if receiver is not None and receiver is not asyncio.current_task():
            receiver.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await receiver
        transport = self._transport
        self._transport = None
        self.session_id = None
        if transport is not None:
            with contextlib.suppress(ConnectionClosed, OSError, RuntimeError):
                await transport.close()

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    async def _receive_loop(self, transport: Any) -> None:
        try:
            async for raw in transport:
                frame = _decode(raw)
                if frame is None:
                    continue
                await self.events.emit(frame["type"], frame.get("data") or {})
        except ConnectionClosed:
            pass
        except OSError:
            logger.warning(
                "Realtime transport failed",
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
        if self._transport is transport:
            await self._on_transport_lost()

    async def _on_room_joined(self, data: dict[str, Any]) -> None:
        room_id = data.get("roomId")
        joined_at = data.get("joinedAt")
        # A repeated join must not move the position past a pending backfill.
        if room_id is not None and joined_at and self._tracker.position(int(room_id)) is None:
            self._tracker.mark(int(room_id), joined_at)

    async def _on_transport_lost(self) -> None:
        self._receiver_task = None
        self._transport = None
        self.session_id = None
        await self._set_state(ConnectionState.DISCONNECTED)
        if self._closing:
            return
        logger.info("Realtime connection dropped by the server; reconnecting")
        self.schedule_reconnect()

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def schedule_reconnect(self) -> None:
        if self.reconnecting:
            return
        self._closing = False
        self._reconnect_task = asyncio.create_task(
            self._reconnect_runner(), name="conecta-reconnect"
        )

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _reconnect_runner(self) -> None:
        limit = self._config.max_reconnect_attempts
        while self._attempts < limit:
            self._attempts += 1
            delay = self._config.backoff_delay(self._attempts)
            logger.info(
                "Scheduling realtime reconnection",
                extra={"attempt": self._attempts, "delay": delay},
            )
            if delay:
                await asyncio.sleep(delay)
            if self._state is not ConnectionState.DISCONNECTED:
                return
            try:
                await self._open()
            except AuthenticationError as exc:
                logger.warning(
                    "Realtime reconnection rejected; giving up",
                    extra={"attempt": self._attempts, "detail": exc.detail},
                )
                self._reconnect_task = None
                await self.events.emit(EventType.AUTH_ERROR, {"code": exc.code, "detail": exc.detail})
                return
            except RealtimeTransportError as exc:
                logger.warning(
                    "Realtime reconnection attempt failed",
                    extra={"attempt": self._attempts, "detail": exc.detail},
                )
                continue
            self._reconnect_task = None
            return

        attempts = self._attempts
        self._reconnect_task = None
        await self._set_state(ConnectionState.DISCONNECTED)
        logger.warning("Realtime reconnection budget exhausted", extra={"attempts": attempts})
        await self.events.emit(
            EventType.MAX_RECONNECT_ATTEMPTS_EXCEEDED, MaxReconnectAttemptsExceeded(attempts)
        )


def _decode(raw: Any) -> dict[str, Any] | None:
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError):
        logger.debug("Ignoring undecodable frame")
        return None
    if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
        return None
    return frame


__all__ = ["ConnectionManager", "ConnectionState", "Connector", "TokenProvider", "resolve_token"]
