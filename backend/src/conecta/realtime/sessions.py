"""Registry of open transport sessions and the users bound to them."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, Set

from fastapi.websockets import WebSocketDisconnect, WebSocketState

from app.monitoring.metrics import realtime_connections, realtime_delivery_failures_total

from .errors import AuthenticationError, DeliveryPartialFailure
from .events import EventEmitter
from .interfaces import CredentialVerifier, SessionTransport
from .records import utcnow

logger = logging.getLogger(__name__)

PRESENCE_ONLINE = "presence_online"
PRESENCE_OFFLINE = "presence_offline"

CleanupHook = Callable[["Session"], Awaitable[None]]


async def safe_send_json(transport: SessionTransport, data: dict[str, Any]) -> bool:
    """Send JSON through *transport*, reporting failure instead of raising."""

    if not transport_is_open(transport):
        return False
    try:
        await transport.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError, ConnectionError) as exc:
        logger.debug("Failed to send websocket message: %s", exc)
        return False


def transport_is_open(transport: SessionTransport) -> bool:
    state = getattr(transport, "application_state", WebSocketState.CONNECTED)
    return state == WebSocketState.CONNECTED


@dataclass(slots=True, eq=False)
class Session:
    """One transport connection, optionally bound to a user."""

    id: str
    transport: SessionTransport
    user_id: int | None = None
    authenticated: bool = False
    rooms: Set[int] = field(default_factory=set)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def anonymous(self) -> bool:
        return self.authenticated and self.user_id is None


class SessionRegistry:
    """Map session ids to transports and users to their open sessions.

    The per-user session count drives presence: the 0->1 transition emits
    ``presence_online`` and the 1->0 transition emits ``presence_offline``.
    Transitions are decided under the registry lock and published after it
    is released, through a second lock taken before the coroutine can yield.
    asyncio locks hand over in FIFO order, so observers see transitions in
    the order they were decided while slow listeners never hold up session
    registration or teardown.
    """

    def __init__(
        self,
        verifier: CredentialVerifier,
        *,
        allow_anonymous: bool = False,
    ) -> None:
        self._verifier = verifier
        self._allow_anonymous = allow_anonymous
        self._sessions: Dict[str, Session] = {}
        self._user_sessions: Dict[int, Set[str]] = {}
        self._cleanup_hooks: list[CleanupHook] = []
        self._lock = asyncio.Lock()
        self._publish_lock = asyncio.Lock()
        self.events = EventEmitter()

    def add_cleanup_hook(self, hook: CleanupHook) -> None:
        """Run *hook* for every destroyed session, in registration order."""

        self._cleanup_hooks.append(hook)

    async def register_session(self, session_id: str, transport: SessionTransport) -> Session:
        async with self._lock:
            if session_id in self._sessions:
                raise ValueError(f"Session '{session_id}' is already registered")
            session = Session(id=session_id, transport=transport)
            self._sessions[session_id] = session
            realtime_connections.labels("sessions").inc()
        logger.debug("Registered session", extra={"session_id": session_id})
        return session

    async def authenticate(self, session_id: str, credential: str | None) -> Session:
        """Bind the user behind *credential* to a registered session."""

        user_id: int | None = None
        if credential:
            user_id = self._verifier.verify(credential)
        elif not self._allow_anonymous:
            raise AuthenticationError("Missing credential")

        went_online = False
        at = utcnow()
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not transport_is_open(session.transport):
                raise AuthenticationError("Session transport is closed")
            if session.authenticated:
                if session.user_id == user_id:
                    return session
                raise AuthenticationError("Session is already bound to another user")

            session.user_id = user_id
            session.authenticated = True
            if user_id is None:
                logger.info("Session authenticated anonymously", extra={"session_id": session_id})
                return session

            sessions = self._user_sessions.setdefault(user_id, set())
            sessions.add(session_id)
            realtime_connections.labels("authenticated").inc()
            went_online = len(sessions) == 1
        if went_online:
            await self._publish_presence(PRESENCE_ONLINE, user_id, at)
        logger.info(
            "Session authenticated", extra={"session_id": session_id, "user_id": user_id}
        )
        return session

    async def destroy_session(self, session_id: str) -> Session | None:
        """Forget a session, leaving its rooms and clearing its typing state."""

        session = self._sessions.get(session_id)
        if session is None:
            return None

        for hook in self._cleanup_hooks:
            try:
                await hook(session)
            except Exception:
                logger.exception(
                    "Session cleanup hook failed", extra={"session_id": session_id}
                )

        went_offline = False
        at = utcnow()
        async with self._lock:
            if self._sessions.pop(session_id, None) is None:
                return None
            realtime_connections.labels("sessions").dec()
            user_id = session.user_id
            if user_id is None:
                return session
            sessions = self._user_sessions.get(user_id)
            if sessions is None or session_id not in sessions:
                return session
            sessions.discard(session_id)
            realtime_connections.labels("authenticated").dec()
            if not sessions:
                self._user_sessions.pop(user_id, None)
                went_offline = True
        if went_offline:
            await self._publish_presence(PRESENCE_OFFLINE, user_id, at)
        logger.debug(
            "Destroyed session", extra={"session_id": session_id, "user_id": session.user_id}
        )
        return session

    async def _publish_presence(self, event: str, user_id: int, at: datetime) -> None:
        # Callers await this straight after releasing the registry lock.
        async with self._publish_lock:
            await self.events.emit(event, user_id, at)

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def sessions_for_user(self, user_id: int) -> set[str]:
        return set(self._user_sessions.get(user_id, ()))

    def session_count(self, user_id: int) -> int:
        return len(self._user_sessions.get(user_id, ()))

    def users_for_sessions(self, session_ids: Iterable[str]) -> set[int]:
        users: set[int] = set()
        for session_id in session_ids:
            session = self._sessions.get(session_id)
            if session is not None and session.user_id is not None:
                users.add(session.user_id)
        return users

    def online_user_ids(self) -> list[int]:
        return sorted(self._user_sessions)

    def authenticated_session_ids(self) -> set[str]:
        return {
            session_id
            for session_id, session in self._sessions.items()
            if session.authenticated
        }

    async def deliver(
        self,
        session_ids: Iterable[str],
        payload: dict[str, Any],
        *,
        exclude: Iterable[str] | None = None,
    ) -> int:
        """Push *payload* to every listed session.

        Returns the number of sessions reached. Raises DeliveryPartialFailure
        after attempting all targets when any of them could not be reached.
        """

        excluded = set(exclude or ())
        targets = [session_id for session_id in dict.fromkeys(session_ids) if session_id not in excluded]
        delivered = 0
        failed: list[str] = []
        for session_id in targets:
            session = self._sessions.get(session_id)
            if session is None or not await safe_send_json(session.transport, payload):
                failed.append(session_id)
                continue
            delivered += 1
        if failed:
            realtime_delivery_failures_total.labels(str(payload.get("type", "unknown"))).inc(len(failed))
            raise DeliveryPartialFailure(failed, delivered)
        return delivered

    async def send(self, session_id: str, payload: dict[str, Any]) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        return await safe_send_json(session.transport, payload)


__all__ = [
    "PRESENCE_OFFLINE",
    "PRESENCE_ONLINE",
    "Session",
    "SessionRegistry",
    "safe_send_json",
    "transport_is_open",
]
