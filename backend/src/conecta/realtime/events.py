"""Event vocabulary and a small callback registry shared by both halves."""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Union

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Names of the events pushed to clients (and re-emitted client side)."""

    AUTHENTICATED = "authenticated"
    AUTH_ERROR = "auth_error"
    ROOM_JOINED = "room_joined"
    ROOM_JOIN_ERROR = "room_join_error"
    USER_JOINED_ROOM = "user_joined_room"
    USER_LEFT_ROOM = "user_left_room"
    NEW_MESSAGE = "new_message"
    MESSAGE_SENT = "message_sent"
    MESSAGE_FAILED = "message_failed"
    MESSAGE_DELETED = "message_deleted"
    MESSAGE_EDITED = "message_edited"
    MESSAGE_REACTION = "message_reaction"
    MESSAGES_READ = "messages_read"
    USER_TYPING = "user_typing"
    USER_STATUS_UPDATE = "user_status_update"
    ONLINE_USERS = "online_users"
    USER_STATUS_RESPONSE = "user_status_response"
    PRIVATE_MESSAGE = "private_message"
    BACKFILL = "backfill"
    ROOM_UPDATE = "room_update"
    ERROR = "error"
    PING = "ping"
    PONG = "pong"
    # Client side only.
    CONNECTION_STATE_CHANGE = "connection_state_change"
    MAX_RECONNECT_ATTEMPTS_EXCEEDED = "max_reconnect_attempts_exceeded"


class CommandType(str, Enum):
    """Names of the frames a client sends to the server."""

    AUTHENTICATE = "authenticate"
    JOIN_ROOM = "join_room"
    LEAVE_ROOM = "leave_room"
    SEND_MESSAGE = "send_message"
    TYPING = "typing"
    MARK_READ = "mark_read"
    DELETE_MESSAGE = "delete_message"
    EDIT_MESSAGE = "edit_message"
    SET_REACTION = "set_reaction"
    BACKFILL = "backfill"
    SEND_DIRECT_MESSAGE = "send_direct_message"
    GET_ONLINE_USERS = "get_online_users"
    GET_USER_STATUS = "get_user_status"
    PING = "ping"


def build_envelope(event: Union[EventType, CommandType, str], data: dict[str, Any] | None = None) -> dict[str, Any]:
    """Wrap *data* into the canonical ``{"type", "data"}`` frame."""

    name = event.value if isinstance(event, Enum) else str(event)
    return {"type": name, "data": data or {}}


Callback = Callable[..., Union[None, Awaitable[None]]]


class EventEmitter:
    """Register callbacks per event name and invoke them in order.

    Callbacks may be plain functions or coroutine functions. A failing
    callback is logged and does not prevent the remaining ones from running.
    """

    def __init__(self) -> None:
        self._callbacks: Dict[str, List[Callback]] = defaultdict(list)

    @staticmethod
    def _key(event: Union[Enum, str]) -> str:
        return event.value if isinstance(event, Enum) else str(event)

    def on(self, event: Union[Enum, str], callback: Callback) -> Callable[[], None]:
        key = self._key(event)
        self._callbacks[key].append(callback)

        def unsubscribe() -> None:
            self.off(key, callback)

        return unsubscribe

    def off(self, event: Union[Enum, str], callback: Callback | None = None) -> None:
        key = self._key(event)
        if callback is None:
            self._callbacks.pop(key, None)
            return
        callbacks = self._callbacks.get(key)
        if not callbacks:
            return
        try:
            callbacks.remove(callback)
        except ValueError:
            return
        if not callbacks:
            self._callbacks.pop(key, None)

    def listeners(self, event: Union[Enum, str]) -> list[Callback]:
        return list(self._callbacks.get(self._key(event), ()))

    def clear(self) -> None:
        self._callbacks.clear()

    async def emit(self, event: Union[Enum, str], *args: Any) -> None:
        key = self._key(event)
        for callback in self.listeners(key):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Listener for %s failed", key)


__all__ = ["CommandType", "EventEmitter", "EventType", "build_envelope"]
