"""Transport independent handling of inbound realtime commands."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict

from app.monitoring.metrics import realtime_events_total

from .errors import PermissionDeniedError, RealtimeError, ValidationError
from .events import CommandType, EventType, build_envelope
from .protocol import (
    AuthenticateCommand,
    BackfillCommand,
    EditMessageCommand,
    MarkReadCommand,
    MessageCommand,
    RoomCommand,
    SendDirectMessageCommand,
    SendMessageCommand,
    SetReactionCommand,
    TypingCommand,
    UserStatusCommand,
    WireModel,
    parse_command,
)
from .records import utcnow
from .sessions import Session

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from .hub import RealtimeHub

logger = logging.getLogger(__name__)

Handler = Callable[[Session, Any], Awaitable[None]]

_UNAUTHENTICATED_COMMANDS = {CommandType.AUTHENTICATE, CommandType.PING}


def _require_user(session: Session) -> int:
    if session.user_id is None:
        raise PermissionDeniedError("Anonymous sessions are read only")
    return session.user_id


class RealtimeGateway:
    """Dispatch parsed commands of one session to the realtime components."""

    def __init__(self, hub: "RealtimeHub") -> None:
        self._hub = hub
        self._handlers: Dict[CommandType, Handler] = {
            CommandType.AUTHENTICATE: self._authenticate,
            CommandType.JOIN_ROOM: self._join_room,
            CommandType.LEAVE_ROOM: self._leave_room,
            CommandType.SEND_MESSAGE: self._send_message,
            CommandType.TYPING: self._typing,
            CommandType.MARK_READ: self._mark_read,
            CommandType.DELETE_MESSAGE: self._delete_message,
            CommandType.EDIT_MESSAGE: self._edit_message,
            CommandType.SET_REACTION: self._set_reaction,
            CommandType.BACKFILL: self._backfill,
            CommandType.SEND_DIRECT_MESSAGE: self._send_direct_message,
            CommandType.GET_ONLINE_USERS: self._get_online_users,
            CommandType.GET_USER_STATUS: self._get_user_status,
            CommandType.PING: self._ping,
        }

    async def _send(self, session: Session, event: EventType, data: dict[str, Any]) -> None:
        realtime_events_total.labels(event.value, "outbound").inc()
        await self._hub.registry.send(session.id, build_envelope(event, data))

    async def handle(self, session_id: str, frame: Any) -> None:
        session = self._hub.registry.get(session_id)
        if session is None:
            return
        try:
            command, data = parse_command(frame)
        except ValidationError as exc:
            await self._send(session, EventType.ERROR, {"code": exc.code, "detail": exc.detail})
            return

        realtime_events_total.labels(command.value, "inbound").inc()
        try:
            if command not in _UNAUTHENTICATED_COMMANDS and not session.authenticated:
                raise PermissionDeniedError("Authenticate before sending commands")
            await self._handlers[command](session, data)
        except RealtimeError as exc:
            logger.info(
                "Realtime command rejected",
                extra={"session_id": session_id, "command": command.value, "code": exc.code},
            )
            await self._report(session, command, data, exc)

    async def _report(
        self, session: Session, command: CommandType, data: WireModel, exc: RealtimeError
    ) -> None:
        error = {"code": exc.code, "detail": exc.detail}
        if command is CommandType.AUTHENTICATE:
            await self._send(session, EventType.AUTH_ERROR, error)
        elif command is CommandType.JOIN_ROOM and isinstance(data, RoomCommand):
            await self._send(session, EventType.ROOM_JOIN_ERROR, {"roomId": data.room_id, **error})
        elif isinstance(data, (SendMessageCommand, SendDirectMessageCommand)):
            await self._send(session, EventType.MESSAGE_FAILED, {"clientId": data.client_id, **error})
        else:
            await self._send(session, EventType.ERROR, {"command": command.value, **error})

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _authenticate(self, session: Session, data: AuthenticateCommand) -> None:
        session = await self._hub.registry.authenticate(session.id, data.token)
        await self._send(
            session,
            EventType.AUTHENTICATED,
            {
                "sessionId": session.id,
                "userId": session.user_id,
                "anonymous": session.anonymous,
                "onlineUsers": self._hub.presence.online_users(),
            },
        )

    async def _join_room(self, session: Session, data: RoomCommand) -> None:
        await self._hub.rooms.join(session.id, data.room_id)

    async def _leave_room(self, session: Session, data: RoomCommand) -> None:
        await self._hub.rooms.leave(session.id, data.room_id)

    async def _send_message(self, session: Session, data: SendMessageCommand) -> None:
        user_id = _require_user(session)
        message = await self._hub.dispatch.send_message(
            user_id,
            data.room_id,
            data.content,
            data.type,
            attachments=[item.to_record() for item in data.attachments],
            reply_to=data.reply_to,
            client_id=data.client_id,
        )
        await self._send(session, EventType.MESSAGE_SENT, {"clientId": data.client_id, "message": message})

    async def _typing(self, session: Session, data: TypingCommand) -> None:
        user_id = _require_user(session)
        if data.room_id not in session.rooms:
            raise PermissionDeniedError("Join the room before sending typing updates")
        await self._hub.typing.set_typing(data.room_id, user_id, data.is_typing)

    async def _mark_read(self, session: Session, data: MarkReadCommand) -> None:
        await self._hub.dispatch.mark_read(data.room_id, _require_user(session), data.message_ids)

    async def _delete_message(self, session: Session, data: MessageCommand) -> None:
        await self._hub.dispatch.delete_message(data.message_id, _require_user(session))

    async def _edit_message(self, session: Session, data: EditMessageCommand) -> None:
        await self._hub.dispatch.edit_message(data.message_id, _require_user(session), data.content)

    async def _set_reaction(self, session: Session, data: SetReactionCommand) -> None:
        await self._hub.dispatch.set_reaction(data.message_id, _require_user(session), data.emoji)

    async def _backfill(self, session: Session, data: BackfillCommand) -> None:
        messages = await self._hub.dispatch.backfill(data.room_id, data.since, data.since_id)
        await self._send(session, EventType.BACKFILL, {"roomId": data.room_id, "messages": messages})

    async def _send_direct_message(self, session: Session, data: SendDirectMessageCommand) -> None:
        await self._hub.dispatch.send_direct_message(
            _require_user(session),
            data.recipient_id,
            data.content,
            data.type,
            client_id=data.client_id,
        )

    async def _get_online_users(self, session: Session, data: Any) -> None:
        await self._send(session, EventType.ONLINE_USERS, {"users": self._hub.presence.online_users()})

    async def _get_user_status(self, session: Session, data: UserStatusCommand) -> None:
        await self._send(session, EventType.USER_STATUS_RESPONSE, self._hub.presence.status(data.user_id))

    async def _ping(self, session: Session, data: Any) -> None:
        await self._send(session, EventType.PONG, {"timestamp": utcnow().isoformat()})


__all__ = ["RealtimeGateway"]
