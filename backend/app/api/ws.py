"""WebSocket endpoint of the realtime chat core."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

import anyio
from fastapi import APIRouter, Depends, WebSocket, status
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from conecta.realtime.events import CommandType, EventType, build_envelope
from conecta.realtime.hub import RealtimeHub
from conecta.realtime.managers import get_hub
from conecta.realtime.sessions import Session, safe_send_json

from app.config import get_settings

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or build_envelope(EventType.PING)
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            should_ping = interval <= 0 or (
                now - last_activity >= interval
                and (last_ping_sent is None or now - last_ping_sent >= interval)
            )
            if should_ping:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            raise
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


def _handshake_token(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if not token:
        auth_header = websocket.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            token = auth_header.removeprefix("Bearer ").strip()
    return token or None


async def _close_if_unauthenticated(websocket: WebSocket, session: Session, timeout: float) -> None:
    await asyncio.sleep(timeout)
    if session.authenticated or websocket.application_state != WebSocketState.CONNECTED:
        return
    logger.info("Closing unauthenticated websocket", extra={"session_id": session.id})
    try:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Authentication timeout")
    except RuntimeError:
        return


@router.websocket("/chat")
async def websocket_chat(
    websocket: WebSocket,
    hub: RealtimeHub = Depends(get_hub),
) -> None:
    """Carry the realtime command/event protocol for one client connection.

    A token in the query string or Authorization header authenticates the
    session right away; otherwise the client sends an ``authenticate`` frame.
    """

    await websocket.accept()
    session = await hub.open_session(websocket)
    watchdog: asyncio.Task[None] | None = None
    if settings.realtime_auth_timeout_seconds > 0:
        watchdog = asyncio.create_task(
            _close_if_unauthenticated(websocket, session, settings.realtime_auth_timeout_seconds)
        )

    try:
        token = _handshake_token(websocket)
        if token:
            await hub.handle(
                session.id, build_envelope(CommandType.AUTHENTICATE, {"token": token})
            )

        async for raw_message in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=settings.websocket_keepalive_timeout_seconds,
            ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
        ):
            try:
                frame = json.loads(raw_message)
            except json.JSONDecodeError:
                await safe_send_json(
                    websocket,
                    build_envelope(
                        EventType.ERROR,
                        {"code": "validation_error", "detail": "Invalid message format"},
                    ),
                )
                continue
            await hub.handle(session.id, frame)
    finally:
        if watchdog is not None:
            watchdog.cancel()
        with anyio.CancelScope(shield=True):
            await hub.close_session(session.id)
