"""HTTP polling stand-in for the push channel."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Union

import httpx

from conecta.realtime.errors import (
    AuthenticationError,
    PermissionDeniedError,
    RealtimeError,
    RealtimeTransportError,
    RoomNotFoundError,
    ValidationError,
)
from conecta.realtime.events import EventEmitter
from conecta.realtime.records import MessageCursor

from .config import ClientConfig
from .connection import TokenProvider, resolve_token
from .tracker import DeliveryTracker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PollTarget:
    """One event class pulled on its own timer."""

    name: str
    path: str
    interval: float
    since: str | None = None
    cursor: str | None = None


_STATUS_ERRORS: Dict[int, type[RealtimeError]] = {
    401: AuthenticationError,
    403: PermissionDeniedError,
    404: RoomNotFoundError,
    422: ValidationError,
}


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    try:
        detail = response.json().get("detail")
    except ValueError:
        detail = None
    if not isinstance(detail, str):
        detail = f"HTTP {response.status_code}"
    raise _STATUS_ERRORS.get(response.status_code, RealtimeTransportError)(detail)


class PollingBridge:
    """Pull messages, room changes and presence from the REST surface.

    Each event class runs on its own interval and passes the ``until`` of
    the previous window as the next ``since``. Message polls resume from the
    returned ``cursor`` instead, so ties on ``createdAt`` are never skipped.
    Updates are emitted under the same event names and payloads the push
    channel uses.
    """

    def __init__(
        self,
        config: ClientConfig,
        token_provider: TokenProvider,
        *,
        tracker: DeliveryTracker | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.events = EventEmitter()
        self._config = config
        self._token_provider = token_provider
        self._tracker = tracker or DeliveryTracker()
        self._client = client
        self._owns_client = client is None
        self._rooms: set[int] = set()
        self._tasks: list[asyncio.Task[None]] = []
        self.targets: Dict[str, PollTarget] = {
            "messages": PollTarget("messages", "/chat/updates", config.message_poll_interval),
            "rooms": PollTarget("rooms", "/rooms/updates", config.room_poll_interval),
            "presence": PollTarget("presence", "/users/notifications", config.presence_poll_interval),
        }

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def on(self, event: Any, callback: Any):
        return self.events.on(event, callback)

    def off(self, event: Any, callback: Any = None) -> None:
        self.events.off(event, callback)

    def set_rooms(self, room_ids: Iterable[int]) -> None:
        self._rooms = set(room_ids)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._config.api_url, timeout=self._config.http_timeout
            )
            self._owns_client = True
        return self._client

    async def start(self, room_ids: Iterable[int] | None = None) -> None:
        if room_ids is not None:
            self.set_rooms(room_ids)
        if self.running:
            return
        resume = self._tracker.resume_point(self._rooms)
        if resume is not None:
            self.targets["messages"].cursor = MessageCursor(resume.created_at, resume.message_id).encode()
        self._tasks = [
            asyncio.create_task(self._run(target), name=f"conecta-poll-{target.name}")
            for target in self.targets.values()
        ]
        logger.info("Polling transport started", extra={"rooms": sorted(self._rooms)})

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        current = asyncio.current_task()
        for task in tasks:
            if task is not current:
                task.cancel()
        pending = [task for task in tasks if task is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if tasks:
            logger.info("Polling transport stopped")

    async def aclose(self) -> None:
        await self.stop()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _run(self, target: PollTarget) -> None:
        while True:
            try:
                await self.poll_once(target.name)
            except AuthenticationError:
                logger.warning("Polling stopped: credential rejected", extra={"target": target.name})
                return
            except (httpx.HTTPError, RealtimeError):
                logger.warning(
                    "Poll request failed",
                    extra={"target": target.name},
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
            await asyncio.sleep(target.interval)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _headers(self) -> dict[str, str]:
        token = await resolve_token(self._token_provider)
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._http().request(method, path, headers=await self._headers(), **kwargs)
        _raise_for_status(response)
        return response.json()

    async def poll_once(self, name: str) -> int:
        """Run one window of *name*; return how many updates were emitted."""

        target = self.targets[name]
        params: dict[str, str] = {}
        if target.cursor is not None:
            params["cursor"] = target.cursor
        elif target.since is not None:
            params["since"] = target.since
        if name == "messages" and self._rooms:
            params["rooms"] = ",".join(str(room_id) for room_id in sorted(self._rooms))

        body = await self._request("GET", target.path, params=params)
        updates = body.get("updates") or []
        for update in updates:
            await self.events.emit(update["event"], update.get("data") or {})
        target.since = body.get("until") or target.since
        if body.get("cursor"):
            target.cursor = body["cursor"]
            position = MessageCursor.decode(target.cursor)
            # Every polled room is complete up to the cursor, quiet ones included.
            for room_id in self._rooms:
                self._tracker.mark(room_id, position.created_at, position.message_id)
        return len(updates)

    async def send_message(
        self,
        room_id: int,
        content: str,
        message_type: str = "text",
        *,
        attachments: list[dict[str, Any]] | None = None,
        reply_to: int | None = None,
        client_id: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"content": content, "type": message_type, "clientId": client_id}
        if attachments:
            payload["attachments"] = attachments
        if reply_to is not None:
            payload["replyTo"] = reply_to
        return await self._request("POST", f"/chat/rooms/{room_id}/messages", json=payload)

    async def mark_read(self, room_id: int, message_ids: list[int] | None = None) -> dict[str, Any]:
        payload: dict[str, Union[list[int], None]] = {"messageIds": message_ids}
        return await self._request("POST", f"/chat/rooms/{room_id}/read", json=payload)


__all__ = ["PollTarget", "PollingBridge"]
