"""Tunables of the client side connection manager and polling bridge."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class ClientConfig:
    """Where to reach the server and how hard to try."""

    ws_url: str
    api_url: str
    connect_timeout: float = 20.0
    auth_timeout: float = 10.0
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    max_reconnect_attempts: int = 5
    message_poll_interval: float = 5.0
    room_poll_interval: float = 10.0
    presence_poll_interval: float = 15.0
    upgrade_interval: float = 30.0
    http_timeout: float = 10.0
    allow_anonymous: bool = False
    fallback_to_polling: bool = True
    force_polling: bool = False

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnection *attempt* (1-based).

        The first retry goes out immediately; later ones double from
        ``backoff_base`` up to ``backoff_max``.
        """

        if attempt < 2:
            return 0.0
        return min(self.backoff_base * (2 ** (attempt - 2)), self.backoff_max)


__all__ = ["ClientConfig"]
