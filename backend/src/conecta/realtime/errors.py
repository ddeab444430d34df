"""Error taxonomy shared by the realtime server and client halves."""

from __future__ import annotations

from typing import Iterable


class RealtimeError(Exception):
    """Base class for every error raised by the realtime core."""

    code = "internal_error"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.__class__.__doc__ or self.code
        super().__init__(self.detail)


class AuthenticationError(RealtimeError):
    """Credential missing, invalid or expired."""

    code = "authentication_error"


class RoomNotFoundError(RealtimeError):
    """Referenced room does not exist."""

    code = "room_not_found"


class MessageNotFoundError(RealtimeError):
    """Referenced message does not exist."""

    code = "message_not_found"


class ValidationError(RealtimeError):
    """Malformed input."""

    code = "validation_error"


class PermissionDeniedError(RealtimeError):
    """The user may not perform this action."""

    code = "permission_denied"


class RealtimeTransportError(RealtimeError):
    """Transport level failure handled by the connection manager."""

    code = "transport_error"


class ConnectionTimeoutError(RealtimeTransportError):
    """The transport handshake did not complete in time."""

    code = "connection_timeout"


class MaxReconnectAttemptsExceeded(RealtimeTransportError):
    """Reconnection budget exhausted; a manual connect is required."""

    code = "max_reconnect_attempts"

    def __init__(self, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(f"Gave up after {attempts} reconnection attempts")


class DeliveryPartialFailure(RealtimeError):
    """Fan-out could not reach some of the target sessions."""

    code = "delivery_partial_failure"

    def __init__(self, failed: Iterable[str], delivered: int) -> None:
        self.failed = sorted(set(failed))
        self.delivered = delivered
        super().__init__(
            f"Delivery failed for {len(self.failed)} session(s); {delivered} delivered"
        )


__all__ = [
    "AuthenticationError",
    "ConnectionTimeoutError",
    "DeliveryPartialFailure",
    "MaxReconnectAttemptsExceeded",
    "MessageNotFoundError",
    "PermissionDeniedError",
    "RealtimeError",
    "RealtimeTransportError",
    "RoomNotFoundError",
    "ValidationError",
]
