"""Server side realtime chat core: sessions, rooms, presence, typing, dispatch."""

from .dispatch import MessageDispatchPipeline
from .errors import (
    AuthenticationError,
    ConnectionTimeoutError,
    DeliveryPartialFailure,
    MaxReconnectAttemptsExceeded,
    MessageNotFoundError,
    PermissionDeniedError,
    RealtimeError,
    RealtimeTransportError,
    RoomNotFoundError,
    ValidationError,
)
from .events import CommandType, EventEmitter, EventType, build_envelope
from .hub import RealtimeHub
from .presence import PresenceTracker
from .rooms import RoomMembershipTracker
from .sessions import Session, SessionRegistry
from .typing_status import TypingIndicatorAggregator

__all__ = [
    "AuthenticationError",
    "CommandType",
    "ConnectionTimeoutError",
    "DeliveryPartialFailure",
    "EventEmitter",
    "EventType",
    "MaxReconnectAttemptsExceeded",
    "MessageDispatchPipeline",
    "MessageNotFoundError",
    "PermissionDeniedError",
    "PresenceTracker",
    "RealtimeError",
    "RealtimeHub",
    "RealtimeTransportError",
    "RoomMembershipTracker",
    "RoomNotFoundError",
    "Session",
    "SessionRegistry",
    "TypingIndicatorAggregator",
    "ValidationError",
    "build_envelope",
]
