"""Client side of the realtime chat core: push connection with polling fallback."""

from .config import ClientConfig
from .connection import ConnectionManager, ConnectionState
from .polling import PollingBridge
from .service import ClientStatus, OutboxEntry, OutboxStatus, RealtimeClient, TransportMode
from .tracker import DeliveryTracker

__all__ = [
    "ClientConfig",
    "ClientStatus",
    "ConnectionManager",
    "ConnectionState",
    "DeliveryTracker",
    "OutboxEntry",
    "OutboxStatus",
    "PollingBridge",
    "RealtimeClient",
    "TransportMode",
]
