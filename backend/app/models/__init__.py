"""Database models package."""

from .base import Base
from .chat import (
    ChatMessage,
    DirectMessage,
    MessageReaction,
    MessageReceipt,
    Room,
    User,
)

__all__ = [
    "Base",
    "User",
    "Room",
    "ChatMessage",
    "MessageReceipt",
    "MessageReaction",
    "DirectMessage",
]
