"""Pydantic schemas of the HTTP API."""

from .chat import (
    ConversationReadRequest,
    ConversationReadResponse,
    ConversationRequest,
    ConversationResponse,
    DirectMessageRequest,
    EditMessageRequest,
    MarkReadRequest,
    MarkReadResponse,
    MessagePage,
    OnlineUsersResponse,
    PollingResponse,
    PollingUpdate,
    ReactionRequest,
    ReactionResponse,
    RoomSummary,
    SendMessageRequest,
    UserStatusResponse,
)

__all__ = [
    "ConversationReadRequest",
    "ConversationReadResponse",
    "ConversationRequest",
    "ConversationResponse",
    "DirectMessageRequest",
    "EditMessageRequest",
    "MarkReadRequest",
    "MarkReadResponse",
    "MessagePage",
    "OnlineUsersResponse",
    "PollingResponse",
    "PollingUpdate",
    "ReactionRequest",
    "ReactionResponse",
    "RoomSummary",
    "SendMessageRequest",
    "UserStatusResponse",
]
