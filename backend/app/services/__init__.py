"""Persistence adapters behind the realtime core interfaces."""

from .chat_store import SqlMessageStore, SqlRoomCatalog, SqlUserDirectory

__all__ = ["SqlMessageStore", "SqlRoomCatalog", "SqlUserDirectory"]
