"""Realtime chat module: presence, conversation rooms and the message store."""

from .presence import PresenceTracker
from .rooms import RoomRouter, room_key
from .session import SessionHandler
from .store import MessageStore
from .users import UserDirectory

__all__ = [
    "MessageStore",
    "PresenceTracker",
    "RoomRouter",
    "SessionHandler",
    "UserDirectory",
    "room_key",
]
