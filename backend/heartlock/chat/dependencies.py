"""Service wiring for the chat module.

Each collaborator is created lazily from the application config the first
time it is requested and then shared by every WebSocket session and REST
handler. ``reset_services()`` drops them all, which tests use to start each
case from a clean in-memory state.
"""
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from heartlock.config import get_config
from heartlock.errors import AuthenticationError

from .auth import ConnectionAuthenticator
from .presence import PresenceTracker
from .rooms import RoomRouter
from .session import SessionHandler
from .store import MessageStore
from .users import UserDirectory

# auto_error=False so a missing header goes through our 401 error handler
bearer_scheme = HTTPBearer(auto_error=False)

_authenticator: Optional[ConnectionAuthenticator] = None
_presence: Optional[PresenceTracker] = None
_rooms: Optional[RoomRouter] = None
_session_handler: Optional[SessionHandler] = None


def get_message_store() -> MessageStore:
    config = get_config()
    return MessageStore.get_instance(
        config.database.path,
        edit_window_seconds=config.chat.edit_window_seconds,
        retention_hours=config.chat.retention_hours,
    )


def get_user_directory() -> UserDirectory:
    return UserDirectory.get_instance(get_config().database.path)


def get_authenticator() -> ConnectionAuthenticator:
    global _authenticator
    if _authenticator is None:
        config = get_config()
        _authenticator = ConnectionAuthenticator(
            secret_key=config.secrets.jwt.secret_key,
            algorithm=config.secrets.jwt.algorithm,
            token_expire_minutes=config.auth.token_expire_minutes,
        )
    return _authenticator


def get_presence_tracker() -> PresenceTracker:
    global _presence
    if _presence is None:
        _presence = PresenceTracker()
    return _presence


def get_room_router() -> RoomRouter:
    global _rooms
    if _rooms is None:
        _rooms = RoomRouter()
    return _rooms


def get_session_handler() -> SessionHandler:
    global _session_handler
    if _session_handler is None:
        config = get_config()
        _session_handler = SessionHandler(
            authenticator=get_authenticator(),
            presence=get_presence_tracker(),
            rooms=get_room_router(),
            store=get_message_store(),
            users=get_user_directory(),
            auth_timeout_seconds=config.chat.auth_timeout_seconds,
            join_history_limit=config.chat.join_history_limit,
        )
    return _session_handler


def reset_services() -> None:
    """Forget every shared service instance (for testing)."""
    global _authenticator, _presence, _rooms, _session_handler
    _authenticator = None
    _presence = None
    _rooms = None
    _session_handler = None
    MessageStore.reset_instance()
    UserDirectory.reset_instance()


def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    authenticator: ConnectionAuthenticator = Depends(get_authenticator),
) -> str:
    """Resolve the caller's user id from the ``Authorization`` header.

    Raises:
        AuthenticationError: Header missing or token invalid (HTTP 401).
    """
    if credentials is None:
        raise AuthenticationError("Missing credentials")
    return authenticator.verify(credentials.credentials)
