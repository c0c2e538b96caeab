"""Per-connection realtime session handling.

Each WebSocket is driven by one ``ChatSession`` (the connection's state) and
the shared ``SessionHandler`` (the behaviour). Frames in both directions are
JSON objects of the form ``{"event": <name>, "data": <payload>}``.

Lifecycle:
    UNAUTHENTICATED -> AUTHENTICATED -> (per room) joined -> DISCONNECTED

Protocol Flow:
    1. Client connects with ``?token=`` (or an Authorization header), or
       sends ``{event: "authenticate", data: {token}}`` as its first frame
       → on failure the socket is closed with code 4401
       → Server broadcasts ``user-online`` to everybody else (first tab only)
       → Server sends ``connected`` {userId, onlineUsers}
    2. ``join-conversation`` {partnerId}
       → Server sends ``joined-conversation`` {partnerId, room, messages}
    3. ``send-message`` {receiverId, message, replyTo?, requestId?}
       → persisted, then ``new-message`` broadcast to the room
       → Server sends ``message-ack`` {requestId, success, messageId|error}
    4. ``typing`` {partnerId, isTyping}
       → ``user-typing`` {userId, isTyping} to the partner's sockets
    5. ``message-delivered`` {messageId} (receiver only)
       → ``message-delivered`` {messageId, deliveredAt} to the sender
    6. ``mark-read`` {partnerId}
       → ``messages-read`` {readerId, partnerId, count} to the partner
    7. On disconnect → ``user-offline`` broadcast (last tab only)

Errors are reported to the originating socket as ``error`` {code, message}
events and never close the connection.
"""
import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PayloadError

from heartlock.errors import AuthenticationError, ChatError, ValidationError

from .auth import AUTH_FAILED_CLOSE_CODE, ConnectionAuthenticator
from .enrich import enrich_message, enrich_messages
from .presence import PresenceTracker
from .rooms import RoomRouter, room_key
from .schemas import (
    AuthenticatePayload,
    JoinConversationPayload,
    MarkReadPayload,
    MessageDeliveredPayload,
    SendMessagePayload,
    TypingPayload,
)
from .store import DEFAULT_PAGE_SIZE, MessageStore
from .users import UserDirectory

logger = logging.getLogger(__name__)

AUTHENTICATE_EVENT = "authenticate"


class SessionState(str, Enum):
    """Connection lifecycle state."""
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    DISCONNECTED = "disconnected"


@dataclass
class ChatSession:
    """State of one realtime connection."""
    websocket: WebSocket
    connection_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: SessionState = SessionState.UNAUTHENTICATED
    user_id: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        return self.state is SessionState.AUTHENTICATED


def event(name: str, data: Any) -> dict:
    """Build an outgoing frame."""
    return {"event": name, "data": data}


def _payload_error(exc: PayloadError) -> ValidationError:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    detail = first.get("msg", "invalid payload")
    return ValidationError(f"Invalid payload: {location} {detail}".strip())


EventHandler = Callable[[ChatSession, Any], Awaitable[None]]


class SessionHandler:
    """Runs the realtime protocol for every connection.

    All collaborators are injected so they can be swapped (e.g. for a
    shared-cache presence tracker) without touching the protocol logic.
    """

    def __init__(
        self,
        authenticator: ConnectionAuthenticator,
        presence: PresenceTracker,
        rooms: RoomRouter,
        store: MessageStore,
        users: UserDirectory,
        *,
        auth_timeout_seconds: float = 10.0,
        join_history_limit: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self.authenticator = authenticator
        self.presence = presence
        self.rooms = rooms
        self.store = store
        self.users = users
        self.auth_timeout_seconds = auth_timeout_seconds
        self.join_history_limit = join_history_limit

        # Every handler here requires an AUTHENTICATED session
        self._handlers: Dict[str, EventHandler] = {
            "join-conversation": self.on_join_conversation,
            "send-message": self.on_send_message,
            "typing": self.on_typing,
            "message-delivered": self.on_message_delivered,
            "mark-read": self.on_mark_read,
        }

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def run(self, websocket: WebSocket) -> None:
        """Drive one connection from handshake to disconnect."""
        session = ChatSession(websocket=websocket)
        if not await self.authenticate(session):
            return

        try:
            await self.on_connected(session)
            while True:
                try:
                    frame = await self._receive_frame(websocket)
                except ChatError as e:
                    await self._send_error(websocket, e)
                    continue
                await self.dispatch(session, frame)
        except WebSocketDisconnect:
            logger.info(f"[WS] {session.user_id} disconnected ({session.connection_id})")
        finally:
            await self.on_disconnect(session)

    async def authenticate(self, session: ChatSession) -> bool:
        """Bind a verified identity to the connection before anything else.

        Returns:
            True if the session is now AUTHENTICATED. On failure the socket
            has been closed and no presence or room state was created.
        """
        websocket = session.websocket
        token = self.authenticator.token_from_handshake(websocket)

        if token is not None:
            try:
                user_id = self.authenticator.verify(token)
            except AuthenticationError as e:
                logger.warning(f"[WS] Handshake rejected: {e.message}")
                await websocket.close(code=AUTH_FAILED_CLOSE_CODE)
                return False
            await websocket.accept()
        else:
            await websocket.accept()
            try:
                user_id = await asyncio.wait_for(
                    self._authenticate_first_frame(websocket),
                    timeout=self.auth_timeout_seconds,
                )
            except WebSocketDisconnect:
                return False
            except (asyncio.TimeoutError, AuthenticationError) as e:
                error = e if isinstance(e, AuthenticationError) else AuthenticationError(
                    "Authentication timed out"
                )
                logger.warning(f"[WS] Authentication failed: {error.message}")
                await self._send_error(websocket, error)
                await websocket.close(code=AUTH_FAILED_CLOSE_CODE)
                return False

        session.user_id = user_id
        session.state = SessionState.AUTHENTICATED
        return True

    async def _authenticate_first_frame(self, websocket: WebSocket) -> str:
        try:
            frame = await self._receive_frame(websocket)
        except ValidationError as e:
            raise AuthenticationError(e.message) from e
        if frame.get("event") != AUTHENTICATE_EVENT:
            raise AuthenticationError("Authenticate before sending other events")
        try:
            payload = AuthenticatePayload.model_validate(frame.get("data") or {})
        except PayloadError as e:
            raise AuthenticationError("Missing credentials") from e
        return self.authenticator.verify(payload.token)

    async def on_connected(self, session: ChatSession) -> None:
        websocket = session.websocket
        user_id = session.user_id
        self.rooms.register(websocket, user_id)

        if self.presence.mark_online(user_id, session.connection_id):
            await self.rooms.broadcast_all(
                event("user-online", user_id), exclude_websocket=websocket
            )

        await self._emit(websocket, "connected", {
            "userId": user_id,
            "onlineUsers": self.presence.online_users(),
        })
        logger.info(
            f"[WS] {user_id} connected ({session.connection_id}); "
            f"{self.rooms.connection_count()} open connections"
        )

    async def on_disconnect(self, session: ChatSession) -> None:
        """Tear down subscriptions and update presence."""
        if not session.is_authenticated:
            session.state = SessionState.DISCONNECTED
            return
        session.state = SessionState.DISCONNECTED
        self.rooms.leave_all(session.websocket)

        if self.presence.mark_offline(session.user_id, session.connection_id):
            await self.rooms.broadcast_all(event("user-offline", session.user_id))

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def dispatch(self, session: ChatSession, frame: dict) -> None:
        """Route one incoming frame to its event handler."""
        websocket = session.websocket
        name = frame.get("event")
        data = frame.get("data") or {}
        logger.debug("[WS] %s received: event=%s", session.user_id, name)

        if not session.is_authenticated:
            await self._send_error(websocket, AuthenticationError("Not authenticated"))
            return

        if not isinstance(name, str):
            await self._send_error(websocket, ValidationError("Frame event must be a string"))
            return

        if name == AUTHENTICATE_EVENT:
            await self._send_error(websocket, ValidationError("Already authenticated"))
            return

        handler = self._handlers.get(name)
        if handler is None:
            await self._emit(websocket, "error", {
                "code": "unknown_event",
                "message": f"Unknown event: {name}",
            })
            return

        try:
            await handler(session, data)
        except PayloadError as e:
            await self._send_error(websocket, _payload_error(e))
        except ChatError as e:
            logger.info(f"[WS] {name} from {session.user_id} failed: {e.message}")
            await self._send_error(websocket, e)
        except Exception as e:
            logger.exception(f"[WS] {name} from {session.user_id} crashed: {e}")
            await self._emit(websocket, "error", {
                "code": "internal_error",
                "message": "Internal server error",
            })

    # =========================================================================
    # Event handlers
    # =========================================================================

    async def on_join_conversation(self, session: ChatSession, data: Any) -> None:
        payload = JoinConversationPayload.model_validate(data)
        key = self.rooms.join(session.websocket, payload.partnerId)

        recent = self.store.recent(session.user_id, payload.partnerId, self.join_history_limit)
        messages = enrich_messages(list(reversed(recent)), self.store, self.users)

        await self._emit(session.websocket, "joined-conversation", {
            "partnerId": payload.partnerId,
            "room": key,
            "messages": [m.model_dump(mode="json") for m in messages],
        })
        logger.info(f"[WS] {session.user_id} joined room {key}")

    async def on_send_message(self, session: ChatSession, data: Any) -> None:
        """Persist a message, then fan it out to the conversation room.

        The store write is awaited before the broadcast, so anyone reacting
        to ``new-message`` can already read it back from history.
        """
        websocket = session.websocket
        request_id = data.get("requestId") if isinstance(data, dict) else None

        try:
            payload = SendMessagePayload.model_validate(data)
            self.users.require(payload.receiverId)
            message = self.store.append(
                session.user_id, payload.receiverId, payload.message, payload.replyTo
            )
            enriched = enrich_message(message, self.store, self.users)
        except (ChatError, PayloadError) as e:
            error = _payload_error(e) if isinstance(e, PayloadError) else e
            logger.warning(f"[WS] send-message from {session.user_id} failed: {error.message}")
            await self._emit(websocket, "message-ack", {
                "requestId": request_id,
                "success": False,
                "error": error.to_dict(),
            })
            return

        key = room_key(message.sender, message.receiver)
        delivered_to = await self.rooms.broadcast(
            event("new-message", enriched.model_dump(mode="json")), key
        )
        logger.info(f"[WS] Message {message.id} broadcast to {delivered_to} sockets in {key}")

        await self._emit(websocket, "message-ack", {
            "requestId": request_id,
            "success": True,
            "messageId": message.id,
        })

    async def on_typing(self, session: ChatSession, data: Any) -> None:
        payload = TypingPayload.model_validate(data)
        room_key(session.user_id, payload.partnerId)  # validates the pair
        await self.rooms.send_to_user(
            event("user-typing", {"userId": session.user_id, "isTyping": payload.isTyping}),
            payload.partnerId,
        )

    async def on_message_delivered(self, session: ChatSession, data: Any) -> None:
        payload = MessageDeliveredPayload.model_validate(data)
        message = self.store.mark_delivered(payload.messageId, session.user_id)
        await self.rooms.send_to_user(
            event("message-delivered", {
                "messageId": message.id,
                "deliveredAt": message.deliveredAt.isoformat() if message.deliveredAt else None,
            }),
            message.sender,
        )

    async def on_mark_read(self, session: ChatSession, data: Any) -> None:
        payload = MarkReadPayload.model_validate(data)
        room_key(session.user_id, payload.partnerId)
        count = self.store.mark_read(payload.partnerId, session.user_id)
        if count:
            await self.rooms.send_to_user(
                event("messages-read", {
                    "readerId": session.user_id,
                    "partnerId": payload.partnerId,
                    "count": count,
                }),
                payload.partnerId,
            )

    # =========================================================================
    # Wire helpers
    # =========================================================================

    async def _receive_frame(self, websocket: WebSocket) -> dict:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
        text = message.get("text")
        if text is None:
            raise ValidationError("Frames must be JSON text, not binary")
        try:
            frame = json.loads(text)
        except ValueError as e:
            raise ValidationError("Frame is not valid JSON") from e
        if not isinstance(frame, dict):
            raise ValidationError("Frame must be a JSON object")
        return frame

    async def _emit(self, websocket: WebSocket, name: str, data: Any) -> None:
        await websocket.send_json(event(name, data))

    async def _send_error(self, websocket: WebSocket, error: ChatError) -> None:
        await self._emit(websocket, "error", error.to_dict())
