"""Conversation room routing and WebSocket fan-out.

Two kinds of broadcast groups live here:
    - Conversation rooms, keyed by ``room_key(a, b)``. A socket joins one
      per active conversation; ``new-message`` events go to the room.
    - Personal channels, one per user id. Every authenticated socket of a
      user is subscribed; peer-to-peer signals (typing, read receipts) go
      to the partner's channel.

Rooms are derived state: nothing is persisted, and a room exists only while
at least one subscribed socket references it. There is no explicit leave;
``leave_all`` tears every subscription down when the socket closes.

Thread Safety:
    This implementation is designed for async/await usage with a single event loop.
    It is NOT thread-safe for concurrent access from multiple threads.

Performance Notes:
    - Broadcasting uses asyncio.gather() for concurrent message delivery
    - Failed connections are automatically removed during broadcast
"""
import asyncio
import logging
from typing import Dict, List, Optional, Set

from fastapi import WebSocket

from heartlock.errors import ValidationError

logger = logging.getLogger(__name__)

ROOM_SEPARATOR = "_"
USER_CHANNEL_PREFIX = "user:"


def check_user_id(user_id: str) -> str:
    """Reject ids that cannot be told apart once joined into a room key.

    Room keys and personal channels share one namespace, so an id holding
    ``ROOM_SEPARATOR`` could alias another pair's room.

    Raises:
        ValidationError: The id is empty or contains ``ROOM_SEPARATOR``.
    """
    if not user_id:
        raise ValidationError("User id is required")
    if ROOM_SEPARATOR in user_id:
        raise ValidationError(f"User id must not contain '{ROOM_SEPARATOR}': {user_id}")
    return user_id


def room_key(user_a: str, user_b: str) -> str:
    """Deterministic, order-independent room name for a user pair.

    Raises:
        ValidationError: Either id is empty or malformed, or both ids are
            the same.
    """
    check_user_id(user_a)
    check_user_id(user_b)
    if user_a == user_b:
        raise ValidationError("A conversation needs two different users")
    return ROOM_SEPARATOR.join(sorted([user_a, user_b]))


def user_channel(user_id: str) -> str:
    """Name of the personal channel every socket of ``user_id`` joins."""
    check_user_id(user_id)
    return f"{USER_CHANNEL_PREFIX}{user_id}"


class RoomRouter:
    """Tracks socket subscriptions and delivers payloads to them."""

    def __init__(self) -> None:
        # room -> list of subscribed WebSocket connections
        self.active_connections: Dict[str, List[WebSocket]] = {}

        # websocket -> rooms it is subscribed to (for teardown)
        self.websocket_rooms: Dict[WebSocket, Set[str]] = {}

        # websocket -> authenticated user id
        self.websocket_to_user: Dict[WebSocket, str] = {}

    def register(self, websocket: WebSocket, user_id: str) -> None:
        """Attach an authenticated socket to its user's personal channel."""
        self.websocket_to_user[websocket] = user_id
        self._subscribe(websocket, user_channel(user_id))

    def join(self, websocket: WebSocket, partner_id: str) -> str:
        """Subscribe a registered socket to the room shared with ``partner_id``.

        Joining the same room twice is a no-op.

        Returns:
            The room key.
        """
        user_id = self.websocket_to_user.get(websocket)
        if user_id is None:
            raise ValidationError("Socket is not registered")
        key = room_key(user_id, partner_id)
        self._subscribe(websocket, key)
        return key

    def _subscribe(self, websocket: WebSocket, room: str) -> None:
        connections = self.active_connections.setdefault(room, [])
        if websocket not in connections:
            connections.append(websocket)
        self.websocket_rooms.setdefault(websocket, set()).add(room)

    def leave_all(self, websocket: WebSocket) -> Set[str]:
        """Drop every subscription of a socket.

        Returns:
            The rooms the socket was subscribed to.
        """
        rooms = self.websocket_rooms.pop(websocket, set())
        for room in rooms:
            self._remove(room, websocket)
        self.websocket_to_user.pop(websocket, None)
        return rooms

    def _remove(self, room: str, websocket: WebSocket) -> None:
        connections = self.active_connections.get(room)
        if connections is None:
            return
        if websocket in connections:
            connections.remove(websocket)
        if not connections:
            # Last subscriber gone: the room ceases to exist
            del self.active_connections[room]

    def rooms_of(self, websocket: WebSocket) -> Set[str]:
        return set(self.websocket_rooms.get(websocket, set()))

    def room_size(self, room: str) -> int:
        """Get the number of sockets subscribed to a room."""
        return len(self.active_connections.get(room, []))

    def connection_count(self) -> int:
        return len(self.websocket_to_user)

    # =========================================================================
    # Delivery
    # =========================================================================

    async def broadcast(self, message: dict, room: str) -> int:
        """Send a payload to every socket in a room concurrently.

        Returns:
            Number of sockets that received it.
        """
        return await self._deliver(room, list(self.active_connections.get(room, [])), message)

    async def send_to_user(self, message: dict, user_id: str) -> int:
        """Send a payload to every open socket of one user."""
        return await self.broadcast(message, user_channel(user_id))

    async def broadcast_all(
        self, message: dict, exclude_websocket: Optional[WebSocket] = None
    ) -> int:
        """Send a payload to every authenticated socket in the process."""
        connections = [
            conn for conn in self.websocket_to_user
            if conn != exclude_websocket
        ]
        if not connections:
            return 0
        results = await asyncio.gather(
            *[self._safe_send(conn, message) for conn in connections],
            return_exceptions=True
        )
        return sum(1 for success in results if success is True)

    async def _deliver(self, room: str, connections: List[WebSocket], message: dict) -> int:
        if not connections:
            return 0

        # Send to all connections concurrently
        results = await asyncio.gather(
            *[self._safe_send(conn, message) for conn in connections],
            return_exceptions=True
        )

        # Remove failed connections
        failed_connections = [
            conn for conn, success in zip(connections, results)
            if success is not True
        ]
        self._cleanup_connections(room, failed_connections)
        return len(connections) - len(failed_connections)

    async def _safe_send(self, connection: WebSocket, message: dict) -> bool:
        """Send a message to a WebSocket connection with error handling.

        Returns:
            True if successful, False if connection failed.
        """
        try:
            await connection.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False

    def _cleanup_connections(
        self, room: str, failed_connections: List[WebSocket]
    ) -> None:
        """Remove failed connections from a room."""
        for conn in failed_connections:
            self._remove(room, conn)
            rooms = self.websocket_rooms.get(conn)
            if rooms is not None:
                rooms.discard(room)
            logger.debug(f"Removed dead connection from room {room}")
