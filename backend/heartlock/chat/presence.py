"""Process-wide presence tracking.

A user is online while at least one of their realtime connections is open.
Each connection is tracked by id, so closing one of several browser tabs
does not flip the user offline.

Thread Safety:
    Designed for a single event loop; mutations are not guarded by locks.
"""
import logging
from typing import Dict, List, Set

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Maps user id -> ids of that user's open connections."""

    def __init__(self) -> None:
        self._connections: Dict[str, Set[str]] = {}

    def mark_online(self, user_id: str, connection_id: str) -> bool:
        """Record an open connection.

        Returns:
            True if the user just went from offline to online.
        """
        connections = self._connections.setdefault(user_id, set())
        went_online = not connections
        connections.add(connection_id)
        if went_online:
            logger.info(f"[Presence] {user_id} is online")
        return went_online

    def mark_offline(self, user_id: str, connection_id: str) -> bool:
        """Record a closed connection.

        Returns:
            True if this was the user's last open connection.
        """
        connections = self._connections.get(user_id)
        if not connections or connection_id not in connections:
            return False
        connections.discard(connection_id)
        if connections:
            return False
        del self._connections[user_id]
        logger.info(f"[Presence] {user_id} is offline")
        return True

    def is_online(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    def connection_count(self, user_id: str) -> int:
        return len(self._connections.get(user_id, ()))

    def online_users(self) -> List[str]:
        return sorted(self._connections)
