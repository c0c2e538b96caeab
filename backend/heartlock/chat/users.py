"""User directory: display data for chat participants.

Account records are owned by the users service; this directory only keeps
the public profile fields the chat needs to enrich messages (username and
profile picture) and answers "does this user exist" for REST validation.
Rows are written by the users service through ``upsert``; nothing in this
application creates them. Until that service has provisioned a user, every
``send-message`` to them and every ``GET /api/chat/conversation/{peer}``
naming them fails with ``NotFoundError`` (HTTP 404).
"""
import logging
import threading
from typing import Dict, Iterable, Optional

import duckdb

from heartlock.errors import NotFoundError, TransientStoreError

from .schemas import UserSummary

logger = logging.getLogger(__name__)


class UserDirectory:
    """Singleton DuckDB-backed lookup of user display data."""

    _instance: Optional["UserDirectory"] = None
    _db_path: str = "heartlock.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        if db_path:
            self._db_path = db_path
        self._lock = threading.RLock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._execute("""
            CREATE TABLE IF NOT EXISTS chat_users (
                id VARCHAR PRIMARY KEY,
                username VARCHAR NOT NULL,
                profile_pic VARCHAR
            )
        """)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "UserDirectory":
        """Get or create the singleton instance."""
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _execute(self, sql: str, params: Optional[list] = None) -> list:
        with self._lock:
            try:
                if self._connection is None:
                    self._connection = duckdb.connect(self._db_path)
                return self._connection.execute(sql, params or []).fetchall()
            except duckdb.Error as e:
                logger.error(f"[Users] Statement failed: {e}")
                raise TransientStoreError() from e

    def upsert(self, user_id: str, username: str, profile_pic: Optional[str] = None) -> UserSummary:
        """Create or update a user's display data."""
        self._execute(
            """
            INSERT INTO chat_users (id, username, profile_pic) VALUES (?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                username = excluded.username,
                profile_pic = excluded.profile_pic
            """,
            [user_id, username, profile_pic],
        )
        return UserSummary(id=user_id, username=username, profilePic=profile_pic)

    def get(self, user_id: str) -> Optional[UserSummary]:
        rows = self._execute(
            "SELECT id, username, profile_pic FROM chat_users WHERE id = ?",
            [user_id],
        )
        if not rows:
            return None
        return UserSummary(id=rows[0][0], username=rows[0][1], profilePic=rows[0][2])

    def require(self, user_id: str) -> UserSummary:
        """Get a user or raise NotFoundError."""
        user = self.get(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def summaries(self, user_ids: Iterable[str]) -> Dict[str, UserSummary]:
        """Resolve display data for many ids.

        Unknown ids map to a bare ``UserSummary`` carrying only the id, so a
        deleted account never breaks message rendering.
        """
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        rows = self._execute(
            f"SELECT id, username, profile_pic FROM chat_users WHERE id IN ({placeholders})",
            ids,
        )
        found = {
            row[0]: UserSummary(id=row[0], username=row[1], profilePic=row[2])
            for row in rows
        }
        return {user_id: found.get(user_id, UserSummary(id=user_id)) for user_id in ids}

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
