"""DuckDB-based durable message store.

This module provides persistent storage for chat messages using DuckDB, a
fast embedded database. The service implements the singleton pattern so all
WebSocket sessions and REST handlers share one connection.

Database Schema:
    chat_messages table:
        - id: Auto-incrementing primary key (monotonic with creation)
        - sender / receiver: User ids of the ordered pair
        - message: Trimmed message body
        - reply_to: Optional id of the replied-to message
        - is_delivered / delivered_at: Receiver connection acknowledged it
        - is_read / read_at: Receiver opened the conversation
        - is_edited: Body was changed after creation
        - created_at: Creation time (UTC)

Retention:
    Messages older than ``retention_hours`` are never returned by any read
    and are physically removed by ``purge_expired()``, which the background
    sweeper in ``retention.py`` calls periodically. Readers must tolerate a
    message disappearing between a list call and a detail call.

Thread Safety:
    The DuckDB connection is NOT thread-safe, so every statement runs under
    a lock. Single statements are atomic; bulk updates (mark-read) are not
    atomic as a set but are idempotent, so clients simply retry.

Usage:
    store = MessageStore.get_instance()
    msg = store.append("u1", "u2", "hello")
    history = store.history("u2", "u1")
"""
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import duckdb

from heartlock.errors import (
    AuthorizationError,
    NotFoundError,
    PolicyError,
    TransientStoreError,
    ValidationError,
)

from .schemas import ConversationSummary, Message, UserSummary

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

# Sender may change a message body only within this window
EDIT_WINDOW_SECONDS = 5 * 60

# Messages are removed this long after creation
RETENTION_HOURS = 24

# Default page size for recency queries
DEFAULT_PAGE_SIZE = 50

# Maximum page size to prevent abuse
MAX_PAGE_SIZE = 100

_COLUMNS = (
    "id, sender, receiver, message, reply_to, is_delivered, delivered_at, "
    "is_read, read_at, is_edited, created_at"
)


def _utcnow() -> datetime:
    """Naive UTC now, matching DuckDB TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _row_to_message(row: tuple) -> Message:
    return Message(
        id=row[0],
        sender=row[1],
        receiver=row[2],
        message=row[3],
        replyTo=row[4],
        delivered=row[5],
        deliveredAt=row[6],
        read=row[7],
        readAt=row[8],
        edited=row[9],
        createdAt=row[10],
    )


def _clean_body(body: object) -> str:
    if not isinstance(body, str) or not body.strip():
        raise ValidationError("Message cannot be empty")
    return body.strip()


def _check_participants(user_a: object, user_b: object) -> None:
    for user_id in (user_a, user_b):
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("Sender and receiver are required")
    if user_a == user_b:
        raise ValidationError("Sender and receiver must be different users")


class MessageStore:
    """Singleton service for storing chat messages in DuckDB.

    Attributes:
        _instance: Singleton instance of the service.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["MessageStore"] = None
    _db_path: str = "heartlock.duckdb"

    def __init__(
        self,
        db_path: Optional[str] = None,
        *,
        edit_window_seconds: int = EDIT_WINDOW_SECONDS,
        retention_hours: int = RETENTION_HOURS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the message store.

        Creates the database file and schema if they don't exist.

        Args:
            db_path: Path to DuckDB file (":memory:" for tests).
            edit_window_seconds: How long after creation a sender may edit.
            retention_hours: How long a message lives before expiry.
            clock: Returns the current naive UTC time; injectable for tests.
        """
        if db_path:
            self._db_path = db_path
        self.edit_window = timedelta(seconds=edit_window_seconds)
        self.retention = timedelta(hours=retention_hours)
        self.clock = clock
        self._lock = threading.RLock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None, **kwargs) -> "MessageStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
            **kwargs: Forwarded to the constructor on first call.

        Returns:
            The singleton MessageStore instance.
        """
        if cls._instance is None:
            cls._instance = cls(db_path, **kwargs)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance.

        Closes the database connection and clears the instance.
        Primarily used for testing to ensure a clean state.
        """
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    # =========================================================================
    # Connection plumbing
    # =========================================================================

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _execute(self, sql: str, params: Optional[list] = None) -> List[tuple]:
        """Run one statement under the connection lock and fetch its rows."""
        with self._lock:
            try:
                return self._get_connection().execute(sql, params or []).fetchall()
            except duckdb.Error as e:
                logger.error(f"[Store] Statement failed: {e}")
                raise TransientStoreError() from e

    def _initialize_db(self) -> None:
        """Initialize the database schema (idempotent)."""
        self._execute("CREATE SEQUENCE IF NOT EXISTS chat_messages_seq START 1")
        self._execute("""
            CREATE TABLE IF NOT EXISTS chat_messages (
                id BIGINT DEFAULT nextval('chat_messages_seq') PRIMARY KEY,
                sender VARCHAR NOT NULL,
                receiver VARCHAR NOT NULL,
                message VARCHAR NOT NULL,
                reply_to BIGINT,
                is_delivered BOOLEAN NOT NULL DEFAULT FALSE,
                delivered_at TIMESTAMP,
                is_read BOOLEAN NOT NULL DEFAULT FALSE,
                read_at TIMESTAMP,
                is_edited BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMP NOT NULL
            )
        """)

    def _cutoff(self) -> datetime:
        """Creation time at or before which a message has expired."""
        return self.clock() - self.retention

    # =========================================================================
    # Writes
    # =========================================================================

    def append(
        self,
        sender: str,
        receiver: str,
        body: str,
        reply_to: Optional[int] = None,
    ) -> Message:
        """Persist a new message.

        Args:
            sender: Author user id.
            receiver: Addressee user id.
            body: Message text; surrounding whitespace is trimmed.
            reply_to: Optional id of a message in the same conversation.

        Returns:
            The stored message with delivered/read/edited all False.

        Raises:
            ValidationError: Empty body, missing or equal participants, or a
                reply target outside this conversation.
        """
        _check_participants(sender, receiver)
        text = _clean_body(body)

        if reply_to is not None:
            target = self.find(reply_to)
            if target is None or {target.sender, target.receiver} != {sender, receiver}:
                raise ValidationError("replyTo must reference a message in the same conversation")

        rows = self._execute(
            f"""
            INSERT INTO chat_messages (sender, receiver, message, reply_to, created_at)
            VALUES (?, ?, ?, ?, ?)
            RETURNING {_COLUMNS}
            """,
            [sender, receiver, text, reply_to, self.clock()],
        )
        message = _row_to_message(rows[0])
        logger.info(f"[Store] Message {message.id} stored {sender} -> {receiver}")
        return message

    def mark_delivered(self, message_id: int, receiver_id: str) -> Message:
        """Record that the receiver's connection received a message.

        Idempotent: an already-delivered message is returned unchanged.

        Raises:
            NotFoundError: The message does not exist (or expired).
            AuthorizationError: ``receiver_id`` is not the message receiver.
        """
        message = self.get(message_id)
        if message.receiver != receiver_id:
            raise AuthorizationError("Only the receiver can acknowledge delivery")
        if message.delivered:
            return message

        self._execute(
            "UPDATE chat_messages SET is_delivered = TRUE, delivered_at = ? "
            "WHERE id = ? AND is_delivered = FALSE",
            [self.clock(), message_id],
        )
        return self.get(message_id)

    def mark_read(self, sender_id: str, receiver_id: str) -> int:
        """Mark every unread message from ``sender_id`` to ``receiver_id`` read.

        Idempotent: calling it again updates nothing.

        Returns:
            Number of messages that changed from unread to read.
        """
        rows = self._execute(
            """
            UPDATE chat_messages SET is_read = TRUE, read_at = ?
            WHERE sender = ? AND receiver = ? AND is_read = FALSE AND created_at > ?
            RETURNING id
            """,
            [self.clock(), sender_id, receiver_id, self._cutoff()],
        )
        if rows:
            logger.info(f"[Store] {len(rows)} messages {sender_id} -> {receiver_id} marked read")
        return len(rows)

    def edit(self, message_id: int, requester_id: str, body: str) -> Message:
        """Replace a message body.

        Raises:
            NotFoundError: The message does not exist (or expired).
            AuthorizationError: The requester is not the sender.
            PolicyError: The edit window has passed.
            ValidationError: The new body is empty.
        """
        message = self.get(message_id)
        if message.sender != requester_id:
            raise AuthorizationError("You can only edit your own messages")
        if self.clock() - message.createdAt > self.edit_window:
            raise PolicyError("Message is too old to edit")
        text = _clean_body(body)

        self._execute(
            "UPDATE chat_messages SET message = ?, is_edited = TRUE WHERE id = ?",
            [text, message_id],
        )
        return self.get(message_id)

    def delete(self, message_id: int, requester_id: str) -> None:
        """Permanently remove one message owned by the requester.

        Raises:
            NotFoundError: The message does not exist (or expired).
            AuthorizationError: The requester is not the sender.
        """
        message = self.get(message_id)
        if message.sender != requester_id:
            raise AuthorizationError("You can only delete your own messages")
        self._execute("DELETE FROM chat_messages WHERE id = ?", [message_id])
        logger.info(f"[Store] Message {message_id} deleted by {requester_id}")

    def delete_conversation(self, user_a: str, user_b: str) -> int:
        """Permanently remove every message between two users.

        Returns:
            Number of messages removed.
        """
        _check_participants(user_a, user_b)
        rows = self._execute(
            """
            DELETE FROM chat_messages
            WHERE (sender = ? AND receiver = ?) OR (sender = ? AND receiver = ?)
            RETURNING id
            """,
            [user_a, user_b, user_b, user_a],
        )
        logger.info(f"[Store] Conversation {user_a}/{user_b} deleted ({len(rows)} messages)")
        return len(rows)

    def purge_expired(self) -> int:
        """Remove messages past the retention window.

        Returns:
            Number of messages removed.
        """
        rows = self._execute(
            "DELETE FROM chat_messages WHERE created_at <= ? RETURNING id",
            [self._cutoff()],
        )
        if rows:
            logger.info(f"[Store] Retention purge removed {len(rows)} messages")
        return len(rows)

    # =========================================================================
    # Reads
    # =========================================================================

    def find(self, message_id: int) -> Optional[Message]:
        """Get a live message by id, or None."""
        rows = self._execute(
            f"SELECT {_COLUMNS} FROM chat_messages WHERE id = ? AND created_at > ?",
            [message_id, self._cutoff()],
        )
        return _row_to_message(rows[0]) if rows else None

    def get(self, message_id: int) -> Message:
        """Get a live message by id.

        Raises:
            NotFoundError: The message does not exist or has expired.
        """
        message = self.find(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        return message

    def get_many(self, message_ids: List[int]) -> Dict[int, Message]:
        """Get several live messages keyed by id; missing ids are skipped."""
        if not message_ids:
            return {}
        placeholders = ", ".join("?" for _ in message_ids)
        rows = self._execute(
            f"SELECT {_COLUMNS} FROM chat_messages "
            f"WHERE id IN ({placeholders}) AND created_at > ?",
            [*message_ids, self._cutoff()],
        )
        return {row[0]: _row_to_message(row) for row in rows}

    def history(self, user_a: str, user_b: str) -> List[Message]:
        """Get the full conversation between two users, oldest first."""
        rows = self._execute(
            f"""
            SELECT {_COLUMNS} FROM chat_messages
            WHERE ((sender = ? AND receiver = ?) OR (sender = ? AND receiver = ?))
              AND created_at > ?
            ORDER BY created_at ASC, id ASC
            """,
            [user_a, user_b, user_b, user_a, self._cutoff()],
        )
        return [_row_to_message(row) for row in rows]

    def recent(self, user_a: str, user_b: str, limit: int = DEFAULT_PAGE_SIZE) -> List[Message]:
        """Get the latest messages of a conversation, newest first.

        Args:
            user_a: One participant.
            user_b: The other participant.
            limit: Maximum number of messages (capped at MAX_PAGE_SIZE).
        """
        limit = max(1, min(limit, MAX_PAGE_SIZE))  # Prevent abuse
        rows = self._execute(
            f"""
            SELECT {_COLUMNS} FROM chat_messages
            WHERE ((sender = ? AND receiver = ?) OR (sender = ? AND receiver = ?))
              AND created_at > ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            [user_a, user_b, user_b, user_a, self._cutoff(), limit],
        )
        return [_row_to_message(row) for row in rows]

    def conversations(self, user_id: str) -> List[ConversationSummary]:
        """Summarize every conversation a user takes part in, newest first.

        ``user`` in each summary only carries the peer id; callers resolve
        display data through the user directory.
        """
        rows = self._execute(
            f"""
            SELECT {_COLUMNS} FROM chat_messages
            WHERE (sender = ? OR receiver = ?) AND created_at > ?
            ORDER BY created_at DESC, id DESC
            """,
            [user_id, user_id, self._cutoff()],
        )

        summaries: Dict[str, ConversationSummary] = {}
        for row in rows:
            message = _row_to_message(row)
            peer_id = message.receiver if message.sender == user_id else message.sender
            incoming_unread = message.receiver == user_id and not message.read

            summary = summaries.get(peer_id)
            if summary is None:
                # First row seen per peer is the latest message
                summaries[peer_id] = ConversationSummary(
                    user=UserSummary(id=peer_id),
                    lastMessage=message.message,
                    lastTime=message.createdAt,
                    unread=incoming_unread,
                    unreadCount=int(incoming_unread),
                )
            elif incoming_unread:
                summary.unreadCount += 1

        return list(summaries.values())

    def count(self) -> int:
        """Number of live messages across all conversations."""
        rows = self._execute(
            "SELECT COUNT(*) FROM chat_messages WHERE created_at > ?",
            [self._cutoff()],
        )
        return rows[0][0]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
