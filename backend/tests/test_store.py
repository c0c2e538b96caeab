"""Unit tests for the DuckDB message store."""
import os
import tempfile

import pytest

from heartlock.chat.store import MAX_PAGE_SIZE, MessageStore
from heartlock.errors import (
    AuthorizationError,
    NotFoundError,
    PolicyError,
    ValidationError,
)


class TestAppend:
    """Tests for MessageStore.append."""

    def test_append_then_history_has_one_new_entry(self, store):
        """A stored message shows up once with all flags cleared."""
        before = store.history("u1", "u2")

        message = store.append("u1", "u2", "hello")
        after = store.history("u1", "u2")

        assert len(after) == len(before) + 1
        stored = after[-1]
        assert stored == message
        assert stored.sender == "u1"
        assert stored.receiver == "u2"
        assert stored.message == "hello"
        assert stored.delivered is False
        assert stored.read is False
        assert stored.edited is False
        assert stored.deliveredAt is None
        assert stored.readAt is None

    def test_body_is_trimmed(self, store):
        message = store.append("u1", "u2", "   hi there \n")
        assert message.message == "hi there"

    @pytest.mark.parametrize("body", ["", "   ", "\n\t"])
    def test_empty_body_rejected(self, store, body):
        with pytest.raises(ValidationError):
            store.append("u1", "u2", body)
        assert store.count() == 0

    def test_sender_and_receiver_must_differ(self, store):
        with pytest.raises(ValidationError):
            store.append("u1", "u1", "talking to myself")

    def test_missing_receiver_rejected(self, store):
        with pytest.raises(ValidationError):
            store.append("u1", "", "hello")

    def test_ids_are_monotonic(self, store):
        first = store.append("u1", "u2", "one")
        second = store.append("u2", "u1", "two")
        third = store.append("u1", "u3", "three")
        assert first.id < second.id < third.id

    def test_reply_to_same_conversation(self, store):
        original = store.append("u2", "u1", "question?")
        reply = store.append("u1", "u2", "answer", reply_to=original.id)
        assert reply.replyTo == original.id

    def test_reply_to_other_conversation_rejected(self, store):
        elsewhere = store.append("u1", "u3", "hi carol")
        with pytest.raises(ValidationError):
            store.append("u1", "u2", "reply", reply_to=elsewhere.id)

    def test_reply_to_missing_message_rejected(self, store):
        with pytest.raises(ValidationError):
            store.append("u1", "u2", "reply", reply_to=9999)


class TestHistory:
    """Tests for history, recent and conversations."""

    def test_history_includes_both_directions_in_order(self, store):
        store.append("u1", "u2", "a")
        store.append("u2", "u1", "b")
        store.append("u1", "u3", "not this one")
        store.append("u1", "u2", "c")

        history = store.history("u2", "u1")

        assert [m.message for m in history] == ["a", "b", "c"]
        assert history == store.history("u1", "u2")

    def test_recent_is_descending_and_limited(self, store):
        for i in range(5):
            store.append("u1", "u2", f"m{i}")

        recent = store.recent("u1", "u2", limit=3)

        assert [m.message for m in recent] == ["m4", "m3", "m2"]

    def test_recent_limit_is_capped(self, store):
        for i in range(MAX_PAGE_SIZE + 5):
            store.append("u1", "u2", f"m{i}")
        assert len(store.recent("u1", "u2", limit=1000)) == MAX_PAGE_SIZE

    def test_conversations_one_summary_per_peer(self, store):
        store.append("u2", "u1", "from bob 1")
        store.append("u2", "u1", "from bob 2")
        store.append("u1", "u3", "to carol")

        summaries = store.conversations("u1")

        assert [s.user.id for s in summaries] == ["u3", "u2"]
        carol, bob = summaries
        assert carol.lastMessage == "to carol"
        assert carol.unread is False
        assert carol.unreadCount == 0
        assert bob.lastMessage == "from bob 2"
        assert bob.unread is True
        assert bob.unreadCount == 2

    def test_conversation_unread_cleared_after_mark_read(self, store):
        store.append("u2", "u1", "ping")
        store.mark_read("u2", "u1")

        (summary,) = store.conversations("u1")

        assert summary.unread is False
        assert summary.unreadCount == 0

    def test_get_missing_message(self, store):
        with pytest.raises(NotFoundError):
            store.get(12345)
        assert store.find(12345) is None


class TestDeliveryAndRead:
    """Tests for delivered/read flags."""

    def test_mark_delivered_sets_timestamp(self, store, clock):
        message = store.append("u1", "u2", "hello")
        clock.advance(seconds=3)

        delivered = store.mark_delivered(message.id, "u2")

        assert delivered.delivered is True
        assert delivered.deliveredAt == clock.now
        assert delivered.read is False

    def test_mark_delivered_is_idempotent(self, store, clock):
        message = store.append("u1", "u2", "hello")
        first = store.mark_delivered(message.id, "u2")
        clock.advance(minutes=1)

        second = store.mark_delivered(message.id, "u2")

        assert second == first

    def test_only_receiver_can_mark_delivered(self, store):
        message = store.append("u1", "u2", "hello")
        with pytest.raises(AuthorizationError):
            store.mark_delivered(message.id, "u1")

    def test_mark_read_only_affects_one_direction(self, store):
        incoming = store.append("u2", "u1", "to alice")
        outgoing = store.append("u1", "u2", "to bob")

        updated = store.mark_read("u2", "u1")

        assert updated == 1
        assert store.get(incoming.id).read is True
        assert store.get(incoming.id).readAt is not None
        assert store.get(outgoing.id).read is False

    def test_mark_read_is_idempotent(self, store, clock):
        store.append("u2", "u1", "one")
        store.append("u2", "u1", "two")

        assert store.mark_read("u2", "u1") == 2
        state_once = store.history("u1", "u2")
        clock.advance(minutes=1)

        assert store.mark_read("u2", "u1") == 0
        assert store.history("u1", "u2") == state_once

    def test_read_does_not_imply_delivered(self, store):
        message = store.append("u2", "u1", "hey")
        store.mark_read("u2", "u1")
        assert store.get(message.id).delivered is False


class TestEdit:
    """Tests for the edit window and ownership rules."""

    def test_edit_within_window(self, store, clock):
        message = store.append("u1", "u2", "hello")
        clock.advance(minutes=2)

        edited = store.edit(message.id, "u1", "hello there")

        assert edited.message == "hello there"
        assert edited.edited is True
        assert edited.createdAt == message.createdAt

    def test_edit_at_window_boundary(self, store, clock):
        message = store.append("u1", "u2", "hello")
        clock.advance(minutes=5)
        assert store.edit(message.id, "u1", "still ok").edited is True

    def test_edit_after_window_is_policy_error(self, store, clock):
        message = store.append("u1", "u2", "hello")
        clock.advance(minutes=2)
        store.edit(message.id, "u1", "hello there")

        clock.advance(minutes=8)
        with pytest.raises(PolicyError):
            store.edit(message.id, "u1", "too late")

        assert store.get(message.id).message == "hello there"

    def test_edit_by_non_sender_rejected(self, store):
        message = store.append("u1", "u2", "hello")
        with pytest.raises(AuthorizationError):
            store.edit(message.id, "u2", "hijacked")
        assert store.get(message.id).edited is False

    def test_edit_to_empty_body_rejected(self, store):
        message = store.append("u1", "u2", "hello")
        with pytest.raises(ValidationError):
            store.edit(message.id, "u1", "   ")


class TestDelete:
    """Tests for single and bulk deletion."""

    def test_sender_can_delete(self, store):
        message = store.append("u1", "u2", "oops")
        store.delete(message.id, "u1")
        assert store.find(message.id) is None

    def test_receiver_cannot_delete(self, store):
        message = store.append("u1", "u2", "keep me")
        with pytest.raises(AuthorizationError):
            store.delete(message.id, "u2")
        assert store.find(message.id) is not None

    def test_delete_conversation_removes_both_directions_only(self, store):
        store.append("u1", "u2", "a")
        store.append("u2", "u1", "b")
        other = store.append("u1", "u3", "c")

        deleted = store.delete_conversation("u2", "u1")

        assert deleted == 2
        assert store.history("u1", "u2") == []
        assert store.history("u1", "u3") == [other]


class TestRetention:
    """Tests for the 24 hour retention window."""

    def test_expired_messages_hidden_from_history(self, store, clock):
        old = store.append("u1", "u2", "yesterday")
        clock.advance(hours=23)
        fresh = store.append("u2", "u1", "today")

        clock.advance(hours=2)

        assert store.history("u1", "u2") == [fresh]
        assert store.find(old.id) is None

    def test_purge_expired_deletes_rows(self, store, clock):
        store.append("u1", "u2", "old")
        clock.advance(hours=24, seconds=1)
        store.append("u1", "u2", "new")

        assert store.purge_expired() == 1
        assert store.purge_expired() == 0
        assert [m.message for m in store.history("u1", "u2")] == ["new"]

    def test_expired_messages_not_editable(self, store, clock):
        message = store.append("u1", "u2", "old")
        clock.advance(hours=25)
        with pytest.raises(NotFoundError):
            store.edit(message.id, "u1", "new")


def test_store_persists_across_instances():
    """Messages written to a database file survive a reopen."""
    db_path = tempfile.mktemp(suffix=".duckdb")
    try:
        first = MessageStore(db_path)
        message = first.append("u1", "u2", "durable")
        first.close()

        second = MessageStore(db_path)
        assert second.get(message.id).message == "durable"
        second.close()
    finally:
        for path in (db_path, db_path + ".wal"):
            if os.path.exists(path):
                os.remove(path)
