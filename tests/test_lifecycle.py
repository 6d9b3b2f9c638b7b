"""
Tests for the message lifecycle in the store.

Tests cover:
- Claiming pending messages (oldest first, exactly once)
- Forward reference written once
- Read requires a claim; notified flags only read messages
- Monotonic state progression under arbitrary operation sequences
- Derived state counts in get_stats
"""

import random
from datetime import datetime, timedelta

from anonrelay.models import Message, MessageState
from anonrelay.storage import (
    AppendOutcome,
    append_message,
    count_pending,
    drain_pending,
    get_message,
    get_setting,
    get_stats,
    mark_forwarded,
    mark_notified_batch,
    mark_read,
    release_claim,
    resolve_by_operator_ref,
    upsert_setting,
)

T0 = datetime(2025, 1, 15, 10, 0, 0)

STATE_ORDER = [
    MessageState.PENDING,
    MessageState.FORWARDED,
    MessageState.READ,
    MessageState.NOTIFIED,
]


def add(db, text, user_key="111", offset=0):
    result = append_message(
        db,
        user_key=user_key,
        pseudonym_id=1,
        origin_channel_ref=user_key,
        content_type="text",
        content=text,
        now=T0 + timedelta(seconds=offset),
    )
    assert result.outcome is AppendOutcome.CREATED
    return result.message


class TestAppend:
    """Test storing new messages."""

    def test_new_message_is_pending(self, db):
        message = add(db, "hello")

        stored = get_message(db, message.id)
        assert stored.state is MessageState.PENDING
        assert stored.operator_ref is None

    def test_pending_count_returned(self, db):
        result = append_message(db, "111", 1, "111", "text", content="a", now=T0)
        assert result.pending_count == 1

        result = append_message(db, "111", 1, "111", "text", content="b", now=T0)
        assert result.pending_count == 2
        assert count_pending(db) == 2


class TestDrain:
    """Test claiming pending messages."""

    def test_drain_returns_oldest_first(self, db):
        add(db, "second", offset=10)
        add(db, "first", offset=0)
        add(db, "third", offset=20)

        claimed = drain_pending(db)

        assert [m.content for m in claimed] == ["first", "second", "third"]
        assert all(m.processed for m in claimed)

    def test_back_to_back_drains(self, db):
        add(db, "a")
        add(db, "b", offset=1)

        first = drain_pending(db)
        second = drain_pending(db)

        assert len(first) == 2
        assert second == []
        assert count_pending(db) == 0

    def test_drain_picks_up_new_messages_only(self, db):
        add(db, "a")
        drain_pending(db)
        add(db, "b", offset=1)

        claimed = drain_pending(db)
        assert [m.content for m in claimed] == ["b"]

    def test_release_claim_returns_to_pending(self, db):
        message = add(db, "a")
        drain_pending(db)

        assert release_claim(db, message.id) is True
        db.expire_all()
        assert get_message(db, message.id).state is MessageState.PENDING

    def test_release_claim_refused_after_forward(self, db):
        message = add(db, "a")
        drain_pending(db)
        mark_forwarded(db, message.id, "500")

        assert release_claim(db, message.id) is False
        db.expire_all()
        assert get_message(db, message.id).processed is True


class TestForwardAndRead:
    """Test the forward reference and read flag."""

    def test_mark_forwarded_once(self, db):
        message = add(db, "a")
        drain_pending(db)

        assert mark_forwarded(db, message.id, "500") is True
        assert mark_forwarded(db, message.id, "501") is False

        db.expire_all()
        assert get_message(db, message.id).operator_ref == "500"

    def test_mark_forwarded_requires_claim(self, db):
        message = add(db, "a")

        assert mark_forwarded(db, message.id, "500") is False
        assert resolve_by_operator_ref(db, "500") is None

    def test_mark_read_requires_claim(self, db):
        message = add(db, "a")

        assert mark_read(db, message.id) is False
        db.expire_all()
        assert get_message(db, message.id).is_read is False

    def test_resolve_by_operator_ref(self, db):
        message = add(db, "a")
        drain_pending(db)
        mark_forwarded(db, message.id, "500")

        assert resolve_by_operator_ref(db, "500").id == message.id
        assert resolve_by_operator_ref(db, "999") is None

    def test_mark_notified_batch_only_read_messages(self, db):
        read_one = add(db, "a", user_key="111")
        unread = add(db, "b", user_key="111", offset=1)
        other_origin = add(db, "c", user_key="222", offset=2)
        drain_pending(db)
        mark_read(db, read_one.id)
        mark_read(db, other_origin.id)

        updated = mark_notified_batch(db, ["111"])

        db.expire_all()
        assert updated == 1
        assert get_message(db, read_one.id).state is MessageState.NOTIFIED
        assert get_message(db, unread.id).state is MessageState.FORWARDED
        assert get_message(db, other_origin.id).state is MessageState.READ

    def test_mark_notified_batch_empty(self, db):
        assert mark_notified_batch(db, []) == 0


class TestMonotonicity:
    """States only ever move forward, whatever order operations arrive in."""

    def test_random_operation_sequences(self, db):
        rng = random.Random(1234)
        messages = [add(db, f"m{i}", offset=i) for i in range(6)]
        ids = [m.id for m in messages]
        last_seen = {message_id: 0 for message_id in ids}
        refs = iter(range(1000, 2000))

        operations = [
            lambda: drain_pending(db),
            lambda: mark_forwarded(db, rng.choice(ids), str(next(refs))),
            lambda: mark_read(db, rng.choice(ids)),
            lambda: mark_notified_batch(db, ["111"]),
        ]

        for _ in range(60):
            rng.choice(operations)()
            db.expire_all()
            for message_id in ids:
                rank = STATE_ORDER.index(get_message(db, message_id).state)
                assert rank >= last_seen[message_id]
                last_seen[message_id] = rank

    def test_flags_imply_earlier_flags(self, db):
        for i in range(4):
            add(db, f"m{i}", offset=i)
        claimed = drain_pending(db)
        mark_read(db, claimed[0].id)
        mark_read(db, claimed[1].id)
        mark_notified_batch(db, ["111"])

        db.expire_all()
        for message in db.query(Message).all():
            if message.user_notified:
                assert message.is_read
            if message.is_read:
                assert message.processed


class TestStatsAndSettings:
    """Test derived counters and the settings table."""

    def test_stats_counts_by_state(self, db):
        a = add(db, "a")
        add(db, "b", offset=1)
        add(db, "c", offset=2)
        drain_pending(db)
        mark_read(db, a.id)
        add(db, "d", offset=3)

        stats = get_stats(db)

        assert stats["total_messages"] == 4
        assert stats["messages_by_state"] == {
            "pending": 1,
            "forwarded": 2,
            "read": 1,
            "notified": 0,
        }
        assert stats["first_message_at"] == "2025-01-15T10:00:00Z"
        assert stats["last_message_at"] == "2025-01-15T10:00:03Z"

    def test_stats_empty(self, db):
        stats = get_stats(db)

        assert stats["total_messages"] == 0
        assert stats["first_message_at"] is None
        assert stats["last_message_at"] is None

    def test_upsert_setting(self, db):
        assert get_setting(db, "last_operator_notification") is None

        upsert_setting(db, "last_operator_notification", "one")
        upsert_setting(db, "last_operator_notification", "two")

        assert get_setting(db, "last_operator_notification") == "two"
