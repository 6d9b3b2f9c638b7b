"""
Tests for duplicate suppression.
"""

from datetime import datetime, timedelta

from anonrelay.dedup import find_duplicate, is_duplicate
from anonrelay.models import Message
from anonrelay.storage import AppendOutcome, append_message

T0 = datetime(2025, 1, 15, 10, 0, 0)


def append_text(db, text, now, user_key="111", window_ms=5000):
    return append_message(
        db,
        user_key=user_key,
        pseudonym_id=1,
        origin_channel_ref=user_key,
        content_type="text",
        content=text,
        window_ms=window_ms,
        now=now,
    )


def append_photo(db, file_id, now, caption=None):
    return append_message(
        db,
        user_key="111",
        pseudonym_id=1,
        origin_channel_ref="111",
        content_type="photo",
        attachment_ref=file_id,
        caption=caption,
        now=now,
    )


class TestTextDedup:
    """Test dedup of text messages."""

    def test_identical_text_inside_window_is_duplicate(self, db):
        first = append_text(db, "hello", T0)
        second = append_text(db, "hello", T0 + timedelta(seconds=2))

        assert first.outcome is AppendOutcome.CREATED
        assert second.outcome is AppendOutcome.DUPLICATE
        assert second.message.id == first.message.id
        assert db.query(Message).count() == 1

    def test_identical_text_after_window_is_stored(self, db):
        append_text(db, "hello", T0)
        later = append_text(db, "hello", T0 + timedelta(seconds=6))

        assert later.outcome is AppendOutcome.CREATED
        assert db.query(Message).count() == 2

    def test_window_boundary_is_exclusive(self, db):
        append_text(db, "hello", T0)
        at_edge = append_text(db, "hello", T0 + timedelta(milliseconds=5000))

        assert at_edge.outcome is AppendOutcome.CREATED

    def test_different_text_inside_window_is_stored(self, db):
        append_text(db, "hello", T0)
        other = append_text(db, "hello again", T0 + timedelta(milliseconds=100))

        assert other.outcome is AppendOutcome.CREATED
        assert db.query(Message).count() == 2

    def test_same_text_from_other_user_is_stored(self, db):
        append_text(db, "hello", T0, user_key="111")
        other = append_text(db, "hello", T0 + timedelta(seconds=1), user_key="222")

        assert other.outcome is AppendOutcome.CREATED

    def test_custom_window(self, db):
        append_text(db, "hello", T0, window_ms=1000)
        later = append_text(db, "hello", T0 + timedelta(seconds=2), window_ms=1000)

        assert later.outcome is AppendOutcome.CREATED


class TestMediaDedup:
    """Test dedup of media messages by attachment reference."""

    def test_same_attachment_is_duplicate(self, db):
        append_photo(db, "file-1", T0)
        again = append_photo(db, "file-1", T0 + timedelta(seconds=1), caption="new caption")

        assert again.outcome is AppendOutcome.DUPLICATE

    def test_different_attachment_is_stored(self, db):
        append_photo(db, "file-1", T0)
        other = append_photo(db, "file-2", T0 + timedelta(seconds=1))

        assert other.outcome is AppendOutcome.CREATED

    def test_text_and_media_never_collide(self, db):
        append_text(db, "file-1", T0)

        assert not is_duplicate(db, "111", "photo", None, "file-1", now=T0 + timedelta(seconds=1))


class TestFindDuplicate:
    """Test the read-only dedup query."""

    def test_no_messages(self, db):
        assert find_duplicate(db, "111", "text", "hello", None, now=T0) is None

    def test_is_duplicate_matches_append(self, db):
        append_text(db, "hello", T0)

        assert is_duplicate(db, "111", "text", "hello", None, now=T0 + timedelta(seconds=1))
        assert not is_duplicate(db, "111", "text", "hello", None, now=T0 + timedelta(seconds=10))
