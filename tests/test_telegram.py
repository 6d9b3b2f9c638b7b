"""
Tests for the Telegram channel adapter.

Tests cover:
- Update parsing for each content type and reply targets
- Bot API calls through a fake requests session
- Error mapping to ChannelError
- Long-polling update processing
"""

import threading

import pytest
from requests.exceptions import ConnectionError as RequestsConnectionError

from anonrelay.errors import ChannelError
from anonrelay.models import Message
from anonrelay.poller import process_update, run_polling
from anonrelay.telegram import TelegramChannel, _mask_token, parse_update


class FakeResponse:
    def __init__(self, status_code=200, data=None):
        self.status_code = status_code
        self._data = data
        self.text = str(data)

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data


class FakeSession:
    """Stands in for requests.Session and records each POST."""

    def __init__(self, responses=None, error=None):
        self.calls = []
        self.responses = list(responses or [])
        self.error = error

    def post(self, url, json=None, timeout=None):
        self.calls.append({"url": url, "json": json, "timeout": timeout})
        if self.error is not None:
            raise self.error
        if self.responses:
            return self.responses.pop(0)
        return FakeResponse(200, {"ok": True, "result": {"message_id": 77}})


def make_update(update_id=1, chat_id=111, **message_fields):
    message = {
        "message_id": 10,
        "from": {"id": chat_id, "username": "ada", "first_name": "Ada"},
        "chat": {"id": chat_id},
    }
    message.update(message_fields)
    return {"update_id": update_id, "message": message}


class TestParseUpdate:
    """Test conversion of raw updates into inbound events."""

    def test_text_message(self):
        event = parse_update(make_update(text="hello"))

        assert event.sender_key == "111"
        assert event.chat_ref == "111"
        assert event.content.content_type == "text"
        assert event.content.text == "hello"
        assert event.attrs.username == "ada"
        assert event.reply_to is None

    def test_photo_uses_largest_size(self):
        event = parse_update(make_update(
            photo=[{"file_id": "small"}, {"file_id": "medium"}, {"file_id": "large"}],
            caption="look",
        ))

        assert event.content.content_type == "photo"
        assert event.content.attachment_ref == "large"
        assert event.content.caption == "look"

    @pytest.mark.parametrize("kind", ["sticker", "voice", "video", "document", "audio"])
    def test_media_types(self, kind):
        event = parse_update(make_update(**{kind: {"file_id": f"{kind}-1"}}))

        assert event.content.content_type == kind
        assert event.content.attachment_ref == f"{kind}-1"

    def test_animation_wins_over_document(self):
        event = parse_update(make_update(
            animation={"file_id": "gif-1"},
            document={"file_id": "gif-1-doc"},
        ))

        assert event.content.content_type == "animation"
        assert event.content.attachment_ref == "gif-1"

    def test_unknown_content_is_unsupported(self):
        event = parse_update(make_update(location={"latitude": 1.0, "longitude": 2.0}))

        assert event is not None
        assert event.content.is_supported is False

    def test_reply_to_carries_ref_and_content(self):
        event = parse_update(make_update(
            chat_id=9000,
            text="/broadcast",
            reply_to_message={"message_id": 42, "text": "Service update"},
        ))

        assert event.reply_to.ref == "42"
        assert event.reply_to.content.text == "Service update"
        assert event.command == "/broadcast"

    def test_update_without_message(self):
        assert parse_update({"update_id": 5, "callback_query": {"id": "x"}}) is None
        assert parse_update({"update_id": 6, "edited_message": {"text": "x"}}) is None


class TestTelegramChannel:
    """Test Bot API calls."""

    def test_token_required(self):
        with pytest.raises(ValueError):
            TelegramChannel("")

    def test_send_text(self):
        session = FakeSession()
        channel = TelegramChannel("123456:secret-token", session=session)

        receipt = channel.send_text("111", "hello")

        assert receipt.ref == "77"
        assert receipt.chat_ref == "111"
        call = session.calls[0]
        assert call["url"].endswith("/bot123456:secret-token/sendMessage")
        assert call["json"] == {"chat_id": "111", "text": "hello"}

    def test_send_photo_with_caption(self):
        session = FakeSession()
        channel = TelegramChannel("token-123456", session=session)

        channel.send_media("111", "photo", "file-1", caption="look")

        call = session.calls[0]
        assert call["url"].endswith("/sendPhoto")
        assert call["json"] == {"chat_id": "111", "photo": "file-1", "caption": "look"}

    def test_sticker_has_no_caption(self):
        session = FakeSession()
        channel = TelegramChannel("token-123456", session=session)

        channel.send_media("111", "sticker", "sticker-1", caption="ignored")

        assert session.calls[0]["json"] == {"chat_id": "111", "sticker": "sticker-1"}

    def test_api_error_raises_channel_error(self):
        session = FakeSession(responses=[
            FakeResponse(403, {"ok": False, "description": "Forbidden: bot was blocked by the user"}),
        ])
        channel = TelegramChannel("token-123456", session=session)

        with pytest.raises(ChannelError) as exc_info:
            channel.send_text("111", "hello")

        assert exc_info.value.chat_ref == "111"
        assert "Forbidden" in str(exc_info.value)

    def test_transport_error_raises_channel_error(self):
        session = FakeSession(error=RequestsConnectionError("down"))
        channel = TelegramChannel("token-123456", session=session)

        with pytest.raises(ChannelError):
            channel.send_text("111", "hello")

    def test_unknown_media_type(self):
        channel = TelegramChannel("token-123456", session=FakeSession())

        with pytest.raises(ChannelError):
            channel.send_media("111", "location", "x")

    def test_get_updates(self):
        updates = [make_update(update_id=3, text="hi")]
        session = FakeSession(responses=[FakeResponse(200, {"ok": True, "result": updates})])
        channel = TelegramChannel("token-123456", session=session)

        assert channel.get_updates(offset=3, timeout=5) == updates
        assert session.calls[0]["json"] == {"timeout": 5, "limit": 100, "offset": 3}

    def test_mask_token(self):
        assert _mask_token("123456:abcdef") == "1234...cdef"
        assert _mask_token("short") == "***"


class TestPolling:
    """Test update processing for the long-polling runner."""

    def test_process_update_routes_message(self, db, relay):
        assert process_update(relay, make_update(text="hello")) == "accepted"
        assert db.query(Message).count() == 1

    def test_process_update_ignores_non_messages(self, tables, relay):
        assert process_update(relay, {"update_id": 1, "poll": {}}) == "ignored"

    def test_run_polling_advances_offset(self, tables, relay):
        stop = threading.Event()
        batches = [[make_update(update_id=7, text="hello")], []]
        offsets = []

        class FakePollingChannel:
            def get_updates(self, offset=None, timeout=25):
                offsets.append(offset)
                batch = batches.pop(0) if batches else []
                if not batches:
                    stop.set()
                return batch

        run_polling(relay, FakePollingChannel(), timeout=1, stop=stop)

        assert offsets == [None, 8]
