"""
Pytest configuration and shared fixtures.

Test environment defaults are set here before any anonrelay import so the
settings module (which reads the environment at import time) picks them up.
Values already present in the environment win.
"""

import os
from typing import List, Optional

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_anonrelay.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("OPERATOR_CHAT_REF", "9000")
os.environ.setdefault("BOT_TOKEN", "123456:test-token")
os.environ.setdefault("BROADCAST_DELAY_MS", "0")

# Clear settings cache before any app imports to ensure test env vars are used
from anonrelay.config import get_settings  # noqa: E402
get_settings.cache_clear()

from anonrelay.channel import Channel, SendReceipt  # noqa: E402
from anonrelay.errors import ChannelError  # noqa: E402
from anonrelay.storage import Base, SessionLocal, engine  # noqa: E402
from anonrelay import models  # noqa: E402,F401


class FakeChannel(Channel):
    """Records every send; chat refs listed in fail_for raise ChannelError."""

    def __init__(self):
        self.sent: List[dict] = []
        self.fail_for = set()
        self._next_ref = 100

    def _record(self, chat_ref, kind, text=None, attachment_ref=None, caption=None) -> SendReceipt:
        if str(chat_ref) in self.fail_for:
            raise ChannelError("recipient unreachable", str(chat_ref))
        if text is not None and len(text) > self.MAX_TEXT_LENGTH:
            raise ChannelError("Bad Request: message is too long", str(chat_ref))
        if caption is not None and len(caption) > self.MAX_CAPTION_LENGTH:
            raise ChannelError("Bad Request: message caption is too long", str(chat_ref))
        self._next_ref += 1
        ref = str(self._next_ref)
        self.sent.append({
            "chat_ref": str(chat_ref),
            "kind": kind,
            "text": text,
            "attachment_ref": attachment_ref,
            "caption": caption,
            "ref": ref,
        })
        return SendReceipt(ref=ref, chat_ref=str(chat_ref))

    def send_text(self, chat_ref: str, text: str) -> SendReceipt:
        return self._record(chat_ref, "text", text=text)

    def send_media(self, chat_ref, content_type, attachment_ref, caption: Optional[str] = None) -> SendReceipt:
        return self._record(chat_ref, content_type, attachment_ref=attachment_ref, caption=caption)

    def to(self, chat_ref: str) -> List[dict]:
        return [s for s in self.sent if s["chat_ref"] == str(chat_ref)]

    def texts_to(self, chat_ref: str) -> List[str]:
        return [s["text"] for s in self.to(chat_ref) if s["kind"] == "text"]


def run_now(fn, *args, **kwargs):
    """Synchronous dispatcher for tests."""
    fn(*args, **kwargs)


@pytest.fixture
def tables():
    """Fresh tables for each test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(tables):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def relay(channel):
    from anonrelay.config import settings
    from anonrelay.relay import RelayEngine

    return RelayEngine(channel, settings, dispatch=run_now)
