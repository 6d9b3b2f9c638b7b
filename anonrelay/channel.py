"""
Transport abstraction used by the relay.

A Channel knows how to send text and media to a conversation reference and
returns a SendReceipt whose ref identifies the sent message on the
transport side. Inbound traffic reaches the relay as InboundEvent objects,
built by a transport adapter (see telegram.py) or the /webhook endpoint.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from anonrelay.identity import DisplayAttrs
from anonrelay.models import ContentType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendReceipt:
    """Confirmation of a send; ref is later used to resolve replies."""
    ref: str
    chat_ref: str


@dataclass(frozen=True)
class Content:
    """One piece of user or operator content."""
    content_type: str
    text: Optional[str] = None
    attachment_ref: Optional[str] = None
    caption: Optional[str] = None

    @property
    def is_supported(self) -> bool:
        kind = ContentType.parse(self.content_type)
        if kind is None:
            return False
        if kind is ContentType.TEXT:
            return self.text is not None
        return bool(self.attachment_ref)


@dataclass(frozen=True)
class ReplyTo:
    """The message an inbound event replies to."""
    ref: str
    content: Optional[Content] = None


@dataclass(frozen=True)
class InboundEvent:
    """A message delivered by the transport."""
    sender_key: str
    chat_ref: str
    content: Content
    attrs: DisplayAttrs = field(default_factory=DisplayAttrs)
    reply_to: Optional[ReplyTo] = None

    @property
    def command(self) -> Optional[str]:
        """The leading /command of a text message, without any @botname suffix."""
        if self.content.content_type != ContentType.TEXT.value or not self.content.text:
            return None
        text = self.content.text.strip()
        if not text.startswith("/"):
            return None
        return text.split()[0].split("@")[0].lower()

    @property
    def command_args(self) -> str:
        if self.command is None:
            return ""
        parts = self.content.text.strip().split(maxsplit=1)
        return parts[1].strip() if len(parts) > 1 else ""


class Channel(ABC):
    """Send primitives required from a transport. Failures raise ChannelError."""

    # Telegram Bot API limits; transports with other limits override these
    MAX_TEXT_LENGTH = 4096
    MAX_CAPTION_LENGTH = 1024

    @abstractmethod
    def send_text(self, chat_ref: str, text: str) -> SendReceipt:
        ...

    @abstractmethod
    def send_media(
        self,
        chat_ref: str,
        content_type: str,
        attachment_ref: str,
        caption: Optional[str] = None,
    ) -> SendReceipt:
        ...

    def send_content(self, chat_ref: str, content: Content, header: Optional[str] = None) -> SendReceipt:
        """
        Send content using the primitive for its type.

        The optional header is prepended to text bodies and captions. When
        that would exceed the transport's length limit, or the content is a
        sticker (no caption), the header goes out as a separate text message
        first. The receipt of the content itself is returned.
        """
        kind = ContentType(content.content_type)
        if kind is ContentType.TEXT:
            if header and len(header) + len(content.text) <= self.MAX_TEXT_LENGTH:
                return self.send_text(chat_ref, f"{header}{content.text}")
            if header:
                self.send_text(chat_ref, header)
            return self.send_text(chat_ref, content.text)

        if kind is ContentType.STICKER:
            if header:
                self.send_text(chat_ref, header)
            return self.send_media(chat_ref, kind.value, content.attachment_ref)

        caption = content.caption
        if header:
            combined = f"{header}{caption or ''}"
            if len(combined) <= self.MAX_CAPTION_LENGTH:
                caption = combined
            else:
                self.send_text(chat_ref, header)
        return self.send_media(chat_ref, kind.value, content.attachment_ref, caption=caption)
