"""
Telegram Bot API channel.

Features:
- requests.Session with urllib3 retry on server errors
- one send method per content type
- token masking in logs
- conversion of raw updates into InboundEvent objects
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from requests.exceptions import RequestException
from urllib3.util.retry import Retry

from anonrelay.channel import Channel, Content, InboundEvent, ReplyTo, SendReceipt
from anonrelay.errors import ChannelError
from anonrelay.identity import DisplayAttrs
from anonrelay.models import ContentType

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

# (connect, read) timeouts in seconds
DEFAULT_TIMEOUT = (10, 30)

MAX_RETRIES = 3
BACKOFF_FACTOR = 0.5
RETRY_STATUS_CODES = [500, 502, 503, 504]

UNSUPPORTED = "unsupported"

# content type -> (API method, payload field carrying the file id)
MEDIA_METHODS = {
    ContentType.PHOTO: ("sendPhoto", "photo"),
    ContentType.STICKER: ("sendSticker", "sticker"),
    ContentType.VOICE: ("sendVoice", "voice"),
    ContentType.VIDEO: ("sendVideo", "video"),
    ContentType.DOCUMENT: ("sendDocument", "document"),
    ContentType.AUDIO: ("sendAudio", "audio"),
    ContentType.ANIMATION: ("sendAnimation", "animation"),
}


def _mask_token(token: str) -> str:
    """Mask bot token for logging. Shows first 4 and last 4 chars."""
    if not token or len(token) < 8:
        return "***"
    return f"{token[:4]}...{token[-4:]}"


def _create_session() -> requests.Session:
    session = requests.Session()
    retry_strategy = Retry(
        total=MAX_RETRIES,
        backoff_factor=BACKOFF_FACTOR,
        status_forcelist=RETRY_STATUS_CODES,
        allowed_methods=["GET", "POST"],
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


class TelegramChannel(Channel):
    """Channel backed by the Telegram Bot API."""

    def __init__(
        self,
        token: str,
        session: Optional[requests.Session] = None,
        api_base: str = TELEGRAM_API_BASE,
        timeout: Tuple[int, int] = DEFAULT_TIMEOUT,
    ):
        if not token:
            raise ValueError("BOT_TOKEN is required for the Telegram channel")
        self.token = token
        self.session = session or _create_session()
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    def _call(
        self,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
        timeout: Optional[Tuple[int, int]] = None,
    ) -> Any:
        """
        POST to a Bot API method and return its result.

        Raises:
            ChannelError: transport failure, non-200 status or ok=false
        """
        url = f"{self.api_base}/bot{self.token}/{endpoint}"
        chat_ref = str(payload.get("chat_id")) if payload and "chat_id" in payload else None

        try:
            response = self.session.post(url, json=payload or {}, timeout=timeout or self.timeout)
        except RequestException as e:
            logger.error(
                "Telegram request error endpoint=%s token=%s: %s",
                endpoint,
                _mask_token(self.token),
                str(e),
            )
            raise ChannelError(f"request error: {e}", chat_ref) from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code == 200 and data.get("ok"):
            return data.get("result")

        description = data.get("description") or (response.text or "")[:200]
        logger.warning(
            "Telegram API error endpoint=%s token=%s status=%s: %s",
            endpoint,
            _mask_token(self.token),
            response.status_code,
            description,
        )
        raise ChannelError(f"HTTP {response.status_code}: {description}", chat_ref)

    @staticmethod
    def _receipt(result: Any, chat_ref: str) -> SendReceipt:
        message_id = result.get("message_id") if isinstance(result, dict) else None
        if message_id is None:
            raise ChannelError("send confirmation without message_id", chat_ref)
        return SendReceipt(ref=str(message_id), chat_ref=str(chat_ref))

    def send_text(self, chat_ref: str, text: str) -> SendReceipt:
        result = self._call("sendMessage", {"chat_id": chat_ref, "text": text})
        return self._receipt(result, chat_ref)

    def send_media(
        self,
        chat_ref: str,
        content_type: str,
        attachment_ref: str,
        caption: Optional[str] = None,
    ) -> SendReceipt:
        kind = ContentType.parse(content_type)
        if kind not in MEDIA_METHODS:
            raise ChannelError(f"unsupported media type: {content_type}", chat_ref)

        method, field_name = MEDIA_METHODS[kind]
        payload: Dict[str, Any] = {"chat_id": chat_ref, field_name: attachment_ref}
        if caption and kind is not ContentType.STICKER:
            payload["caption"] = caption
        result = self._call(method, payload)
        return self._receipt(result, chat_ref)

    def get_updates(self, offset: Optional[int] = None, timeout: int = 25, limit: int = 100) -> List[dict]:
        """Long-poll getUpdates; returns raw update dicts."""
        timeout = max(1, min(50, timeout))
        payload: Dict[str, Any] = {"timeout": timeout, "limit": max(1, min(100, limit))}
        if offset is not None:
            payload["offset"] = offset
        result = self._call(
            "getUpdates",
            payload,
            timeout=(self.timeout[0], timeout + 10),
        )
        return result if isinstance(result, list) else []


# =============================================================================
# Update parsing
# =============================================================================

def _parse_content(message: Dict[str, Any]) -> Content:
    caption = message.get("caption")

    if message.get("text") is not None:
        return Content(ContentType.TEXT.value, text=message["text"])
    if message.get("photo"):
        # Sizes are ordered smallest to largest
        return Content(ContentType.PHOTO.value, attachment_ref=message["photo"][-1]["file_id"], caption=caption)
    for kind in (
        ContentType.STICKER,
        ContentType.VOICE,
        ContentType.VIDEO,
        ContentType.DOCUMENT,
        ContentType.AUDIO,
        ContentType.ANIMATION,
    ):
        # Telegram sends animations with a document field too, so animation
        # has to win over document
        if kind is ContentType.DOCUMENT and message.get("animation"):
            continue
        media = message.get(kind.value)
        if media:
            return Content(
                kind.value,
                attachment_ref=media["file_id"],
                caption=None if kind is ContentType.STICKER else caption,
            )
    return Content(UNSUPPORTED)


def parse_update(update: Dict[str, Any]) -> Optional[InboundEvent]:
    """
    Convert a Telegram update into an InboundEvent.

    Returns:
        The event, or None for updates that carry no message
        (callback queries, edits, channel posts, ...)
    """
    message = update.get("message")
    if not message or "chat" not in message:
        return None

    sender = message.get("from") or {}
    chat = message["chat"]

    reply_to = None
    replied = message.get("reply_to_message")
    if replied and replied.get("message_id") is not None:
        reply_to = ReplyTo(ref=str(replied["message_id"]), content=_parse_content(replied))

    return InboundEvent(
        sender_key=str(sender.get("id", chat["id"])),
        chat_ref=str(chat["id"]),
        content=_parse_content(message),
        attrs=DisplayAttrs(
            username=sender.get("username"),
            first_name=sender.get("first_name"),
            last_name=sender.get("last_name"),
        ),
        reply_to=reply_to,
    )
