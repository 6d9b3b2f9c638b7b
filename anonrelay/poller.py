"""
Long-polling runner: pulls Telegram updates instead of receiving webhooks.

Run with ``python -m anonrelay.poller`` (or the ``anonrelay-poll`` script).
Do not run it while a webhook is registered for the same bot.
"""

import logging
import threading
from typing import Callable, Optional

from sqlalchemy.orm import Session

from anonrelay import texts
from anonrelay.commands import dispatch_event
from anonrelay.config import settings
from anonrelay.errors import ChannelError, ConflictError
from anonrelay.logging_utils import setup_logging
from anonrelay.relay import RelayEngine
from anonrelay.storage import SessionLocal, init_db
from anonrelay.telegram import TelegramChannel, parse_update

logger = logging.getLogger(__name__)

ERROR_BACKOFF_SECONDS = 5


def process_update(
    relay: RelayEngine,
    update: dict,
    session_factory: Callable[[], Session] = SessionLocal,
) -> str:
    """
    Route one raw update through the relay.

    Errors are logged and reported as an outcome so a single bad update
    never stops the polling loop.
    """
    event = parse_update(update)
    if event is None:
        return "ignored"

    with session_factory() as db:
        try:
            return dispatch_event(relay, db, event)
        except ConflictError as e:
            logger.error(f"Identity conflict persisted after retries: {e}")
            relay.notify(event.chat_ref, texts.ERROR_PROCESSING, "user_ack")
            return "conflict"
        except Exception:
            logger.exception(f"Error processing update {update.get('update_id')}")
            return "error"


def run_polling(
    relay: RelayEngine,
    channel: TelegramChannel,
    session_factory: Callable[[], Session] = SessionLocal,
    timeout: int = 25,
    stop: Optional[threading.Event] = None,
) -> None:
    """Poll getUpdates until stop is set, acknowledging each update once routed."""
    stop = stop or threading.Event()
    offset = None
    logger.info("Bot is running (long polling)")

    while not stop.is_set():
        try:
            updates = channel.get_updates(offset=offset, timeout=timeout)
        except ChannelError as e:
            logger.error(f"Polling error: {e}")
            stop.wait(ERROR_BACKOFF_SECONDS)
            continue

        for update in updates:
            offset = update["update_id"] + 1
            result = process_update(relay, update, session_factory)
            logger.debug(f"Update {update['update_id']} routed: {result}")


def main() -> None:
    setup_logging(settings.LOG_LEVEL)
    # Startup failures (database, token) propagate and stop the process
    init_db()
    channel = TelegramChannel(settings.BOT_TOKEN)
    relay = RelayEngine(channel, settings)
    try:
        run_polling(relay, channel, timeout=settings.POLL_TIMEOUT_SECONDS)
    except KeyboardInterrupt:
        logger.info("Polling stopped")


if __name__ == "__main__":
    main()
