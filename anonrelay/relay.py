"""
Relay engine: ties identity, dedup, storage and the channel together.

Three flows:
- inbound: block check, identity, dedup + append, then best-effort
  notifications dispatched after the commit
- drain: claim pending messages in one transaction, then forward them to
  the operator outside any transaction, oldest first
- reply: resolve the operator's reply target and deliver to the origin

Network sends never happen inside a store transaction, and a failure for
one message or recipient never aborts a batch.
"""

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from anonrelay import texts
from anonrelay.blocks import is_blocked
from anonrelay.channel import Channel, Content, InboundEvent
from anonrelay.config import Settings
from anonrelay.errors import ConflictError
from anonrelay.identity import get_by_key, resolve_or_create
from anonrelay.metrics import record_drain, record_forward, record_notification, record_pending
from anonrelay.models import ContentType, Message, User
from anonrelay.storage import (
    AppendOutcome,
    SessionLocal,
    append_message,
    count_pending,
    drain_pending,
    mark_forwarded,
    mark_notified_batch,
    mark_read,
    release_claim,
    resolve_by_operator_ref,
    upsert_setting,
    utcnow,
)
from anonrelay.utils import format_timestamp

logger = logging.getLogger(__name__)

LAST_OPERATOR_NOTIFICATION = "last_operator_notification"

Dispatch = Callable[..., None]


def run_in_thread(fn: Callable, *args, **kwargs) -> None:
    """Default dispatcher: run fn on a daemon thread."""
    threading.Thread(target=fn, args=args, kwargs=kwargs, daemon=True).start()


class InboundOutcome(str, enum.Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    BLOCKED = "blocked"
    UNSUPPORTED = "unsupported"


@dataclass
class InboundResult:
    outcome: InboundOutcome
    message: Optional[Message] = None
    user: Optional[User] = None


class DrainStatus(str, enum.Enum):
    COMPLETED = "completed"
    EMPTY = "empty"
    BUSY = "busy"


@dataclass
class DrainReport:
    status: DrainStatus
    claimed: int = 0
    forwarded: int = 0
    failed: int = 0
    notified: int = 0
    failed_ids: List[int] = field(default_factory=list)


class ReplyOutcome(str, enum.Enum):
    SENT = "sent"
    UNSUPPORTED = "unsupported"
    UNRESOLVED = "unresolved"
    FAILED = "failed"


@dataclass
class ReplyResult:
    outcome: ReplyOutcome
    message: Optional[Message] = None


class RelayEngine:
    """
    Owns the process-wide relay state: the channel, the settings and the
    drain-in-progress guard. Created once at startup.
    """

    def __init__(
        self,
        channel: Channel,
        settings: Settings,
        dispatch: Optional[Dispatch] = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.channel = channel
        self.settings = settings
        self.dispatch = dispatch or run_in_thread
        self.session_factory = session_factory
        self._drain_lock = threading.Lock()

    @property
    def operator_chat_ref(self) -> str:
        return self.settings.OPERATOR_CHAT_REF

    @property
    def draining(self) -> bool:
        return self._drain_lock.locked()

    # =========================================================================
    # Inbound flow
    # =========================================================================

    def accept_inbound(
        self,
        db: Session,
        event: InboundEvent,
        dispatch: Optional[Dispatch] = None,
        now: Optional[datetime] = None,
    ) -> InboundResult:
        """
        Accept a message from a user.

        Notifications for an accepted message are handed to dispatch only
        after the message is committed, so a failed notification never
        undoes the store.

        Raises:
            ConflictError: identity creation kept conflicting after all retries
        """
        dispatch = dispatch or self.dispatch
        content = event.content

        if not content.is_supported:
            logger.info(f"Discarding unsupported inbound content: {content.content_type}")
            return InboundResult(InboundOutcome.UNSUPPORTED)

        if is_blocked(db, event.sender_key):
            logger.info("Inbound message from blocked user rejected")
            self.notify(event.chat_ref, texts.BLOCKED, "block_status")
            return InboundResult(InboundOutcome.BLOCKED)

        user = self._resolve_identity(db, event, now)
        is_text = content.content_type == ContentType.TEXT.value

        result = append_message(
            db,
            user_key=user.user_key,
            pseudonym_id=user.pseudonym_id,
            origin_channel_ref=event.chat_ref,
            content_type=content.content_type,
            content=content.text if is_text else None,
            attachment_ref=None if is_text else content.attachment_ref,
            caption=None if is_text else content.caption,
            window_ms=self.settings.DEDUP_WINDOW_MS,
            now=now,
        )

        if result.outcome is AppendOutcome.BLOCKED:
            self.notify(event.chat_ref, texts.BLOCKED, "block_status")
            return InboundResult(InboundOutcome.BLOCKED, user=user)

        if result.outcome is AppendOutcome.DUPLICATE:
            return InboundResult(InboundOutcome.DUPLICATE, result.message, user)

        record_pending(result.pending_count)
        dispatch(self.notify, event.chat_ref, texts.MESSAGE_SENT, "user_ack")
        dispatch(self.notify_operator, result.pending_count)
        logger.info(f"Message received from User #{user.pseudonym_id} and stored in database")
        return InboundResult(InboundOutcome.ACCEPTED, result.message, user)

    def _resolve_identity(self, db: Session, event: InboundEvent, now: Optional[datetime]) -> User:
        retries = max(1, self.settings.IDENTITY_RETRIES)
        for attempt in range(1, retries + 1):
            try:
                return resolve_or_create(db, event.sender_key, event.attrs, now=now)
            except ConflictError:
                if attempt == retries:
                    raise
                logger.warning(f"Identity conflict, retrying ({attempt}/{retries})")

    def notify_operator(self, pending_count: int) -> None:
        """Ping the operator about pending messages and record when it happened."""
        sent = self.notify(
            self.operator_chat_ref,
            texts.NEW_MESSAGES.format(count=pending_count),
            "operator_ping",
        )
        if not sent:
            return
        try:
            with self.session_factory() as db:
                upsert_setting(db, LAST_OPERATOR_NOTIFICATION, utcnow().isoformat() + "Z")
        except Exception as e:
            logger.error(f"Failed to record operator notification time: {e}")

    # =========================================================================
    # Forward flow
    # =========================================================================

    def drain(self, db: Session) -> DrainReport:
        """
        Forward every pending message to the operator.

        A second drain while one is running returns BUSY without touching
        the store. The claim itself is transactional, so even drains from
        different processes never forward the same message twice.
        """
        if not self._drain_lock.acquire(blocking=False):
            logger.info("Already processing messages, skipping")
            return DrainReport(DrainStatus.BUSY)

        try:
            started = time.perf_counter()
            claimed = drain_pending(db)
            if not claimed:
                record_pending(0)
                return DrainReport(DrainStatus.EMPTY)

            logger.info(f"Processing {len(claimed)} new messages")
            report = DrainReport(DrainStatus.COMPLETED, claimed=len(claimed))
            origins: List[str] = []

            for message in claimed:
                try:
                    self._forward_one(db, message)
                except Exception as e:
                    report.failed += 1
                    report.failed_ids.append(message.id)
                    record_forward("failed")
                    logger.error(f"Error processing message ID {message.id}: {e}")
                    continue

                report.forwarded += 1
                if message.origin_channel_ref not in origins:
                    origins.append(message.origin_channel_ref)

            # One read notice per origin, however many of its messages were in the batch
            notified = [
                origin for origin in origins
                if self.notify(origin, texts.MESSAGE_READ, "read_receipt")
            ]
            report.notified = len(notified)
            mark_notified_batch(db, notified)
            record_pending(count_pending(db))
            record_drain(time.perf_counter() - started)

            logger.info(f"Processed {report.claimed} messages and notified {report.notified} users")
            return report
        finally:
            self._drain_lock.release()

    def _forward_one(self, db: Session, message: Message) -> None:
        user = get_by_key(db, message.user_key)
        if user is None:
            release_claim(db, message.id)
            raise LookupError(f"user not found for message {message.id}")

        if self.settings.supervisor_enabled:
            self._mirror_user_details(user)

        header = texts.FORWARD_HEADER.format(pseudonym_id=message.pseudonym_id)
        content = Content(
            content_type=message.content_type,
            text=message.content,
            attachment_ref=message.attachment_ref,
            caption=message.caption,
        )

        try:
            receipt = self.channel.send_content(self.operator_chat_ref, content, header=header)
        except Exception:
            # Nothing reached the operator: hand the message back to the next drain
            release_claim(db, message.id)
            raise

        try:
            referenced = mark_forwarded(db, message.id, receipt.ref)
        except Exception as e:
            referenced = False
            logger.error(f"Failed to record operator reference for message {message.id}: {e}")
        record_forward("forwarded" if referenced else "unreferenced")

        mark_read(db, message.id)

    def _mirror_user_details(self, user: User) -> None:
        details = texts.USER_DETAILS.format(
            pseudonym_id=user.pseudonym_id,
            user_key=user.user_key,
            username=f"@{user.username}" if user.username else "None",
            name=user.display_name,
            created_at=format_timestamp(user.created_at),
            last_activity=format_timestamp(user.last_activity),
        )
        self.notify(self.settings.SUPERVISOR_CHAT_REF, details, "supervisor_mirror")

    # =========================================================================
    # Reply flow
    # =========================================================================

    def reply(self, db: Session, event: InboundEvent) -> ReplyResult:
        """
        Deliver an operator reply to the user whose message it answers.

        An unknown reply target is a normal outcome: the operator is told
        and nothing is retried.
        """
        message = None
        if event.reply_to is not None:
            message = resolve_by_operator_ref(db, event.reply_to.ref)

        if message is None:
            self.notify(self.operator_chat_ref, texts.REPLY_UNRESOLVED, "reply")
            return ReplyResult(ReplyOutcome.UNRESOLVED)

        outcome = ReplyOutcome.SENT
        try:
            if event.content.is_supported:
                self.channel.send_content(message.origin_channel_ref, event.content)
            else:
                self.channel.send_text(message.origin_channel_ref, texts.UNSUPPORTED_MEDIA)
                outcome = ReplyOutcome.UNSUPPORTED
        except Exception as e:
            logger.error(f"Error delivering reply to User #{message.pseudonym_id}: {e}")
            record_notification("reply", False)
            self.notify(self.operator_chat_ref, texts.REPLY_FAILED, "reply")
            return ReplyResult(ReplyOutcome.FAILED, message)

        record_notification("reply", True)
        self.notify(
            self.operator_chat_ref,
            texts.REPLY_SENT.format(pseudonym_id=message.pseudonym_id),
            "reply",
        )
        logger.info(f"Reply sent to User #{message.pseudonym_id}")
        return ReplyResult(outcome, message)

    # =========================================================================
    # Helpers
    # =========================================================================

    def notify(self, chat_ref: str, text: str, kind: str) -> bool:
        """Best-effort text send; failures are logged and counted, never raised."""
        try:
            self.channel.send_text(chat_ref, text)
        except Exception as e:
            record_notification(kind, False)
            logger.warning(f"Failed to send {kind} notification: {e}")
            return False
        record_notification(kind, True)
        return True
