"""
Broadcast fan-out: one payload to every reachable user.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session

from anonrelay.channel import Channel, Content
from anonrelay.metrics import record_broadcast_delivery
from anonrelay.models import User

logger = logging.getLogger(__name__)


@dataclass
class BroadcastReport:
    sent: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.sent + self.failed


def broadcast_recipients(db: Session, operator_chat_ref: str):
    """Non-blocked users other than the operator, oldest pseudonym first."""
    return (
        db.query(User)
        .filter(User.is_blocked.is_(False), User.user_key != str(operator_chat_ref))
        .order_by(User.pseudonym_id.asc())
        .all()
    )


def broadcast(
    db: Session,
    channel: Channel,
    payload: Content,
    operator_chat_ref: str,
    delay_ms: int = 100,
    sleep: Callable[[float], None] = time.sleep,
) -> BroadcastReport:
    """
    Send payload to all non-blocked users.

    Each recipient is independent: a failed send is counted and the
    fan-out continues. delay_ms is waited between sends to stay under the
    transport's rate limits.

    Raises:
        ValueError: payload is of a type the channel cannot send
    """
    if not payload.is_supported:
        raise ValueError(f"cannot broadcast content of type {payload.content_type!r}")

    recipients = broadcast_recipients(db, operator_chat_ref)
    logger.info(f"Broadcasting {payload.content_type} to {len(recipients)} users")

    report = BroadcastReport()
    for index, user in enumerate(recipients):
        if index and delay_ms > 0:
            sleep(delay_ms / 1000)
        try:
            channel.send_content(user.user_key, payload)
            report.sent += 1
            record_broadcast_delivery(True)
        except Exception as e:
            report.failed += 1
            record_broadcast_delivery(False)
            logger.error(f"Error sending broadcast to User #{user.pseudonym_id}: {e}")

    logger.info(f"Broadcast complete: sent={report.sent}, failed={report.failed}")
    return report
