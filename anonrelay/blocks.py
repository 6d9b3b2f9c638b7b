"""
Block registry: per-user block flag and reason.

Blocking and unblocking are idempotent and addressed by pseudonym id, the
only identifier the operator knows. The affected user is told about the
new status on a best-effort basis.
"""

import enum
import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session

from anonrelay import texts
from anonrelay.channel import Channel
from anonrelay.errors import ChannelError
from anonrelay.metrics import record_notification
from anonrelay.models import User
from anonrelay.storage import write_transaction

logger = logging.getLogger(__name__)

DEFAULT_REASON = "No reason provided"


class BlockOutcome(str, enum.Enum):
    BLOCKED = "blocked"
    UNBLOCKED = "unblocked"
    NOT_FOUND = "not_found"


@dataclass
class BlockResult:
    outcome: BlockOutcome
    pseudonym_id: int
    user: Optional[User] = None
    changed: bool = False


def is_blocked(db: Session, user_key: str) -> bool:
    blocked = (
        db.query(User.is_blocked)
        .filter(User.user_key == str(user_key))
        .scalar()
    )
    return bool(blocked)


def list_blocked(db: Session) -> List[User]:
    return (
        db.query(User)
        .filter(User.is_blocked.is_(True))
        .order_by(User.pseudonym_id.asc())
        .all()
    )


def _set_blocked(db: Session, pseudonym_id: int, blocked: bool, reason: Optional[str]):
    with write_transaction(db):
        user = db.query(User).filter(User.pseudonym_id == pseudonym_id).with_for_update().first()
        if user is None:
            return None, False
        changed = user.is_blocked != blocked or user.block_reason != reason
        user.is_blocked = blocked
        user.block_reason = reason
    return user, changed


def _notify_user(channel: Channel, user: User, text: str) -> None:
    try:
        channel.send_text(user.user_key, text)
        record_notification("block_status", True)
    except ChannelError as e:
        record_notification("block_status", False)
        logger.warning(f"Could not notify User #{user.pseudonym_id} of block status: {e}")


def block(
    db: Session,
    channel: Channel,
    pseudonym_id: int,
    reason: Optional[str] = None,
) -> BlockResult:
    """
    Block a user by pseudonym.

    Returns:
        BlockResult with outcome NOT_FOUND (nothing mutated) or BLOCKED
    """
    reason = (reason or "").strip() or DEFAULT_REASON
    user, changed = _set_blocked(db, pseudonym_id, True, reason)
    if user is None:
        logger.info(f"Block requested for unknown User #{pseudonym_id}")
        return BlockResult(BlockOutcome.NOT_FOUND, pseudonym_id)

    logger.info(f"User #{pseudonym_id} has been blocked. Reason: {reason}")
    _notify_user(channel, user, texts.BLOCKED)
    return BlockResult(BlockOutcome.BLOCKED, pseudonym_id, user, changed)


def unblock(db: Session, channel: Channel, pseudonym_id: int) -> BlockResult:
    user, changed = _set_blocked(db, pseudonym_id, False, None)
    if user is None:
        logger.info(f"Unblock requested for unknown User #{pseudonym_id}")
        return BlockResult(BlockOutcome.NOT_FOUND, pseudonym_id)

    logger.info(f"User #{pseudonym_id} has been unblocked.")
    _notify_user(channel, user, texts.UNBLOCKED)
    return BlockResult(BlockOutcome.UNBLOCKED, pseudonym_id, user, changed)
