"""
Duplicate suppression for rapid resubmissions.

A message counts as a duplicate only when the same user sent the exact same
content (text body, or attachment reference for media) of the same type within
the dedup window. Two different messages sent quickly are both kept.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from anonrelay.models import ContentType, Message
from anonrelay.storage import utcnow

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_MS = 5000


def find_duplicate(
    db: Session,
    user_key: str,
    content_type: str,
    content: Optional[str],
    attachment_ref: Optional[str],
    window_ms: int = DEFAULT_WINDOW_MS,
    now: Optional[datetime] = None,
) -> Optional[Message]:
    """
    Return the earlier identical message inside the window, if any.

    Args:
        db: Database session
        user_key: Author of the candidate message
        content_type: Candidate content type
        content: Text body (text messages)
        attachment_ref: Channel-side file reference (media messages)
        window_ms: Width of the dedup window in milliseconds
        now: Reference time, defaults to the current UTC time

    Returns:
        The existing Message, or None when the candidate is new
    """
    now = now or utcnow()
    since = now - timedelta(milliseconds=window_ms)

    query = db.query(Message).filter(
        Message.user_key == user_key,
        Message.content_type == content_type,
        Message.created_at > since,
    )
    if content_type == ContentType.TEXT.value:
        query = query.filter(Message.content == content)
    else:
        query = query.filter(Message.attachment_ref == attachment_ref)

    existing = query.order_by(Message.created_at.desc()).first()
    logger.debug(f"Dedup check since {since.isoformat()}: {'duplicate' if existing else 'new'}")
    return existing


def is_duplicate(
    db: Session,
    user_key: str,
    content_type: str,
    content: Optional[str],
    attachment_ref: Optional[str],
    window_ms: int = DEFAULT_WINDOW_MS,
    now: Optional[datetime] = None,
) -> bool:
    return find_duplicate(db, user_key, content_type, content, attachment_ref, window_ms, now) is not None
