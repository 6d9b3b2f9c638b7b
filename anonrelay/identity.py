"""
Identity registry: maps external user keys to pseudonym ids.

Pseudonyms are derived from stored data on every creation (max + 1) and
never cached in memory, so a restart always continues from the registry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from anonrelay.errors import ConflictError
from anonrelay.models import User
from anonrelay.storage import utcnow, write_transaction
from anonrelay.utils import format_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DisplayAttrs:
    """Mutable display attributes reported by the transport on each contact."""
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


def resolve_or_create(
    db: Session,
    user_key: str,
    attrs: Optional[DisplayAttrs] = None,
    now: Optional[datetime] = None,
) -> User:
    """
    Look up a user by key, creating it with the next pseudonym on first contact.

    Runs as one write transaction. Existing users get their display
    attributes refreshed when they changed and last_activity bumped.

    Raises:
        ConflictError: the insert lost a uniqueness race; retry with a fresh lookup
    """
    attrs = attrs or DisplayAttrs()
    now = now or utcnow()

    try:
        with write_transaction(db):
            user = db.query(User).filter(User.user_key == user_key).with_for_update().first()

            if user is None:
                highest = db.query(func.max(User.pseudonym_id)).scalar()
                pseudonym_id = (highest or 0) + 1
                user = User(
                    user_key=user_key,
                    pseudonym_id=pseudonym_id,
                    username=attrs.username,
                    first_name=attrs.first_name,
                    last_name=attrs.last_name,
                    last_activity=now,
                    is_blocked=False,
                    created_at=now,
                )
                db.add(user)
                db.flush()
                logger.info(f"New user created with anonymous ID: User #{pseudonym_id}")
            else:
                changed = (
                    user.username != attrs.username
                    or user.first_name != attrs.first_name
                    or user.last_name != attrs.last_name
                )
                if changed:
                    user.username = attrs.username
                    user.first_name = attrs.first_name
                    user.last_name = attrs.last_name
                    logger.debug(f"Display attributes updated for User #{user.pseudonym_id}")
                user.last_activity = now
    except IntegrityError as e:
        logger.warning(f"Identity creation conflict: {e.orig}")
        raise ConflictError("identity creation raced with another writer") from e

    return user


def get_by_key(db: Session, user_key: str) -> Optional[User]:
    return db.query(User).filter(User.user_key == str(user_key)).first()


def get_by_pseudonym(db: Session, pseudonym_id: int) -> Optional[User]:
    return db.query(User).filter(User.pseudonym_id == pseudonym_id).first()


def add_note(
    db: Session,
    pseudonym_id: int,
    text: str,
    now: Optional[datetime] = None,
) -> Optional[User]:
    """
    Append an operator note to a user's log.

    Returns:
        The updated User, or None when the pseudonym is unknown
    """
    entry = f"{format_timestamp(now or utcnow())}: {text.strip()}"

    with write_transaction(db):
        user = db.query(User).filter(User.pseudonym_id == pseudonym_id).first()
        if user is None:
            return None
        user.notes = f"{user.notes}\n\n{entry}" if user.notes else entry

    logger.info(f"Note added to User #{pseudonym_id}")
    return user
