import enum
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Generator, Iterable, List, NamedTuple, Optional

from sqlalchemy import create_engine, text, func
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from anonrelay.config import settings

if TYPE_CHECKING:
    from anonrelay.models import Message

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's threadpool
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

# Objects stay loaded after commit so network I/O never triggers a lazy reload
SessionLocal = sessionmaker(
    autocommit=False, autoflush=False, expire_on_commit=False, bind=engine
)

# Base class for SQLAlchemy models
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup; any failure aborts startup.
    """
    logger.debug(f"Initializing database with URL: {engine.url.render_as_string(hide_password=True)}")
    try:
        # Import models to register them with Base.metadata
        from anonrelay import models  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        from anonrelay.models import Message, User

        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            # Raises if the tables were never created
            db.query(func.count(User.id)).scalar()
            db.query(func.count(Message.id)).scalar()
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


@contextmanager
def write_transaction(db: Session) -> Generator[Session, None, None]:
    """
    Run a block as one unit of work: commit on success, rollback on error.

    SQLite only locks on the first write of a deferred transaction, so the
    transaction is opened with BEGIN IMMEDIATE to take the write lock before
    the first read. Server databases rely on row locks and unique constraints.
    """
    if db.get_bind().dialect.name == "sqlite":
        db.execute(text("BEGIN IMMEDIATE"))
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


# =============================================================================
# Message Store Functions
# =============================================================================

class AppendOutcome(str, enum.Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    BLOCKED = "blocked"


class AppendResult(NamedTuple):
    outcome: AppendOutcome
    message: Optional["Message"]
    pending_count: int


def append_message(
    db: Session,
    user_key: str,
    pseudonym_id: int,
    origin_channel_ref: str,
    content_type: str,
    content: Optional[str] = None,
    attachment_ref: Optional[str] = None,
    caption: Optional[str] = None,
    window_ms: int = 5000,
    now: Optional[datetime] = None,
) -> AppendResult:
    """
    Store an inbound message in state pending.

    Inside one write transaction:
    - the author's block flag is read again; a block wins and nothing is stored
    - an identical message inside the dedup window is returned unchanged
    - otherwise a new row is inserted

    Returns:
        AppendResult with the outcome, the stored (or existing) message and
        the number of pending messages after the insert.
    """
    from anonrelay.dedup import find_duplicate
    from anonrelay.models import Message, User

    now = now or utcnow()
    logger.info(f"Appending {content_type} message for User #{pseudonym_id}")

    with write_transaction(db):
        author = db.query(User).filter(User.user_key == user_key).first()
        if author is not None and author.is_blocked:
            logger.info(f"User #{pseudonym_id} blocked before persistence, message discarded")
            return AppendResult(AppendOutcome.BLOCKED, None, 0)

        existing = find_duplicate(
            db, user_key, content_type, content, attachment_ref, window_ms, now
        )
        if existing is not None:
            logger.info(f"Duplicate message detected for User #{pseudonym_id}: id={existing.id}")
            return AppendResult(AppendOutcome.DUPLICATE, existing, 0)

        message = Message(
            user_key=user_key,
            pseudonym_id=pseudonym_id,
            origin_channel_ref=origin_channel_ref,
            content_type=content_type,
            content=content,
            attachment_ref=attachment_ref,
            caption=caption,
            processed=False,
            is_read=False,
            user_notified=False,
            created_at=now,
        )
        db.add(message)
        db.flush()

        pending_count = (
            db.query(func.count(Message.id)).filter(Message.processed.is_(False)).scalar() or 0
        )

    logger.info(f"Message stored: id={message.id}, pending={pending_count}")
    return AppendResult(AppendOutcome.CREATED, message, pending_count)


def drain_pending(db: Session) -> List:
    """
    Claim every pending message for forwarding.

    Selects pending rows oldest first with row locks and flips them to
    processed before committing, so a concurrent drain sees nothing.
    """
    from anonrelay.models import Message

    with write_transaction(db):
        pending = (
            db.query(Message)
            .filter(Message.processed.is_(False))
            .order_by(Message.created_at.asc(), Message.id.asc())
            .with_for_update()
            .all()
        )
        for message in pending:
            message.processed = True

    logger.info(f"Claimed {len(pending)} pending messages")
    return pending


def release_claim(db: Session, message_id: int) -> bool:
    """
    Return a claimed message to pending after its first forward failed.

    Only applies while nothing was delivered: no operator_ref and not read.
    """
    from anonrelay.models import Message

    with write_transaction(db):
        updated = (
            db.query(Message)
            .filter(
                Message.id == message_id,
                Message.processed.is_(True),
                Message.operator_ref.is_(None),
                Message.is_read.is_(False),
            )
            .update({Message.processed: False}, synchronize_session=False)
        )
    logger.debug(f"Release claim for message {message_id}: {'released' if updated else 'skipped'}")
    return bool(updated)


def mark_forwarded(db: Session, message_id: int, operator_ref: str) -> bool:
    """
    Record the operator-side reference of a forwarded message.

    The reference is written once, and only for a processed message.
    """
    from anonrelay.models import Message

    with write_transaction(db):
        updated = (
            db.query(Message)
            .filter(
                Message.id == message_id,
                Message.processed.is_(True),
                Message.operator_ref.is_(None),
            )
            .update({Message.operator_ref: str(operator_ref)}, synchronize_session=False)
        )
    if not updated:
        logger.warning(f"Message {message_id} not marked forwarded: not claimed or already referenced")
    return bool(updated)


def mark_read(db: Session, message_id: int) -> bool:
    from anonrelay.models import Message

    with write_transaction(db):
        updated = (
            db.query(Message)
            .filter(Message.id == message_id, Message.processed.is_(True))
            .update({Message.is_read: True}, synchronize_session=False)
        )
    return bool(updated)


def mark_notified_batch(db: Session, origin_refs: Iterable[str]) -> int:
    """
    Flag every read-but-unnotified message from these origins as notified.

    Returns:
        Number of messages updated
    """
    from anonrelay.models import Message

    refs = list(origin_refs)
    if not refs:
        return 0

    with write_transaction(db):
        updated = (
            db.query(Message)
            .filter(
                Message.origin_channel_ref.in_(refs),
                Message.processed.is_(True),
                Message.is_read.is_(True),
                Message.user_notified.is_(False),
            )
            .update({Message.user_notified: True}, synchronize_session=False)
        )
    logger.info(f"Marked {updated} messages notified across {len(refs)} origins")
    return updated


def resolve_by_operator_ref(db: Session, operator_ref: str):
    """
    Find the message the operator is replying to.

    Returns:
        Message object if found, None for untracked references
    """
    from anonrelay.models import Message

    logger.info(f"Resolving operator reference: {operator_ref}")
    result = db.query(Message).filter(Message.operator_ref == str(operator_ref)).first()
    logger.info(f"Operator reference lookup result: {'found' if result else 'not found'}")
    return result


def get_message(db: Session, message_id: int):
    from anonrelay.models import Message

    return db.query(Message).filter(Message.id == message_id).first()


def count_pending(db: Session) -> int:
    from anonrelay.models import Message

    return db.query(func.count(Message.id)).filter(Message.processed.is_(False)).scalar() or 0


# =============================================================================
# Setting Functions
# =============================================================================

def upsert_setting(db: Session, name: str, value: Optional[str]) -> None:
    from anonrelay.models import Setting

    with write_transaction(db):
        setting = db.get(Setting, name)
        if setting is None:
            db.add(Setting(name=name, value=value, updated_at=utcnow()))
        else:
            setting.value = value
            setting.updated_at = utcnow()
    logger.debug(f"Setting {name} updated")


def get_setting(db: Session, name: str) -> Optional[str]:
    from anonrelay.models import Setting

    setting = db.get(Setting, name)
    return setting.value if setting else None


def get_stats(db: Session) -> dict:
    """
    Get relay statistics for the /stats endpoint.

    Computes user counts, message counts per lifecycle state and the
    first/last message timestamps. Never exposes user keys.
    """
    from anonrelay.models import Message, User

    logger.info("Computing relay statistics")

    users_count = db.query(func.count(User.id)).scalar() or 0
    blocked_count = db.query(func.count(User.id)).filter(User.is_blocked.is_(True)).scalar() or 0
    total_messages = db.query(func.count(Message.id)).scalar() or 0

    pending = db.query(func.count(Message.id)).filter(Message.processed.is_(False)).scalar() or 0
    forwarded = (
        db.query(func.count(Message.id))
        .filter(Message.processed.is_(True), Message.is_read.is_(False))
        .scalar()
        or 0
    )
    read = (
        db.query(func.count(Message.id))
        .filter(Message.is_read.is_(True), Message.user_notified.is_(False))
        .scalar()
        or 0
    )
    notified = db.query(func.count(Message.id)).filter(Message.user_notified.is_(True)).scalar() or 0

    first_message_at = db.query(func.min(Message.created_at)).scalar()
    last_message_at = db.query(func.max(Message.created_at)).scalar()

    logger.info(f"Stats computed: {total_messages} messages, {users_count} users")

    return {
        "users_count": users_count,
        "blocked_count": blocked_count,
        "total_messages": total_messages,
        "messages_by_state": {
            "pending": pending,
            "forwarded": forwarded,
            "read": read,
            "notified": notified,
        },
        "first_message_at": first_message_at.isoformat() + "Z" if first_message_at else None,
        "last_message_at": last_message_at.isoformat() + "Z" if last_message_at else None,
    }
