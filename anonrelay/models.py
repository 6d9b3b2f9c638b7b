"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import enum

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from anonrelay.storage import Base


class ContentType(str, enum.Enum):
    """Kinds of content the relay stores and forwards."""
    TEXT = "text"
    PHOTO = "photo"
    STICKER = "sticker"
    VOICE = "voice"
    VIDEO = "video"
    DOCUMENT = "document"
    AUDIO = "audio"
    ANIMATION = "animation"

    @classmethod
    def parse(cls, value):
        """Return the member for value, or None for content the relay does not model."""
        try:
            return cls(value)
        except ValueError:
            return None


class MessageState(str, enum.Enum):
    """Lifecycle states, derived from the message flags."""
    PENDING = "pending"
    FORWARDED = "forwarded"
    READ = "read"
    NOTIFIED = "notified"


class User(Base):
    """
    A person who has contacted the operator.

    Table: users
    The operator only ever sees pseudonym_id, never user_key.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_key = Column(String, nullable=False, unique=True, index=True)
    pseudonym_id = Column(Integer, nullable=False, unique=True, index=True)
    username = Column(String, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    last_activity = Column(DateTime, nullable=False)
    is_blocked = Column(Boolean, nullable=False, default=False, index=True)
    block_reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)

    @property
    def display_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part) or "Unknown"


class Message(Base):
    """
    An inbound message relayed to the operator.

    Table: messages
    user_key references users by value; there is no foreign key, so
    messages outlive any change to their author.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_key = Column(String, nullable=False, index=True)
    pseudonym_id = Column(Integer, nullable=False)
    origin_channel_ref = Column(String, nullable=False, index=True)
    content_type = Column(String, nullable=False)
    content = Column(Text, nullable=True)
    attachment_ref = Column(String, nullable=True)
    caption = Column(Text, nullable=True)
    processed = Column(Boolean, nullable=False, default=False, index=True)
    is_read = Column(Boolean, nullable=False, default=False, index=True)
    user_notified = Column(Boolean, nullable=False, default=False)
    operator_ref = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, index=True)

    @property
    def state(self) -> MessageState:
        if self.user_notified:
            return MessageState.NOTIFIED
        if self.is_read:
            return MessageState.READ
        if self.processed:
            return MessageState.FORWARDED
        return MessageState.PENDING


class Setting(Base):
    """Durable name/value pair for auxiliary bookkeeping."""
    __tablename__ = "settings"

    name = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=False)
