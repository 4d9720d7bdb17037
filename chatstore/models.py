"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic records and response schemas, see schemas.py.
"""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, ForeignKey, Index, String, Text
from sqlalchemy.types import TypeDecorator

from chatstore.errors import MalformedInputError
from chatstore.storage import Base


# ISO-8601 UTC, second precision. Lexical order == chronological order.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

GROUP_JID_SUFFIX = "@g.us"


class UTCTimestamp(TypeDecorator):
    """
    Stores aware datetimes as ISO-8601 UTC strings and reads them back as
    aware datetimes. Naive datetimes are taken to be UTC.
    """

    impl = String
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, datetime):
            raise MalformedInputError(f"expected datetime, got {type(value).__name__}")
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        try:
            return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
        except (TypeError, ValueError) as e:
            raise MalformedInputError(f"cannot decode stored timestamp {value!r}") from e


class Chat(Base):
    """
    A conversation, direct or group.

    Table: chats
    Primary Key: jid
    """
    __tablename__ = "chats"

    jid = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    # Watermark: equals the timestamp of the chat's latest message
    last_message_time = Column(UTCTimestamp, nullable=True)

    @property
    def is_group(self) -> bool:
        return self.jid.endswith(GROUP_JID_SUFFIX)


class Message(Base):
    """
    A single text message.

    Table: messages
    Primary Key: (id, chat_jid) - ids are only unique within a chat
    """
    __tablename__ = "messages"

    id = Column(String, primary_key=True)
    chat_jid = Column(String, ForeignKey("chats.jid"), primary_key=True)
    sender = Column(String, nullable=False, default="")
    content = Column(Text, nullable=False)
    timestamp = Column(UTCTimestamp, nullable=False)
    is_from_me = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_messages_timestamp", "timestamp"),
        Index("idx_messages_chat_timestamp", "chat_jid", "timestamp"),
    )
