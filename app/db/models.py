"""
SQLAlchemy ORM models for the messaging database.
Defines all entities: User, Conversation, Message, AccessToken, MediaObject.
"""
import enum
import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, DateTime, Text, BigInteger, Boolean, Index
)
from db.database import Base


def new_id() -> str:
    """Generate a string primary key."""
    return str(uuid.uuid4())


class MessageType(str, enum.Enum):
    """Kind of message content."""
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"


# Models
class User(Base):
    """User entity - one of the (at most max_users) registered participants."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    username = Column(String(50), unique=True, nullable=False, index=True)
    display_name = Column(String(100), nullable=False)
    password_hash = Column(String(100), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Conversation(Base):
    """
    Conversation between exactly two users.

    `key` is the canonical, order-independent pair key; the unique constraint
    on it is what keeps concurrent first-contact resolutions from creating
    duplicates.
    """
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=new_id)
    participant_a = Column(String(36), nullable=False, index=True)
    participant_b = Column(String(36), nullable=False, index=True)
    key = Column(String(80), unique=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def has_participant(self, user_id: str) -> bool:
        return user_id in (self.participant_a, self.participant_b)

    def other_participant(self, user_id: str) -> str:
        return self.participant_b if user_id == self.participant_a else self.participant_a


class Message(Base):
    """Message entity - one text or media message inside a conversation."""
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=new_id)
    sender_id = Column(String(36), nullable=False, index=True)
    receiver_id = Column(String(36), nullable=True, index=True)
    conversation_id = Column(String(36), nullable=False, index=True)
    type = Column(String(16), nullable=False, default=MessageType.TEXT.value)
    content = Column(Text, nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    edited = Column(Boolean, default=False, nullable=False)
    edited_at = Column(DateTime, nullable=True)
    deleted = Column(Boolean, default=False, nullable=False)

    # NULL means the record predates delivery tracking
    delivered = Column(Boolean, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_messages_conversation_receiver_read", "conversation_id", "receiver_id", "read"),
    )


class AccessToken(Base):
    """Issued JWT access tokens, kept for revocation on logout."""
    __tablename__ = "access_tokens"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    token_hash = Column(String(64), unique=True, nullable=False)  # SHA-256 hash of JWT
    issued_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    revoked = Column(Boolean, default=False, nullable=False)
    revoked_at = Column(DateTime, nullable=True)


class MediaObject(Base):
    """Metadata for an uploaded attachment stored in MinIO."""
    __tablename__ = "media_objects"

    id = Column(String(36), primary_key=True, default=new_id)
    filename = Column(String(255), nullable=False)
    content_type = Column(String(100), nullable=False)
    size_bytes = Column(BigInteger, nullable=False)
    storage_key = Column(String(255), nullable=False)  # Object path in MinIO
    conversation_id = Column(String(36), nullable=True, index=True)
    uploaded_by = Column(String(36), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
