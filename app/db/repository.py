"""
Repository layer for database operations.
Provides high-level methods for the user, conversation, message, token and
media lookups the messaging services need.
"""
from datetime import datetime
from typing import Iterable, List, Optional
from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session
from db.models import User, Conversation, Message, AccessToken, MediaObject


class Repository:
    """Repository class for database operations."""

    def __init__(self, db: Session):
        """
        Initialize repository with database session.

        Args:
            db: SQLAlchemy database session
        """
        self.db = db

    # User operations
    def create_user(self, username: str, password_hash: str, display_name: str) -> User:
        """Create a new user."""
        user = User(
            username=username,
            password_hash=password_hash,
            display_name=display_name
        )
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user

    def count_users(self) -> int:
        return self.db.query(User).count()

    def list_users(self) -> List[User]:
        return self.db.query(User).order_by(User.created_at).all()

    def get_user_by_username(self, username: str) -> Optional[User]:
        """Get user by username."""
        return self.db.query(User).filter(User.username == username).first()

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        """Get user by ID."""
        return self.db.query(User).filter(User.id == user_id).first()

    def get_users_by_ids(self, user_ids: Iterable[str]) -> List[User]:
        """Get all users whose ID is in user_ids with a single query."""
        ids = list(set(user_ids))
        if not ids:
            return []
        return self.db.query(User).filter(User.id.in_(ids)).all()

    # Conversation operations
    def create_conversation(self, participant_a: str, participant_b: str, key: str) -> Conversation:
        """
        Insert a new conversation.

        Raises sqlalchemy.exc.IntegrityError when another writer already
        inserted a conversation with the same key.
        """
        conversation = Conversation(
            participant_a=participant_a,
            participant_b=participant_b,
            key=key
        )
        self.db.add(conversation)
        self.db.commit()
        self.db.refresh(conversation)
        return conversation

    def get_conversation_by_id(self, conversation_id: str) -> Optional[Conversation]:
        """Get conversation by ID."""
        return self.db.query(Conversation).filter(Conversation.id == conversation_id).first()

    def get_conversation_by_key(self, key: str) -> Optional[Conversation]:
        """Get conversation by canonical participant key."""
        return self.db.query(Conversation).filter(Conversation.key == key).first()

    # Message operations
    def create_message(self, message: Message) -> Message:
        """Persist a new message."""
        self.db.add(message)
        self.db.commit()
        self.db.refresh(message)
        return message

    def save_message(self, message: Message) -> Message:
        """Flush pending changes on a single message (one-document update)."""
        self.db.commit()
        self.db.refresh(message)
        return message

    def save_messages(self, messages: List[Message]) -> List[Message]:
        """Persist pending changes on a batch of messages in one commit."""
        self.db.commit()
        for message in messages:
            self.db.refresh(message)
        return messages

    def mark_messages_read(self, message_ids: Iterable[str], read_at: datetime) -> List[str]:
        """
        Flip read=false rows to read in one commit.

        Each row is updated only while it is still unread, so a concurrent
        reader that got there first keeps its read_at. Read implies Delivered.

        Returns:
            IDs of the rows this call changed
        """
        changed = []
        for message_id in message_ids:
            result = self.db.execute(
                update(Message)
                .where(Message.id == message_id, Message.read == False)  # noqa: E712
                .values(
                    read=True,
                    read_at=read_at,
                    delivered=True,
                    delivered_at=func.coalesce(Message.delivered_at, read_at)
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                changed.append(message_id)
        self.db.commit()
        return changed

    def get_message_by_id(self, message_id: str) -> Optional[Message]:
        """Get message by ID."""
        return self.db.query(Message).filter(Message.id == message_id).first()

    def get_conversation_messages(self, conversation_id: str) -> List[Message]:
        """Get every message of a conversation, oldest first."""
        return self.db.query(Message).filter(
            Message.conversation_id == conversation_id
        ).order_by(Message.timestamp.asc()).all()

    def get_user_messages(self, user_id: str) -> List[Message]:
        """Get every message the user sent or received, oldest first."""
        return self.db.query(Message).filter(
            or_(Message.sender_id == user_id, Message.receiver_id == user_id)
        ).order_by(Message.timestamp.asc()).all()

    def get_unread_messages(self, conversation_id: str, receiver_id: str) -> List[Message]:
        """Get unread messages of a conversation addressed to receiver_id."""
        return self.db.query(Message).filter(
            Message.conversation_id == conversation_id,
            Message.receiver_id == receiver_id,
            Message.read == False  # noqa: E712
        ).order_by(Message.timestamp.asc()).all()

    def get_untracked_delivery_messages(self, limit: int) -> List[Message]:
        """Get messages created before delivery tracking existed (delivered IS NULL)."""
        return self.db.query(Message).filter(
            Message.delivered.is_(None)
        ).order_by(Message.timestamp.asc()).limit(limit).all()

    # Auth operations
    def create_access_token(self, user_id: str, token_hash: str, issued_at: datetime, expires_at: datetime) -> AccessToken:
        """Record an issued access token for later revocation."""
        token = AccessToken(
            user_id=user_id,
            token_hash=token_hash,
            issued_at=issued_at,
            expires_at=expires_at
        )
        self.db.add(token)
        self.db.commit()
        return token

    def get_access_token(self, token_hash: str) -> Optional[AccessToken]:
        return self.db.query(AccessToken).filter(AccessToken.token_hash == token_hash).first()

    def revoke_access_token(self, token_hash: str) -> Optional[AccessToken]:
        """Mark an access token as revoked. Idempotent."""
        token = self.get_access_token(token_hash)
        if token and not token.revoked:
            token.revoked = True
            token.revoked_at = datetime.utcnow()
            self.db.commit()
        return token

    # Media operations
    def create_media_object(
        self,
        filename: str,
        content_type: str,
        size_bytes: int,
        storage_key: str,
        uploaded_by: str,
        conversation_id: Optional[str] = None,
        media_id: Optional[str] = None
    ) -> MediaObject:
        """Create media metadata record."""
        media = MediaObject(
            filename=filename,
            content_type=content_type,
            size_bytes=size_bytes,
            storage_key=storage_key,
            uploaded_by=uploaded_by,
            conversation_id=conversation_id
        )
        if media_id:
            media.id = media_id
        self.db.add(media)
        self.db.commit()
        self.db.refresh(media)
        return media

    def get_media_object(self, media_id: str) -> Optional[MediaObject]:
        return self.db.query(MediaObject).filter(MediaObject.id == media_id).first()
