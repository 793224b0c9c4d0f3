"""
Chat orchestration shared by the HTTP routers and the WebSocket channel.

ChatService checks who may do what, drives ConversationResolver and
MessageLifecycle, and describes the broadcasts each change needs. It never
publishes itself: the HTTP surface hands the broadcasts to BackgroundTasks and
the WebSocket surface awaits ConnectionHub.publish_many() directly.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.audit_logger import audit_logger
from core.config import settings
from core.exceptions import Capacity, Conflict, InvalidParticipant, NotFound, Unauthorized, ValidationError
from core.security import create_access_token, hash_password, hash_token, verify_password
from db.models import Conversation, Message, User
from db.repository import Repository
from api.metrics import auth_requests_total, messages_created_total, messages_transitions_total
from api.schemas import MessageView
from api.websocket_manager import Broadcast, DELETED_TOPIC, EDITED_TOPIC, user_topic
from services.conversation_resolver import ConversationResolver
from services.message_lifecycle import MessageLifecycle

logger = logging.getLogger(__name__)


@dataclass
class ChatOutcome:
    """Result of a mutating operation plus the broadcasts it triggers."""
    result: Any
    broadcasts: List[Broadcast] = field(default_factory=list)


@dataclass
class AuthResult:
    user: User
    token: str


def view_payload(view: MessageView) -> dict:
    """JSON-ready camelCase payload for a message view."""
    return view.model_dump(mode="json", by_alias=True)


def read_receipt(view: MessageView) -> dict:
    return {"type": "MESSAGE_READ", "message": view_payload(view)}


class ChatService:
    """Per-request chat operations bound to one database session."""

    def __init__(self, db: Session):
        self.db = db
        self.repository = Repository(db)
        self.resolver = ConversationResolver(self.repository)
        self.lifecycle = MessageLifecycle(self.repository, self.resolver)

    # Accounts
    def _issue_token(self, user: User) -> str:
        token_data = create_access_token(user.id, user.username)
        self.repository.create_access_token(
            user_id=user.id,
            token_hash=token_data["token_hash"],
            issued_at=token_data["issued_at"],
            expires_at=token_data["expires_at"]
        )
        return token_data["token"]

    def register(
        self,
        username: Optional[str],
        password: Optional[str],
        display_name: Optional[str] = None,
        ip_address: Optional[str] = None
    ) -> AuthResult:
        """
        Create a user and issue a token.

        The user count is checked before the insert, so two registrations
        racing for the last slot can both succeed.

        Raises:
            Capacity: settings.max_users accounts already exist
            ValidationError: username or password missing
            Conflict: username taken
        """
        if self.repository.count_users() >= settings.max_users:
            audit_logger.log_registration_rejected(username, ip_address, "capacity")
            auth_requests_total.labels(type="register", status="rejected", instance="api").inc()
            raise Capacity("Registration closed: only two users allowed")

        username = (username or "").strip()
        if not username:
            raise ValidationError("Username is required")
        if not password:
            raise ValidationError("Password is required")

        if self.repository.get_user_by_username(username):
            audit_logger.log_registration_rejected(username, ip_address, "duplicate_username")
            auth_requests_total.labels(type="register", status="conflict", instance="api").inc()
            raise Conflict("Username already exists")

        display_name = (display_name or "").strip() or username
        try:
            user = self.repository.create_user(
                username=username,
                password_hash=hash_password(password),
                display_name=display_name
            )
        except IntegrityError:
            self.db.rollback()
            auth_requests_total.labels(type="register", status="conflict", instance="api").inc()
            raise Conflict("Username already exists")

        audit_logger.log_registration(user.id, user.username, ip_address)
        auth_requests_total.labels(type="register", status="success", instance="api").inc()
        return AuthResult(user=user, token=self._issue_token(user))

    def login(self, username: Optional[str], password: Optional[str], ip_address: Optional[str] = None) -> AuthResult:
        """
        Verify credentials and issue a token.

        Raises:
            ValidationError: username or password missing
            Unauthorized: unknown user or wrong password
        """
        username = (username or "").strip()
        if not username:
            raise ValidationError("Username is required")
        if not password:
            raise ValidationError("Password is required")

        user = self.repository.get_user_by_username(username)
        if not user or not verify_password(password, user.password_hash):
            audit_logger.log_auth_failure(username, ip_address, "invalid_credentials")
            auth_requests_total.labels(type="login", status="failure", instance="api").inc()
            raise Unauthorized("Invalid username or password")

        audit_logger.log_auth_success(user.id, user.username, ip_address)
        auth_requests_total.labels(type="login", status="success", instance="api").inc()
        return AuthResult(user=user, token=self._issue_token(user))

    def logout(self, token: Optional[str], ip_address: Optional[str] = None) -> None:
        """Revoke the presented token, if any. Never fails."""
        if not token:
            return
        revoked = self.repository.revoke_access_token(hash_token(token))
        if revoked is not None:
            audit_logger.log_token_revoked(revoked.user_id, ip_address)
        auth_requests_total.labels(type="logout", status="success", instance="api").inc()

    def list_users(self) -> List[User]:
        return self.repository.list_users()

    # Conversations
    def _participant_conversation(self, caller_id: str, conversation_id: Optional[str]) -> Optional[Conversation]:
        if not conversation_id:
            return None
        conversation = self.repository.get_conversation_by_id(conversation_id)
        if conversation is None or not conversation.has_participant(caller_id):
            return None
        return conversation

    def resolve_conversation(self, caller_id: str, other_id: Optional[str]) -> Conversation:
        """
        Find or create the conversation between the caller and another user.

        Raises:
            InvalidParticipant: other_id missing or equal to the caller
            NotFound: other user does not exist
        """
        if not other_id:
            raise InvalidParticipant("Parameter 'other' is required")
        if other_id != caller_id and self.repository.get_user_by_id(other_id) is None:
            raise NotFound("User not found")
        return self.resolver.resolve(caller_id, other_id)

    # Messages
    def list_messages(self, caller_id: str, conversation_id: Optional[str] = None) -> List[MessageView]:
        """
        History visible to the caller, oldest first.

        With a conversation id: that conversation's messages, or [] when it does
        not exist or the caller is not a participant. Without one: every message
        the caller sent or received.
        """
        if conversation_id:
            conversation = self._participant_conversation(caller_id, conversation_id)
            if conversation is None:
                return []
            messages = self.repository.get_conversation_messages(conversation.id)
        else:
            messages = self.repository.get_user_messages(caller_id)
        return self.lifecycle.to_views(messages)

    def send_message(
        self,
        sender_id: str,
        receiver_id: Optional[str],
        conversation_id: Optional[str],
        message_type: str,
        content: Optional[str],
        via_channel: bool = False
    ) -> ChatOutcome:
        """
        Store a message and broadcast its view to sender and receiver.

        Returns:
            ChatOutcome whose result is the stored Message
        """
        if receiver_id and not conversation_id and self.repository.get_user_by_id(receiver_id) is None:
            raise NotFound("Receiver not found")

        message = self.lifecycle.send(
            sender_id=sender_id,
            receiver_id=receiver_id,
            conversation_id=conversation_id,
            message_type=message_type,
            content=content,
            via_channel=via_channel
        )
        messages_created_total.labels(path="channel" if via_channel else "request", instance="api").inc()

        payload = view_payload(self.lifecycle.to_view(message))
        topics = [user_topic(message.sender_id)]
        if message.receiver_id and message.receiver_id != message.sender_id:
            topics.append(user_topic(message.receiver_id))
        return ChatOutcome(result=message, broadcasts=[Broadcast(topic, payload) for topic in topics])

    @staticmethod
    def _participant_broadcasts(message: Message, payload: dict, global_topic: str) -> List[Broadcast]:
        topics = [user_topic(message.sender_id)]
        if message.receiver_id and message.receiver_id != message.sender_id:
            topics.append(user_topic(message.receiver_id))
        topics.append(global_topic)
        return [Broadcast(topic, payload) for topic in topics]

    def edit_message(self, editor_id: str, message_id: str, content: Optional[str]) -> ChatOutcome:
        """Edit a message owned by editor_id and broadcast the new view."""
        message = self.lifecycle.edit(message_id, content, editor_id=editor_id)
        messages_transitions_total.labels(transition="edited", instance="api").inc()
        payload = view_payload(self.lifecycle.to_view(message))
        return ChatOutcome(result=message, broadcasts=self._participant_broadcasts(message, payload, EDITED_TOPIC))

    def delete_message(self, actor_id: str, message_id: str) -> ChatOutcome:
        """Soft-delete a message owned by actor_id and broadcast the view."""
        message = self.lifecycle.mark_deleted(message_id, actor_id=actor_id)
        messages_transitions_total.labels(transition="deleted", instance="api").inc()
        payload = view_payload(self.lifecycle.to_view(message))
        return ChatOutcome(result=message, broadcasts=self._participant_broadcasts(message, payload, DELETED_TOPIC))

    def mark_conversation_read(self, caller_id: str, conversation_id: Optional[str]) -> ChatOutcome:
        """
        Mark everything addressed to the caller in a conversation as read.

        Each newly read message produces a read receipt on its sender's topic.

        Raises:
            ValidationError: conversation_id missing
            NotFound: conversation absent or caller not a participant
        """
        if not conversation_id:
            raise ValidationError("conversationId is required")
        conversation = self._participant_conversation(caller_id, conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")

        changed = self.lifecycle.mark_conversation_read(conversation.id, caller_id)
        if not changed:
            return ChatOutcome(result=[])
        messages_transitions_total.labels(transition="read", instance="api").inc(len(changed))
        views = self.lifecycle.to_views(changed)
        broadcasts = [
            Broadcast(user_topic(message.sender_id), read_receipt(view))
            for message, view in zip(changed, views)
        ]
        return ChatOutcome(result=changed, broadcasts=broadcasts)

    def mark_message_read(self, caller_id: str, message_id: str) -> ChatOutcome:
        """Mark one message read by its receiver; receipts only go out on the first read."""
        message, newly_read = self.lifecycle.mark_message_read(message_id, caller_id)
        if not newly_read:
            return ChatOutcome(result=message)
        messages_transitions_total.labels(transition="read", instance="api").inc()
        receipt = read_receipt(self.lifecycle.to_view(message))
        return ChatOutcome(result=message, broadcasts=[Broadcast(user_topic(message.sender_id), receipt)])

    def typing(self, sender_id: str, receiver_id: Optional[str]) -> ChatOutcome:
        """Typing indicator; nothing is stored."""
        if not receiver_id:
            raise ValidationError("receiverId is required")
        payload = {"type": "TYPING", "user": sender_id}
        return ChatOutcome(result=None, broadcasts=[Broadcast(user_topic(receiver_id), payload)])
