"""
Message lifecycle: the sent → delivered → read state machine plus the
orthogonal edited/deleted flags, and the MessageView projection sent to clients.

All flags are monotonic (false → true only). Content is the only field that
changes after persistence, and only through edit().
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from core.exceptions import NotFound, Unauthorized, ValidationError
from db.models import Message, MessageType, User
from db.repository import Repository
from api.schemas import MessageResponse, MessageView
from services.conversation_resolver import ConversationResolver

logger = logging.getLogger(__name__)

MESSAGE_TYPES = {t.value for t in MessageType}


class MessageLifecycle:
    """Applies state transitions to messages and persists them."""

    def __init__(self, repository: Repository, resolver: Optional[ConversationResolver] = None):
        self.repository = repository
        self.resolver = resolver or ConversationResolver(repository)

    def send(
        self,
        sender_id: str,
        receiver_id: Optional[str],
        conversation_id: Optional[str],
        message_type: str,
        content: Optional[str],
        via_channel: bool = False
    ) -> Message:
        """
        Create and persist a message.

        When only a receiver is given the conversation is resolved (and created
        on first contact). When only a conversation is given the receiver is
        its other participant. Messages sent over the realtime channel are
        marked delivered immediately.

        Raises:
            ValidationError: missing target, unknown type or empty content
            NotFound: conversation_id does not exist
        """
        if message_type not in MESSAGE_TYPES:
            raise ValidationError(f"Unsupported message type: {message_type}")
        if content is None or not content.strip():
            raise ValidationError("Message content is required")
        if not receiver_id and not conversation_id:
            raise ValidationError("receiverId or conversationId is required")

        if conversation_id:
            conversation = self.repository.get_conversation_by_id(conversation_id)
            if conversation is None or not conversation.has_participant(sender_id):
                raise NotFound("Conversation not found")
            if receiver_id and not conversation.has_participant(receiver_id):
                raise ValidationError("Receiver is not a participant of this conversation")
            receiver_id = receiver_id or conversation.other_participant(sender_id)
        else:
            conversation = self.resolver.resolve(sender_id, receiver_id)

        now = datetime.utcnow()
        message = Message(
            sender_id=sender_id,
            receiver_id=receiver_id,
            conversation_id=conversation.id,
            type=message_type,
            content=content,
            timestamp=now,
            edited=False,
            deleted=False,
            delivered=via_channel,
            delivered_at=now if via_channel else None,
            read=False
        )
        saved = self.repository.create_message(message)
        logger.info(
            f"Message {saved.id} stored in conversation {saved.conversation_id} "
            f"(channel={via_channel})"
        )
        return saved

    def _get(self, message_id: str) -> Message:
        message = self.repository.get_message_by_id(message_id) if message_id else None
        if message is None:
            raise NotFound("Message not found")
        return message

    def edit(self, message_id: str, new_content: Optional[str], editor_id: Optional[str] = None) -> Message:
        """
        Replace the content of a message and flag it edited.

        Raises:
            NotFound: message does not exist
            Unauthorized: editor_id given and not the sender
            ValidationError: empty content
        """
        message = self._get(message_id)
        if editor_id is not None and editor_id != message.sender_id:
            raise Unauthorized("Only the sender can edit this message")
        if new_content is None or not new_content.strip():
            raise ValidationError("Message content is required")

        message.content = new_content
        message.edited = True
        message.edited_at = datetime.utcnow()
        return self.repository.save_message(message)

    def mark_deleted(self, message_id: str, actor_id: Optional[str] = None) -> Message:
        """
        Soft-delete a message. Content is retained.

        Raises:
            NotFound: message does not exist
            Unauthorized: actor_id given and not the sender
        """
        message = self._get(message_id)
        if actor_id is not None and actor_id != message.sender_id:
            raise Unauthorized("Only the sender can delete this message")
        if message.deleted:
            return message
        message.deleted = True
        return self.repository.save_message(message)

    def mark_conversation_read(self, conversation_id: str, receiver_id: str) -> List[Message]:
        """
        Mark every unread message addressed to receiver_id in a conversation.

        Returns only the messages this call changed. Rows another reader marked
        in the meantime are left alone and not returned.
        """
        unread = self.repository.get_unread_messages(conversation_id, receiver_id)
        if not unread:
            return []
        changed = set(self.repository.mark_messages_read([m.id for m in unread], datetime.utcnow()))
        saved = [message for message in unread if message.id in changed]
        for message in saved:
            self.repository.db.refresh(message)
        logger.info(f"Marked {len(saved)} messages read in conversation {conversation_id} for {receiver_id}")
        return saved

    def mark_message_read(self, message_id: str, caller_id: str) -> Tuple[Message, bool]:
        """
        Mark a single message read on behalf of its receiver.

        Returns the message and whether this call was the one that read it.

        Raises:
            NotFound: message does not exist
            Unauthorized: caller is not the receiver
        """
        message = self._get(message_id)
        if caller_id != message.receiver_id:
            raise Unauthorized("Only the receiver can mark this message read")
        if message.read:
            return message, False
        changed = self.repository.mark_messages_read([message.id], datetime.utcnow())
        self.repository.db.refresh(message)
        return message, bool(changed)

    # Views
    @staticmethod
    def _build_view(message: Message, sender: Optional[User]) -> MessageView:
        data = MessageResponse.model_validate(message).model_dump()
        if data["delivered"] is None:
            # Record predates delivery tracking
            data["delivered"] = True
            data["delivered_at"] = message.timestamp or datetime.utcnow()
        if sender is not None:
            data["sender_username"] = sender.username
            data["sender_display_name"] = sender.display_name
        return MessageView(**data)

    def to_view(self, message: Message) -> MessageView:
        """Build the client-facing view of one message."""
        sender = self.repository.get_user_by_id(message.sender_id) if message.sender_id else None
        return self._build_view(message, sender)

    def to_views(self, messages: List[Message]) -> List[MessageView]:
        """Build views for many messages with one lookup for all distinct senders."""
        if not messages:
            return []
        senders: Dict[str, User] = {
            user.id: user
            for user in self.repository.get_users_by_ids({m.sender_id for m in messages})
        }
        return [self._build_view(m, senders.get(m.sender_id)) for m in messages]
