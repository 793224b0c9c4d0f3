"""
Conversation resolution for two-party chats.

Every unordered pair of users maps to exactly one conversation, identified by
a canonical key built from the two user ids. Creation is insert-or-fetch: the
unique constraint on the key decides the winner of a concurrent first contact
and the loser re-reads the row the winner inserted.
"""
import logging
from sqlalchemy.exc import IntegrityError
from core.exceptions import InvalidParticipant
from db.models import Conversation
from db.repository import Repository

logger = logging.getLogger(__name__)

KEY_DELIMITER = ":"


def canonical_key(user_a: str, user_b: str) -> str:
    """
    Build the order-independent key for a pair of users.

    canonical_key(a, b) == canonical_key(b, a) for every pair.
    """
    low, high = sorted((user_a, user_b))
    return f"{low}{KEY_DELIMITER}{high}"


class ConversationResolver:
    """Finds or lazily creates the conversation between two users."""

    def __init__(self, repository: Repository):
        self.repository = repository

    def resolve(self, user_a: str, user_b: str) -> Conversation:
        """
        Return the conversation between user_a and user_b, creating it if needed.

        Args:
            user_a: One participant ID
            user_b: The other participant ID

        Returns:
            The single Conversation for the pair

        Raises:
            InvalidParticipant: if an ID is empty or both IDs are the same user
        """
        if not user_a or not user_b:
            raise InvalidParticipant("Both participants are required")
        if user_a == user_b:
            raise InvalidParticipant("Cannot start a conversation with yourself")

        key = canonical_key(user_a, user_b)
        conversation = self.repository.get_conversation_by_key(key)
        if conversation:
            return conversation

        try:
            conversation = self.repository.create_conversation(
                participant_a=user_a,
                participant_b=user_b,
                key=key
            )
            logger.info(f"Created conversation {conversation.id} for key {key}")
            return conversation
        except IntegrityError:
            # Lost the first-contact race: another writer inserted this key
            self.repository.db.rollback()
            conversation = self.repository.get_conversation_by_key(key)
            if conversation is None:
                raise
            logger.info(f"Conversation {conversation.id} for key {key} created concurrently, reusing it")
            return conversation
