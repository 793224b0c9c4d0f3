"""Services package initialization."""
from services.chat_service import ChatService, ChatOutcome
from services.conversation_resolver import ConversationResolver, canonical_key
from services.message_lifecycle import MessageLifecycle
from services.minio_client import MinIOClient, get_content_store

__all__ = [
    "ChatService",
    "ChatOutcome",
    "ConversationResolver",
    "canonical_key",
    "MessageLifecycle",
    "MinIOClient",
    "get_content_store",
]
