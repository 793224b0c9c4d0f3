"""
Pydantic schemas for request/response validation.
Defines all data transfer objects (DTOs) for the HTTP API and the WebSocket
channel. JSON field names are camelCase; Python attributes stay snake_case.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model that reads/writes camelCase JSON and accepts ORM objects."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True
    )


# Authentication Schemas
class RegisterRequest(CamelModel):
    """
    Registration request.

    Fields are optional at the schema level so that a missing username or
    password is reported as a 400 by the service rather than a 422.

    Example:
        ```json
        {"username": "alice", "password": "s3cret", "displayName": "Alice"}
        ```
    """
    username: Optional[str] = Field(None, max_length=50, description="Unique username")
    password: Optional[str] = Field(None, description="Plain text password")
    display_name: Optional[str] = Field(None, max_length=100, description="Display name (defaults to username)")


class LoginRequest(CamelModel):
    """Login request with username and password."""
    username: Optional[str] = None
    password: Optional[str] = None


class UserSummary(CamelModel):
    """Public user projection."""
    id: str
    username: str
    display_name: str


class AuthResponse(CamelModel):
    """
    Response for register and login.

    The same token is also set as an http-only cookie.
    """
    token: str = Field(..., description="JWT access token")
    user: UserSummary


class LogoutResponse(BaseModel):
    message: str


# Conversation Schemas
class ConversationResponse(CamelModel):
    """Two-party conversation."""
    id: str = Field(..., description="Conversation identifier")
    participant_a: str = Field(..., description="First participant user ID")
    participant_b: str = Field(..., description="Second participant user ID")
    key: str = Field(..., description="Canonical, order-independent participant key")
    created_at: datetime = Field(..., description="Creation timestamp (UTC)")


# Message Schemas
class MessageCreate(CamelModel):
    """
    Request schema for sending a message.

    Either receiverId or conversationId must be given.

    Example:
        ```json
        {"receiverId": "6f1c...", "type": "text", "content": "hi"}
        ```
    """
    receiver_id: Optional[str] = Field(None, description="Recipient user ID")
    conversation_id: Optional[str] = Field(None, description="Target conversation ID")
    type: str = Field("text", description="Message type: text, image or audio")
    content: Optional[str] = Field(None, description="Text, or media object ID for image/audio")


class MessageResponse(CamelModel):
    """Stored message record."""
    id: str
    sender_id: str
    receiver_id: Optional[str] = None
    conversation_id: str
    type: str
    content: str
    timestamp: datetime
    edited: bool = False
    edited_at: Optional[datetime] = None
    deleted: bool = False
    delivered: Optional[bool] = None
    delivered_at: Optional[datetime] = None
    read: bool = False
    read_at: Optional[datetime] = None


class MessageView(MessageResponse):
    """
    Client-facing message projection.

    Adds sender identity fields resolved at read time; delivered is always
    set (legacy records are backfilled to delivered at their timestamp).
    """
    delivered: bool = False
    sender_username: Optional[str] = None
    sender_display_name: Optional[str] = None


class MarkReadRequest(CamelModel):
    """Bulk mark-read request."""
    conversation_id: Optional[str] = None


# Media Schemas
class MediaUploadResponse(CamelModel):
    """Response for an uploaded attachment."""
    id: str
    filename: str
    content_type: str


# WebSocket Frame Schemas (Client → Server)
class WSChatSend(CamelModel):
    """WebSocket command: chat.send"""
    receiver_id: Optional[str] = None
    conversation_id: Optional[str] = None
    type: str = "text"
    content: Optional[str] = None
    # Only honoured for anonymous connections when payload identity is trusted
    sender_id: Optional[str] = None


class WSChatEdit(CamelModel):
    """WebSocket command: chat.edit"""
    id: str
    content: Optional[str] = None


class WSChatDelete(CamelModel):
    """WebSocket command: chat.delete"""
    id: str


class WSChatTyping(CamelModel):
    """WebSocket command: chat.typing"""
    receiver_id: str
    user: Optional[str] = None


class WSChatRead(CamelModel):
    """WebSocket command: chat.read"""
    message_id: str


class WSSubscribe(BaseModel):
    """WebSocket command: subscribe / unsubscribe to a topic."""
    topic: str = Field(..., min_length=1)


# WebSocket Frame Schemas (Server → Client)
class WSEvent(BaseModel):
    """Envelope for every payload fanned out on a topic."""
    type: str = Field(default="event", description="Frame type")
    topic: str = Field(..., description="Topic the payload was published on")
    payload: dict = Field(..., description="Published payload")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Publish timestamp")


class WSError(BaseModel):
    """WebSocket event: Error notification."""
    type: str = Field(default="error", description="Event type")
    error: str = Field(..., description="Error message")
    code: Optional[str] = Field(None, description="Error code")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Event timestamp")


class WSConnected(CamelModel):
    """WebSocket event: handshake completed."""
    type: str = "connected"
    user_id: Optional[str] = None
    username: Optional[str] = None
    topics: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
