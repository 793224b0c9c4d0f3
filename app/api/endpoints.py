"""
API endpoint implementations.
Defines the REST endpoints for authentication, chat and media, plus the
WebSocket endpoint that carries chat commands and real-time events.
"""
import logging
import json
from datetime import datetime
from typing import List, Optional
from uuid import uuid4
from fastapi import (
    APIRouter, BackgroundTasks, Depends, File, Form, Query, Request, Response,
    UploadFile, WebSocket, WebSocketDisconnect, status
)
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from api.dependencies import authenticate_websocket, get_current_user, get_db, get_request_token
from api.metrics import websocket_messages_received_total
from api.schemas import (
    RegisterRequest, LoginRequest, AuthResponse, LogoutResponse, UserSummary,
    ConversationResponse, MessageCreate, MessageResponse, MessageView, MarkReadRequest,
    MediaUploadResponse, WSChatSend, WSChatEdit, WSChatDelete, WSChatTyping, WSChatRead,
    WSSubscribe, WSConnected, WSError
)
from api.websocket_manager import Connection, connection_hub
from core.audit_logger import audit_logger
from core.config import settings
from core.exceptions import ChatError, NotFound, Unauthorized
from db.database import SessionLocal
from db.models import User
from db.repository import Repository
from services.chat_service import ChatOutcome, ChatService
from services.minio_client import MinIOClient, get_content_store

logger = logging.getLogger(__name__)

# Create routers
auth_router = APIRouter()
chat_router = APIRouter()
media_router = APIRouter()
websocket_router = APIRouter()


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _set_auth_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=settings.auth_cookie_name,
        value=token,
        httponly=True,
        secure=settings.auth_cookie_secure,
        samesite="lax",
        max_age=settings.token_expiry_hours * 3600,
        path="/"
    )


# Authentication Endpoints
@auth_router.post("/register", response_model=AuthResponse, status_code=status.HTTP_200_OK)
def register(
    payload: RegisterRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db)
):
    """
    Register a new user and log them in.

    Registration closes permanently once two users exist. The returned token is
    also set as an http-only cookie.

    Raises:
        ValidationError: 400 if username or password is missing
        Capacity: 400 if the user cap is reached
        Conflict: 409 if the username is taken

    Example Request:
        ```json
        POST /auth/register
        {"username": "alice", "password": "s3cret", "displayName": "Alice"}
        ```

    Example Response:
        ```json
        {
            "token": "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9...",
            "user": {"id": "6f1c...", "username": "alice", "displayName": "Alice"}
        }
        ```
    """
    result = ChatService(db).register(
        username=payload.username,
        password=payload.password,
        display_name=payload.display_name,
        ip_address=_client_ip(request)
    )
    _set_auth_cookie(response, result.token)
    logger.info(f"User {result.user.username} registered")
    return AuthResponse(token=result.token, user=UserSummary.model_validate(result.user))


@auth_router.post("/login", response_model=AuthResponse, status_code=status.HTTP_200_OK)
def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db)
):
    """
    Exchange username and password for a token.

    Raises:
        ValidationError: 400 if username or password is missing
        Unauthorized: 401 if the credentials do not match
    """
    result = ChatService(db).login(payload.username, payload.password, ip_address=_client_ip(request))
    _set_auth_cookie(response, result.token)
    logger.info(f"User {result.user.username} logged in")
    return AuthResponse(token=result.token, user=UserSummary.model_validate(result.user))


@auth_router.post("/logout", response_model=LogoutResponse, status_code=status.HTTP_200_OK)
def logout(
    request: Request,
    response: Response,
    db: Session = Depends(get_db)
):
    """Revoke the presented token and clear the auth cookie. Always succeeds."""
    ChatService(db).logout(get_request_token(request), ip_address=_client_ip(request))
    response.delete_cookie(settings.auth_cookie_name, path="/")
    return LogoutResponse(message="Logged out")


@auth_router.get("/users", response_model=List[UserSummary])
def list_users(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List every registered user (at most two)."""
    return ChatService(db).list_users()


# Chat Endpoints
@chat_router.get("/messages", response_model=List[MessageView])
def get_messages(
    conversation_id: Optional[str] = Query(None, alias="conversationId"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Read message history, oldest first.

    With conversationId, returns that conversation's messages, or an empty
    list when the conversation does not exist or the caller is not one of its
    participants. Without it, returns every message the caller sent or received.

    Example Request:
        ```
        GET /chat/messages?conversationId=9b2e...
        Authorization: Bearer <token>
        ```
    """
    return ChatService(db).list_messages(current_user.id, conversation_id)


@chat_router.post("/messages", response_model=MessageResponse, status_code=status.HTTP_200_OK)
def send_message(
    payload: MessageCreate,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Send a message through the request path.

    The conversation is created on first contact. The stored message has
    delivered=false; its view is broadcast to the sender and receiver topics
    after the response is sent.

    Raises:
        ValidationError: 400 if target, type or content is invalid
        NotFound: 404 if the receiver or conversation does not exist

    Example Request:
        ```json
        POST /chat/messages
        Authorization: Bearer <token>
        {"receiverId": "2c7d...", "type": "text", "content": "hi"}
        ```
    """
    outcome = ChatService(db).send_message(
        sender_id=current_user.id,
        receiver_id=payload.receiver_id,
        conversation_id=payload.conversation_id,
        message_type=payload.type,
        content=payload.content
    )
    background_tasks.add_task(connection_hub.publish_many, outcome.broadcasts)
    return outcome.result


@chat_router.post("/conversation", response_model=ConversationResponse, status_code=status.HTTP_200_OK)
def get_or_create_conversation(
    other: Optional[str] = Query(None, description="The other participant's user ID"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Return the conversation between the caller and another user, creating it if needed.

    Calling it from either side returns the same conversation.

    Raises:
        InvalidParticipant: 400 if other is missing or is the caller
        NotFound: 404 if the other user does not exist
    """
    return ChatService(db).resolve_conversation(current_user.id, other)


@chat_router.post("/messages/mark-read", response_model=List[MessageResponse])
def mark_read(
    payload: MarkReadRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Mark every unread message addressed to the caller in a conversation as read.

    Returns the messages that changed (empty when nothing was unread). Each
    sender receives a MESSAGE_READ receipt on their user topic.

    Raises:
        ValidationError: 400 if conversationId is missing
        NotFound: 404 if the conversation does not exist or the caller is not a participant

    WebSocket Notification:
        ```json
        {
            "type": "event",
            "topic": "user/<senderId>",
            "payload": {"type": "MESSAGE_READ", "message": {"id": "...", "read": true}}
        }
        ```
    """
    outcome = ChatService(db).mark_conversation_read(current_user.id, payload.conversation_id)
    background_tasks.add_task(connection_hub.publish_many, outcome.broadcasts)
    return outcome.result


# Media Endpoints
@media_router.post("/upload", response_model=MediaUploadResponse, status_code=status.HTTP_200_OK)
def upload_media(
    file: UploadFile = File(...),
    conversation_id: Optional[str] = Form(None, alias="conversationId"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: MinIOClient = Depends(get_content_store)
):
    """
    Store an attachment and return its id.

    The id is what an image or audio message carries as its content. When a
    conversationId is given, only that conversation's participants can fetch
    the file later.

    Raises:
        NotFound: 404 if conversationId is given and the caller is not a participant
    """
    repository = Repository(db)
    if conversation_id:
        conversation = repository.get_conversation_by_id(conversation_id)
        if conversation is None or not conversation.has_participant(current_user.id):
            raise NotFound("Conversation not found")

    media_id = str(uuid4())
    filename = file.filename or "upload"
    content_type = file.content_type or "application/octet-stream"
    storage_key = f"media/{media_id}"

    file.file.seek(0, 2)
    size = file.file.tell()
    file.file.seek(0)
    store.put_object(storage_key, file.file, size, content_type=content_type)

    try:
        media = repository.create_media_object(
            filename=filename,
            content_type=content_type,
            size_bytes=size,
            storage_key=storage_key,
            uploaded_by=current_user.id,
            conversation_id=conversation_id,
            media_id=media_id
        )
    except SQLAlchemyError as e:
        # No row points at the object, so it would never be served
        db.rollback()
        logger.error(f"Failed to record media {media_id}, removing stored object: {e}")
        store.remove_object(storage_key)
        raise

    logger.info(f"User {current_user.id} uploaded media {media.id} ({size} bytes)")
    return media


@media_router.get("/file/{media_id}")
def get_media(
    media_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: MinIOClient = Depends(get_content_store)
):
    """
    Return the bytes of an attachment.

    Files bound to a conversation are only served to its participants; anyone
    else gets the same 404 as for a missing file.
    """
    repository = Repository(db)
    media = repository.get_media_object(media_id)
    if media is None:
        raise NotFound("File not found")

    if media.conversation_id:
        conversation = repository.get_conversation_by_id(media.conversation_id)
        if conversation is None or not conversation.has_participant(current_user.id):
            audit_logger.log_authorization_denied(current_user.id, f"media:{media_id}", "read", "not_a_participant")
            raise NotFound("File not found")

    content = store.get_object(media.storage_key)
    if content is None:
        raise NotFound("File not found")
    return Response(content=content, media_type=media.content_type)


# WebSocket Endpoint
MUTATING_ACTIONS = {"chat.send", "chat.edit", "chat.delete", "chat.typing", "chat.read"}
KNOWN_ACTIONS = MUTATING_ACTIONS | {"subscribe", "unsubscribe", "pong"}


async def _send_error(websocket: WebSocket, error: str, code: str) -> None:
    await websocket.send_json(WSError(error=error, code=code).model_dump(mode="json"))


def _run_chat_operation(operation: str, *args) -> ChatOutcome:
    """Run one ChatService call with its own session (executed on the threadpool)."""
    db = SessionLocal()
    try:
        return getattr(ChatService(db), operation)(*args)
    finally:
        db.close()


def _channel_actor(connection: Connection, action: str, frame: dict) -> Optional[str]:
    """
    Identity a channel command acts as.

    Anonymous connections only act when payload identity is trusted, and then
    only for chat.send (senderId) and chat.typing (user).
    """
    if connection.user_id is not None:
        return connection.user_id

    claimed = None
    if action == "chat.send":
        claimed = frame.get("senderId")
    elif action == "chat.typing":
        claimed = frame.get("user")

    accepted = bool(settings.ws_trust_payload_identity and claimed)
    audit_logger.log_anonymous_mutation(action, claimed, accepted)
    return claimed if accepted else None


async def _handle_frame(connection: Connection, action: str, frame: dict) -> None:
    websocket = connection.websocket

    if action == "pong":
        connection_hub.update_heartbeat(connection)
        return

    if action in ("subscribe", "unsubscribe"):
        command = WSSubscribe.model_validate(frame)
        if action == "subscribe":
            if not connection_hub.can_subscribe(connection, command.topic):
                audit_logger.log_authorization_denied(connection.user_id, command.topic, "subscribe", "foreign_topic")
                await _send_error(websocket, f"Not allowed to subscribe to {command.topic}", "FORBIDDEN")
                return
            connection_hub.subscribe(connection, command.topic)
        else:
            connection_hub.unsubscribe(connection, command.topic)
        await websocket.send_json({
            "type": f"{action}d",
            "topic": command.topic,
            "timestamp": datetime.utcnow().isoformat()
        })
        return

    if action not in MUTATING_ACTIONS:
        await _send_error(websocket, f"Unknown action: {action}", "INVALID_ACTION")
        return

    actor_id = _channel_actor(connection, action, frame)
    if actor_id is None:
        await _send_error(websocket, "Authentication required", "UNAUTHORIZED")
        return

    if action == "chat.send":
        command = WSChatSend.model_validate(frame)
        outcome = await run_in_threadpool(
            _run_chat_operation, "send_message",
            actor_id, command.receiver_id, command.conversation_id, command.type, command.content, True
        )
    elif action == "chat.edit":
        command = WSChatEdit.model_validate(frame)
        outcome = await run_in_threadpool(_run_chat_operation, "edit_message", actor_id, command.id, command.content)
    elif action == "chat.delete":
        command = WSChatDelete.model_validate(frame)
        outcome = await run_in_threadpool(_run_chat_operation, "delete_message", actor_id, command.id)
    elif action == "chat.read":
        command = WSChatRead.model_validate(frame)
        outcome = await run_in_threadpool(_run_chat_operation, "mark_message_read", actor_id, command.message_id)
    else:
        command = WSChatTyping.model_validate(frame)
        outcome = await run_in_threadpool(_run_chat_operation, "typing", actor_id, command.receiver_id)

    await connection_hub.publish_many(outcome.broadcasts)


@websocket_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for chat commands and real-time events.

    Authentication is optional at the handshake: the credential is taken from
    the Authorization header, the auth cookie or the ``token`` query parameter.
    Anonymous connections receive the global edit/delete broadcasts but cannot
    issue chat commands (unless payload identity is trusted).

    Connection Flow:
        1. Client connects: ws://api/ws?token={jwt}
        2. Server accepts and subscribes the connection to user/{id},
           messages.edited and messages.deleted
        3. Server sends {"type": "connected", "userId", "username", "topics"}
        4. Client sends commands; server pushes events for subscribed topics
        5. Server sends periodic pings, client must respond with pong

    WebSocket Commands (Client → Server):
        - chat.send: {"action": "chat.send", "receiverId": "...", "type": "text", "content": "hi"}
        - chat.edit: {"action": "chat.edit", "id": "...", "content": "edited"}
        - chat.delete: {"action": "chat.delete", "id": "..."}
        - chat.typing: {"action": "chat.typing", "receiverId": "..."}
        - chat.read: {"action": "chat.read", "messageId": "..."}
        - subscribe / unsubscribe: {"action": "subscribe", "topic": "user/<own id>"}
        - pong: {"action": "pong"}

    WebSocket Message Types (Server → Client):
        - event: {"type": "event", "topic": "...", "payload": {...}, "timestamp": "..."}
        - ping: heartbeat check (client should respond with pong)
        - error: {"type": "error", "error": "...", "code": "..."}

    Commands that reference a missing message or that the caller may not
    perform are logged and dropped without a reply.

    Error Codes:
        - 4002: Connection limit reached
        - 1001: Connection timeout (no heartbeat)
    """
    user = await authenticate_websocket(websocket)
    user_id = user.id if user else None

    connection = await connection_hub.connect(websocket, user_id)
    if connection is None:
        await websocket.close(code=4002, reason="Connection limit reached")
        return

    logger.info(f"WebSocket connection established for user {user.username if user else 'anonymous'}")

    try:
        await websocket.send_json(WSConnected(
            user_id=user_id,
            username=user.username if user else None,
            topics=sorted(connection.topics)
        ).model_dump(mode="json", by_alias=True))

        while True:
            data = await websocket.receive_text()

            try:
                frame = json.loads(data)
            except json.JSONDecodeError:
                await _send_error(websocket, "Invalid JSON format", "INVALID_JSON")
                continue
            if not isinstance(frame, dict):
                await _send_error(websocket, "Frame must be a JSON object", "INVALID_MESSAGE")
                continue

            action = frame.get("action")
            websocket_messages_received_total.labels(
                action=action if isinstance(action, str) and action in KNOWN_ACTIONS else "unknown", instance="api"
            ).inc()
            if not isinstance(action, str):
                await _send_error(websocket, "Frame action must be a string", "INVALID_ACTION")
                continue

            try:
                await _handle_frame(connection, action, frame)
            except SchemaValidationError as e:
                await _send_error(websocket, f"Invalid {action} frame: {e.errors()[0]['msg']}", "INVALID_MESSAGE")
            except (NotFound, Unauthorized) as e:
                logger.info(f"Dropped {action} from user {connection.user_id or 'anonymous'}: {e.message}")
            except ChatError as e:
                await _send_error(websocket, e.message, e.code)
            except WebSocketDisconnect:
                raise
            except Exception as e:
                logger.error(f"Error processing WebSocket {action} frame: {e}")
                await _send_error(websocket, "Internal server error", "INTERNAL_ERROR")

    except WebSocketDisconnect:
        logger.info(f"User {user_id or 'anonymous'} disconnected from WebSocket")
    except Exception as e:
        logger.error(f"WebSocket error for user {user_id or 'anonymous'}: {e}")
    finally:
        connection_hub.disconnect(connection)
