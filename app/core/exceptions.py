"""
Domain exceptions for the messaging core.

Services raise these; the HTTP surface maps them to status codes through
register_error_handlers(), the WebSocket surface turns them into error frames
or drops them with a log line.
"""
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse


class ChatError(Exception):
    """Base class for all messaging domain errors."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ChatError):
    """Missing or malformed required field. Raised before any mutation."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = "INVALID_MESSAGE"


class InvalidParticipant(ValidationError):
    """Empty or identical participant identifiers."""
    code = "INVALID_PARTICIPANT"


class Unauthorized(ChatError):
    """Missing, invalid or insufficient credential."""
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHORIZED"


class NotFound(ChatError):
    """Referenced message, conversation, user or media object is absent."""
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"


class Conflict(ChatError):
    """Duplicate username."""
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"


class Capacity(ChatError):
    """Registration cap reached."""
    status_code = status.HTTP_400_BAD_REQUEST
    code = "CAPACITY"


def register_error_handlers(app: FastAPI) -> None:
    """Map ChatError subclasses to JSON error responses."""

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        headers = None
        if isinstance(exc, Unauthorized):
            headers = {"WWW-Authenticate": "Bearer"}
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.code},
            headers=headers,
        )
