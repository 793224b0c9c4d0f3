"""
Dependency injection functions for FastAPI.
Provides database sessions and the authentication gate.

A credential is looked up in order: Authorization Bearer header, auth cookie,
and (WebSocket handshake only) the ``token`` query parameter. Anything that
does not resolve to a live user is treated as anonymous.
"""
import asyncio
import logging
from typing import Generator, Mapping, Optional
from fastapi import Depends, Request, WebSocket
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from core.audit_logger import audit_logger
from core.config import settings
from core.exceptions import Unauthorized
from core.security import decode_access_token, hash_token
from db.database import SessionLocal
from db.models import User
from db.repository import Repository

logger = logging.getLogger(__name__)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency that provides a database session.
    Automatically closes the session when request completes.

    Yields:
        Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def extract_token(
    headers: Mapping[str, str],
    cookies: Mapping[str, str],
    query_params: Optional[Mapping[str, str]] = None
) -> Optional[str]:
    """
    Pick the credential presented with a request or handshake.

    Args:
        headers: Request headers
        cookies: Request cookies
        query_params: Query parameters, only passed for WebSocket handshakes

    Returns:
        Raw token string, or None if no credential was presented
    """
    authorization = headers.get("authorization")
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):].strip()
        if token:
            return token

    token = cookies.get(settings.auth_cookie_name)
    if token:
        return token

    if query_params is not None:
        token = query_params.get("token")
        if token:
            return token
    return None


def resolve_identity(db: Session, token: Optional[str]) -> Optional[User]:
    """
    Map a token to a user.

    Checks signature, expiry and revocation. Returns None (anonymous) for any
    token that fails a check or whose user no longer exists.
    """
    if not token:
        return None

    payload = decode_access_token(token)
    if not payload:
        return None

    repository = Repository(db)
    access_token = repository.get_access_token(hash_token(token))
    if access_token and access_token.revoked:
        return None

    return repository.get_user_by_id(payload["sub"])


def get_request_token(request: Request) -> Optional[str]:
    return extract_token(request.headers, request.cookies)


def get_optional_user(
    request: Request,
    db: Session = Depends(get_db)
) -> Optional[User]:
    """
    Optional authentication dependency for endpoints that work with/without auth.

    Returns:
        User if authenticated, None otherwise
    """
    return resolve_identity(db, get_request_token(request))


def get_current_user(
    request: Request,
    db: Session = Depends(get_db)
) -> User:
    """
    Authentication dependency for protected endpoints.

    Returns:
        Authenticated User object

    Raises:
        Unauthorized: 401 if no valid credential was presented
    """
    token = get_request_token(request)
    user = resolve_identity(db, token)
    if user is None:
        if token:
            audit_logger.log_token_invalid(
                request.client.host if request.client else None,
                "invalid_or_revoked",
                endpoint=request.url.path
            )
        raise Unauthorized("Authentication required")
    return user


def _resolve_handshake_identity(token: str) -> Optional[User]:
    db = SessionLocal()
    try:
        user = resolve_identity(db, token)
        if user is not None:
            # Detach a plain snapshot for use outside the session
            db.expunge(user)
        return user
    finally:
        db.close()


async def authenticate_websocket(websocket: WebSocket) -> Optional[User]:
    """
    Resolve the identity behind a WebSocket handshake.

    Never rejects: a missing, invalid or slow-to-verify credential yields an
    anonymous connection. Verification runs on the threadpool and is bounded
    by settings.ws_auth_timeout_seconds.
    """
    token = extract_token(websocket.headers, websocket.cookies, websocket.query_params)
    if not token:
        return None

    try:
        user = await asyncio.wait_for(
            run_in_threadpool(_resolve_handshake_identity, token),
            timeout=settings.ws_auth_timeout_seconds
        )
    except asyncio.TimeoutError:
        logger.warning("WebSocket handshake authentication timed out, continuing as anonymous")
        return None

    if user is None:
        audit_logger.log_token_invalid(
            websocket.client.host if websocket.client else None,
            "invalid_or_revoked",
            endpoint="/ws"
        )
    return user
