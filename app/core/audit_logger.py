"""
Audit logging for security events.
Logs registrations, authentication failures, token revocation and
authorization denials on both the HTTP and the WebSocket surfaces.
"""
import logging
import json
from datetime import datetime
from typing import Dict, Any, Optional
from enum import Enum

logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    """Types of security audit events."""
    # Authentication events
    AUTH_SUCCESS = "auth_success"
    AUTH_FAILURE = "auth_failure"
    USER_REGISTERED = "user_registered"
    REGISTRATION_REJECTED = "registration_rejected"
    TOKEN_REVOKED = "token_revoked"
    TOKEN_INVALID = "token_invalid"

    # Authorization events
    AUTHZ_DENIED = "authorization_denied"

    # Realtime channel events
    ANONYMOUS_MUTATION = "anonymous_mutation"


class AuditLogger:
    """
    Security audit logger.

    All audit events are logged with:
    - Timestamp (ISO 8601)
    - Event type
    - User identifier
    - Source IP address
    - Additional context metadata
    """

    @staticmethod
    def log_event(
        event_type: AuditEventType,
        user_id: Optional[str] = None,
        username: Optional[str] = None,
        ip_address: Optional[str] = None,
        success: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None
    ) -> None:
        """
        Log a security audit event.

        Args:
            event_type: Type of security event
            user_id: User identifier (if available)
            username: Username supplied by the client (if available)
            ip_address: Source IP address
            success: Whether the operation succeeded
            metadata: Additional context (e.g., endpoint, resource)
            error_message: Error message for failed operations
        """
        audit_entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "event_type": event_type.value,
            "success": success,
            "user_id": user_id,
            "username": username,
            "ip_address": ip_address,
            "metadata": metadata or {},
            "error_message": error_message
        }

        log_level = logging.INFO if success else logging.WARNING

        logger.log(
            log_level,
            f"AUDIT: {event_type.value} | "
            f"user={user_id} | ip={ip_address} | "
            f"success={success} | {json.dumps(audit_entry)}"
        )

    @staticmethod
    def log_auth_success(user_id: str, username: str, ip_address: Optional[str]) -> None:
        """Log successful login."""
        AuditLogger.log_event(
            event_type=AuditEventType.AUTH_SUCCESS,
            user_id=user_id,
            username=username,
            ip_address=ip_address
        )

    @staticmethod
    def log_auth_failure(username: Optional[str], ip_address: Optional[str], reason: str) -> None:
        """Log failed login attempt."""
        AuditLogger.log_event(
            event_type=AuditEventType.AUTH_FAILURE,
            username=username,
            ip_address=ip_address,
            success=False,
            error_message=reason
        )

    @staticmethod
    def log_registration(user_id: str, username: str, ip_address: Optional[str]) -> None:
        """Log a new registration."""
        AuditLogger.log_event(
            event_type=AuditEventType.USER_REGISTERED,
            user_id=user_id,
            username=username,
            ip_address=ip_address
        )

    @staticmethod
    def log_registration_rejected(username: Optional[str], ip_address: Optional[str], reason: str) -> None:
        """Log a rejected registration (duplicate username, cap reached)."""
        AuditLogger.log_event(
            event_type=AuditEventType.REGISTRATION_REJECTED,
            username=username,
            ip_address=ip_address,
            success=False,
            error_message=reason
        )

    @staticmethod
    def log_token_revoked(user_id: str, ip_address: Optional[str]) -> None:
        """Log token revocation on logout."""
        AuditLogger.log_event(
            event_type=AuditEventType.TOKEN_REVOKED,
            user_id=user_id,
            ip_address=ip_address
        )

    @staticmethod
    def log_token_invalid(ip_address: Optional[str], reason: str, endpoint: Optional[str] = None) -> None:
        """Log invalid token usage attempt."""
        AuditLogger.log_event(
            event_type=AuditEventType.TOKEN_INVALID,
            ip_address=ip_address,
            success=False,
            metadata={"endpoint": endpoint},
            error_message=reason
        )

    @staticmethod
    def log_authorization_denied(user_id: Optional[str], resource: str, action: str, reason: str) -> None:
        """Log authorization denial."""
        AuditLogger.log_event(
            event_type=AuditEventType.AUTHZ_DENIED,
            user_id=user_id,
            success=False,
            metadata={"resource": resource, "action": action},
            error_message=reason
        )

    @staticmethod
    def log_anonymous_mutation(action: str, claimed_user_id: Optional[str], accepted: bool) -> None:
        """Log a mutating frame received on an unauthenticated WebSocket."""
        AuditLogger.log_event(
            event_type=AuditEventType.ANONYMOUS_MUTATION,
            user_id=claimed_user_id,
            success=accepted,
            metadata={"action": action}
        )


# Global audit logger instance
audit_logger = AuditLogger()
