"""
Audit logging for security events.
Logs rejected handshakes, invalid credentials and authorization denials
on conversations for compliance and forensics.
"""
import logging
import json
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from enum import Enum

logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    """Types of security audit events."""
    # Authentication events
    AUTH_SUCCESS = "auth_success"
    AUTH_FAILURE = "auth_failure"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_INVALID = "token_invalid"

    # Authorization events
    AUTHZ_DENIED = "authorization_denied"


class AuditLogger:
    """
    Security audit logger.

    Every entry carries a timestamp, the event type, the user identifier when
    one is known, the peer address and free-form metadata.
    """

    @staticmethod
    def log_event(
        event_type: AuditEventType,
        user_id: Optional[int] = None,
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
            ip_address: Source IP address
            success: Whether the operation succeeded
            metadata: Additional context (e.g., transport, resource, action)
            error_message: Error message for failed operations
        """
        audit_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type.value,
            "success": success,
            "user_id": user_id,
            "ip_address": ip_address,
            "metadata": metadata or {},
            "error_message": error_message
        }

        log_level = logging.INFO if success else logging.WARNING
        logger.log(
            log_level,
            f"AUDIT: {event_type.value} | user={user_id} | ip={ip_address} | "
            f"success={success} | {json.dumps(audit_entry)}"
        )

    @staticmethod
    def log_auth_success(user_id: int, ip_address: Optional[str], transport: str) -> None:
        """Log an accepted credential."""
        AuditLogger.log_event(
            event_type=AuditEventType.AUTH_SUCCESS,
            user_id=user_id,
            ip_address=ip_address,
            success=True,
            metadata={"transport": transport}
        )

    @staticmethod
    def log_auth_failure(
        ip_address: Optional[str],
        reason: str,
        transport: str,
        token_fingerprint: Optional[str] = None
    ) -> None:
        """Log a rejected credential (missing, expired or invalid)."""
        event_type = {
            "expired": AuditEventType.TOKEN_EXPIRED,
            "invalid": AuditEventType.TOKEN_INVALID,
        }.get(reason, AuditEventType.AUTH_FAILURE)
        AuditLogger.log_event(
            event_type=event_type,
            ip_address=ip_address,
            success=False,
            metadata={"transport": transport, "token_fingerprint": token_fingerprint},
            error_message=reason
        )

    @staticmethod
    def log_authorization_denied(
        user_id: int,
        resource: str,
        action: str,
        reason: str,
        ip_address: Optional[str] = None
    ) -> None:
        """Log authorization denial."""
        AuditLogger.log_event(
            event_type=AuditEventType.AUTHZ_DENIED,
            user_id=user_id,
            ip_address=ip_address,
            success=False,
            metadata={"resource": resource, "action": action},
            error_message=reason
        )


# Global audit logger instance
audit_logger = AuditLogger()
