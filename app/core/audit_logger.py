"""
Audit logging for security events.
Logs logins, rejected credentials, refused realtime handshakes and
authorization denials for compliance and forensics.
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
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    LOGOUT = "logout"
    TOKEN_INVALID = "token_invalid"

    # Authorization events
    ACCOUNT_DEACTIVATED = "account_deactivated"
    AUTHZ_DENIED = "authorization_denied"

    # Realtime events
    HANDSHAKE_REFUSED = "handshake_refused"


class AuditLogger:
    """
    Security audit logger.

    All audit events are logged with:
    - Timestamp (ISO 8601)
    - Event type
    - User / tenant identifier
    - Source IP address
    - Additional context metadata
    """

    @staticmethod
    def log_event(
        event_type: AuditEventType,
        user_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
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
            tenant_id: Tenant identifier (if available)
            ip_address: Source IP address
            success: Whether the operation succeeded
            metadata: Additional context (e.g., channel, email)
            error_message: Error message for failed operations
        """
        audit_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type.value,
            "success": success,
            "user_id": user_id,
            "tenant_id": tenant_id,
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
    def log_login_success(user_id: str, tenant_id: str, ip_address: Optional[str]) -> None:
        AuditLogger.log_event(
            event_type=AuditEventType.LOGIN_SUCCESS,
            user_id=user_id,
            tenant_id=tenant_id,
            ip_address=ip_address
        )

    @staticmethod
    def log_login_failure(email: str, ip_address: Optional[str], reason: str) -> None:
        AuditLogger.log_event(
            event_type=AuditEventType.LOGIN_FAILURE,
            ip_address=ip_address,
            success=False,
            metadata={"email": email},
            error_message=reason
        )

    @staticmethod
    def log_logout(user_id: str, tenant_id: str, ip_address: Optional[str]) -> None:
        AuditLogger.log_event(
            event_type=AuditEventType.LOGOUT,
            user_id=user_id,
            tenant_id=tenant_id,
            ip_address=ip_address
        )

    @staticmethod
    def log_credential_rejected(
        channel: str,
        ip_address: Optional[str],
        reason: str,
        deactivated: bool = False
    ) -> None:
        """Log a rejected bearer credential on the HTTP or realtime channel."""
        event_type = AuditEventType.ACCOUNT_DEACTIVATED if deactivated else AuditEventType.TOKEN_INVALID
        if channel == "websocket" and not deactivated:
            event_type = AuditEventType.HANDSHAKE_REFUSED
        AuditLogger.log_event(
            event_type=event_type,
            ip_address=ip_address,
            success=False,
            metadata={"channel": channel},
            error_message=reason
        )

    @staticmethod
    def log_authorization_denied(user_id: str, resource: str, action: str, reason: str) -> None:
        AuditLogger.log_event(
            event_type=AuditEventType.AUTHZ_DENIED,
            user_id=user_id,
            success=False,
            metadata={"resource": resource, "action": action},
            error_message=reason
        )


# Global audit logger instance
audit_logger = AuditLogger()
