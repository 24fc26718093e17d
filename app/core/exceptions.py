"""
Application error taxonomy.

Every error carries an HTTP status code and a machine-checkable error code.
The HTTP layer renders them as structured JSON; the realtime gateway turns
them into dropped events or refused handshakes.
"""
from typing import Optional


class AppError(Exception):
    """Base class for operational errors raised by the application."""

    status_code: int = 500
    error_code: str = "SERVER_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code

    def to_dict(self) -> dict:
        return {
            "success": False,
            "message": self.message,
            "errorCode": self.error_code,
        }


class ValidationError(AppError):
    """Malformed request or event payload."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class AuthenticationError(AppError):
    """Bad, missing or expired credential."""
    status_code = 401
    error_code = "AUTHENTICATION_ERROR"


class AuthorizationError(AppError):
    """Valid identity without sufficient rights (deactivated account, non-member)."""
    status_code = 403
    error_code = "AUTHORIZATION_ERROR"


class NotFoundError(AppError):
    """Referenced conversation, message or user is absent."""
    status_code = 404
    error_code = "NOT_FOUND_ERROR"


class ConflictError(AppError):
    """Unique constraint violation surfaced from the store."""
    status_code = 409
    error_code = "CONFLICT_ERROR"
