"""
Dependency injection functions for FastAPI.
Provides database sessions, the authenticated identity and the realtime
gateway to route handlers.
"""
import logging
from typing import Generator, Optional
from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session
from starlette.requests import HTTPConnection

from core.audit_logger import audit_logger
from core.exceptions import AuthenticationError, AuthorizationError
from core.security import extract_bearer_token
from db.database import SessionLocal
from realtime.gateway import RealtimeGateway
from services.conversation_service import ConversationService
from services.identity import Identity, IdentityResolver

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


def client_ip(connection: HTTPConnection) -> str:
    return connection.client.host if connection.client else "unknown"


def get_current_identity(
    request: Request,
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db)
) -> Identity:
    """
    Bearer JWT authentication dependency.

    Uses the same IdentityResolver as the WebSocket handshake.

    Raises:
        AuthenticationError: 401 for a missing, invalid or expired token
        AuthorizationError: 403 for a deactivated account
    """
    token = extract_bearer_token(authorization)
    try:
        return IdentityResolver(db).resolve(token)
    except AuthenticationError as e:
        audit_logger.log_credential_rejected("http", client_ip(request), e.message)
        raise
    except AuthorizationError as e:
        audit_logger.log_credential_rejected("http", client_ip(request), e.message, deactivated=True)
        raise


def get_gateway(connection: HTTPConnection) -> RealtimeGateway:
    """The process-wide realtime gateway, shared by HTTP routes and the WebSocket endpoint."""
    return connection.app.state.gateway


def get_conversation_service(
    db: Session = Depends(get_db),
    gateway: RealtimeGateway = Depends(get_gateway)
) -> ConversationService:
    return ConversationService(db, gateway.broadcaster, gateway.presence_notifier)
