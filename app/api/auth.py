"""
Authentication endpoints.
Email/password login issuing JWT access tokens, logout and current user.
Login and logout drive presence transitions and are audit logged.
"""
import logging
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from api.dependencies import client_ip, get_current_identity, get_db, get_gateway
from api.schemas import ApiResponse, LoginRequest, LoginResponse, UserResponse
from core.audit_logger import audit_logger
from core.exceptions import AuthenticationError, AuthorizationError, NotFoundError
from core.security import create_access_token, verify_password
from db.models import User
from db.repository import Repository
from realtime.gateway import RealtimeGateway
from services.identity import Identity
from services.presence import PresenceStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


def user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        tenant_id=user.tenant_id,
        email=user.email,
        display_name=user.display_name,
        role=user.role.value,
        is_active=user.is_active,
        online_status=user.online_status.value,
        last_seen_at=user.last_seen_at.isoformat() if user.last_seen_at else None
    )


@router.post("/login", response_model=LoginResponse, response_model_by_alias=True, status_code=status.HTTP_200_OK)
async def login(
    request_body: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
    gateway: RealtimeGateway = Depends(get_gateway)
):
    """
    Issue a JWT access token for valid email/password credentials.

    The user becomes online; the transition is announced to the tenant room.

    Raises:
        AuthenticationError: 401 for unknown email or wrong password
        AuthorizationError: 403 for a deactivated account
    """
    repository = Repository(db)
    ip_address = client_ip(request)

    user = repository.get_user_by_email(request_body.email.lower())
    if not user or not verify_password(request_body.password, user.password_hash):
        logger.warning(f"Failed authentication attempt for email: {request_body.email}")
        audit_logger.log_login_failure(request_body.email, ip_address, "Invalid credentials")
        raise AuthenticationError("Invalid credentials")

    if not user.is_active:
        audit_logger.log_login_failure(request_body.email, ip_address, "Account is deactivated")
        raise AuthorizationError("Account is deactivated. Please contact your administrator.")

    snapshot = PresenceStore(db).mark_online(user.id)
    token_data = create_access_token(user.id, user.tenant_id)
    audit_logger.log_login_success(user.id, user.tenant_id, ip_address)

    try:
        await gateway.presence_notifier.announce(snapshot, user.tenant_id)
    except Exception as e:
        logger.error(f"Failed to announce login of user {user.id}: {e}")

    return LoginResponse(
        token=token_data["token"],
        expires_at=token_data["expires_at"].isoformat(),
        user=user_response(user)
    )


@router.post("/logout", response_model=ApiResponse, status_code=status.HTTP_200_OK)
async def logout(
    request: Request,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
    gateway: RealtimeGateway = Depends(get_gateway)
):
    """Mark the caller offline and announce it. Tokens are stateless and stay valid until expiry."""
    snapshot = PresenceStore(db).mark_offline(identity.user_id)
    audit_logger.log_logout(identity.user_id, identity.tenant_id, client_ip(request))

    try:
        await gateway.presence_notifier.announce(snapshot, identity.tenant_id)
    except Exception as e:
        logger.error(f"Failed to announce logout of user {identity.user_id}: {e}")

    return ApiResponse(message="Logout successful")


@router.get("/me", response_model=ApiResponse)
def get_me(identity: Identity = Depends(get_current_identity), db: Session = Depends(get_db)):
    user = Repository(db).get_user_by_id(identity.user_id)
    if user is None:
        raise NotFoundError("User not found")
    return ApiResponse(data={"user": user_response(user).model_dump(by_alias=True)})
