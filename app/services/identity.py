"""
Identity resolution for bearer credentials.

One resolver serves both the HTTP dependency and the realtime handshake so
the two channels accept and refuse exactly the same credentials.
"""
import logging
from dataclasses import dataclass
from sqlalchemy.orm import Session
from core.exceptions import AuthenticationError, AuthorizationError
from core.security import decode_access_token
from db.models import UserRole
from db.repository import Repository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """Authenticated principal attached to a request or a live connection."""
    user_id: str
    tenant_id: str
    display_name: str
    role: UserRole
    is_active: bool = True

    @property
    def tenant_room(self) -> str:
        return self.tenant_id


class IdentityResolver:
    """Turns a bearer credential into an Identity or raises."""

    def __init__(self, db: Session):
        self.db = db
        self.repository = Repository(db)

    def resolve(self, token: str) -> Identity:
        """
        Validate a JWT access token and load its user.

        Args:
            token: Raw bearer credential (may be empty)

        Returns:
            Identity of the token's user

        Raises:
            AuthenticationError: missing, invalid or expired token, or unknown user
            AuthorizationError: the user's account is deactivated
        """
        if not token:
            raise AuthenticationError("No token provided")

        payload = decode_access_token(token)

        if payload.get("type") != "access":
            raise AuthenticationError("Token is not valid")

        user_id = payload.get("user_id")
        if not user_id:
            raise AuthenticationError("Token is not valid")

        user = self.repository.get_user_by_id(user_id)
        if not user:
            raise AuthenticationError("Token is not valid - user not found")

        # Tenant is carried in the token; it must still match the user's tenant
        token_tenant = payload.get("tenant_id")
        if token_tenant is not None and token_tenant != user.tenant_id:
            logger.warning(f"Tenant claim mismatch for user {user.id}")
            raise AuthenticationError("Token is not valid")

        if not user.is_active:
            raise AuthorizationError("Account is deactivated")

        return Identity(
            user_id=user.id,
            tenant_id=user.tenant_id,
            display_name=user.display_name,
            role=user.role,
            is_active=user.is_active
        )
