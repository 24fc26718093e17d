"""
Tests for bearer credential resolution.
The same resolver backs the HTTP dependency and the WebSocket handshake.
"""
import pytest
from jose import jwt

from core.config import settings
from core.exceptions import AuthenticationError, AuthorizationError
from core.security import create_access_token
from db.models import UserRole
from services.identity import IdentityResolver


class TestIdentityResolver:
    """Tests for IdentityResolver.resolve."""

    def test_valid_token_resolves_identity(self, test_db, seed, tokens):
        identity = IdentityResolver(test_db).resolve(tokens.alice)

        assert identity.user_id == seed.alice
        assert identity.tenant_id == seed.tenant_id
        assert identity.display_name == "Alice"
        assert identity.role == UserRole.ADMIN
        assert identity.tenant_room == seed.tenant_id

    def test_missing_token(self, test_db, seed):
        with pytest.raises(AuthenticationError) as exc_info:
            IdentityResolver(test_db).resolve("")
        assert exc_info.value.message == "No token provided"
        assert exc_info.value.status_code == 401

    def test_garbage_token(self, test_db, seed):
        with pytest.raises(AuthenticationError) as exc_info:
            IdentityResolver(test_db).resolve("not-a-jwt")
        assert exc_info.value.message == "Token is not valid"

    def test_token_signed_with_other_secret(self, test_db, seed):
        forged = jwt.encode(
            {"user_id": seed.alice, "tenant_id": seed.tenant_id, "type": "access"},
            "some-other-secret",
            algorithm=settings.jwt_algorithm
        )
        with pytest.raises(AuthenticationError) as exc_info:
            IdentityResolver(test_db).resolve(forged)
        assert exc_info.value.message == "Token is not valid"

    def test_expired_token(self, test_db, seed):
        expired = create_access_token(seed.alice, seed.tenant_id, expires_minutes=-5)["token"]
        with pytest.raises(AuthenticationError) as exc_info:
            IdentityResolver(test_db).resolve(expired)
        assert exc_info.value.message == "Token has expired"

    def test_wrong_token_type(self, test_db, seed):
        refresh_like = jwt.encode(
            {"user_id": seed.alice, "tenant_id": seed.tenant_id, "type": "refresh"},
            settings.jwt_secret_key,
            algorithm=settings.jwt_algorithm
        )
        with pytest.raises(AuthenticationError):
            IdentityResolver(test_db).resolve(refresh_like)

    def test_missing_user_claim(self, test_db, seed):
        no_user = jwt.encode(
            {"tenant_id": seed.tenant_id, "type": "access"},
            settings.jwt_secret_key,
            algorithm=settings.jwt_algorithm
        )
        with pytest.raises(AuthenticationError):
            IdentityResolver(test_db).resolve(no_user)

    def test_unknown_user(self, test_db, seed):
        token = create_access_token("00000000-0000-0000-0000-000000000000", seed.tenant_id)["token"]
        with pytest.raises(AuthenticationError) as exc_info:
            IdentityResolver(test_db).resolve(token)
        assert exc_info.value.message == "Token is not valid - user not found"

    def test_tenant_claim_must_match_user(self, test_db, seed):
        token = create_access_token(seed.alice, seed.other_tenant_id)["token"]
        with pytest.raises(AuthenticationError):
            IdentityResolver(test_db).resolve(token)

    def test_deactivated_account(self, test_db, seed, tokens):
        with pytest.raises(AuthorizationError) as exc_info:
            IdentityResolver(test_db).resolve(tokens.eve)
        assert exc_info.value.message == "Account is deactivated"
        assert exc_info.value.status_code == 403
        assert exc_info.value.error_code == "AUTHORIZATION_ERROR"


class TestAccessToken:
    """Tests for create_access_token."""

    def test_token_carries_user_and_tenant_claims(self, seed):
        issued = create_access_token(seed.alice, seed.tenant_id)

        assert set(issued) == {"token", "expires_at", "issued_at"}
        claims = jwt.decode(issued["token"], settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        assert claims["user_id"] == seed.alice
        assert claims["tenant_id"] == seed.tenant_id
        assert claims["type"] == "access"
        assert issued["expires_at"] > issued["issued_at"]
