"""
Security utilities for password hashing and JWT tokens.
Uses bcrypt for secure password hashing.
Uses python-jose for JWT token generation and validation.
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, Any
import bcrypt
from jose import jwt, JWTError, ExpiredSignatureError
from core.config import settings
from core.exceptions import AuthenticationError


def hash_password(password: str) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plain text password to hash

    Returns:
        Hashed password as a string
    """
    password_bytes = password.encode('utf-8')
    salt = bcrypt.gensalt(rounds=settings.bcrypt_rounds)
    hashed = bcrypt.hashpw(password_bytes, salt)
    return hashed.decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash.

    Args:
        plain_password: Plain text password to verify
        hashed_password: Previously hashed password

    Returns:
        True if password matches, False otherwise
    """
    password_bytes = plain_password.encode('utf-8')
    hashed_bytes = hashed_password.encode('utf-8')
    return bcrypt.checkpw(password_bytes, hashed_bytes)


def create_access_token(user_id: str, tenant_id: str, expires_minutes: int = None) -> Dict[str, Any]:
    """
    Create a signed JWT access token.

    Args:
        user_id: User ID to encode in the token
        tenant_id: Tenant the user belongs to
        expires_minutes: Override for the configured lifetime (negative values
            produce an already-expired token)

    Returns:
        Dictionary with token, expires_at, issued_at
    """
    if expires_minutes is None:
        expires_minutes = settings.access_token_expire_minutes
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(minutes=expires_minutes)

    payload = {
        "user_id": user_id,
        "tenant_id": tenant_id,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
        "type": "access"
    }

    token = jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)

    return {
        "token": token,
        "expires_at": expires_at,
        "issued_at": now
    }


def decode_access_token(token: str) -> Dict[str, Any]:
    """
    Decode and validate a JWT access token (signature and expiry).

    Args:
        token: JWT token string

    Returns:
        Decoded payload

    Raises:
        AuthenticationError: if the token is expired, malformed or badly signed
    """
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except JWTError:
        raise AuthenticationError("Token is not valid")


def extract_bearer_token(authorization: str) -> str:
    """Return the credential part of an ``Authorization: Bearer <token>`` header, or ''."""
    if not authorization:
        return ""
    scheme, _, credential = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return credential.strip()
