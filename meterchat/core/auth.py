"""
Auth utilities for the meterchat API.

Passwords are bcrypt-hashed. Sessions are HS256 JWTs whose 'sub' claim is the
user's email (the identity key). Every authenticated route resolves the
caller through get_current_user_email.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

import bcrypt
import jwt
from fastapi import Request

from meterchat.core.config import settings
from meterchat.core.errors import AuthenticationError

logger = logging.getLogger(__name__)

# bcrypt only looks at the first 72 bytes
_BCRYPT_MAX_BYTES = 72


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_password_bytes(password), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


def _jwt_secret() -> str:
    if not settings.JWT_SECRET:
        raise AuthenticationError("Authentication is not configured")
    return settings.JWT_SECRET


def issue_access_token(email: str, *, now: Optional[datetime] = None) -> str:
    """Issue a signed session token for the given email."""
    issued_at = now or datetime.now(timezone.utc)
    payload = {
        "sub": email,
        "iat": issued_at,
        "exp": issued_at + timedelta(minutes=settings.JWT_EXPIRES_MINUTES),
    }
    return jwt.encode(payload, _jwt_secret(), algorithm=settings.JWT_ALGORITHM)


def verify_access_token(token: str) -> str:
    """
    Verify a session token and extract the email.

    Raises:
        AuthenticationError: Invalid, expired or subject-less token
    """
    try:
        payload = jwt.decode(
            token,
            _jwt_secret(),
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Session expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise AuthenticationError("Invalid session")

    email = payload.get("sub")
    if not email:
        raise AuthenticationError("Invalid session")
    return email


def get_current_user_email(request: Request) -> str:
    """
    FastAPI dependency: resolve the caller's email from the Bearer token.

    Raises:
        AuthenticationError: Missing or invalid Authorization header
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise AuthenticationError("Not authenticated")
    email = verify_access_token(auth_header[7:].strip())
    request.state.user_email = email
    return email
