"""
Security utilities for signed access tokens.
Uses python-jose for JWT token generation and validation.

Tokens are issued by the account subsystem and carried in the
``swapply_token`` cookie. Verification is purely local (signature, expiry
and subject), so binding an identity to a connection never needs a
database round trip.
"""
import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import jwt, JWTError, ExpiredSignatureError
from core.config import settings


@dataclass(frozen=True)
class Principal:
    """Authenticated identity bound to a request or a live connection."""
    id: int


class InvalidCredentials(Exception):
    """Raised when a presented credential cannot be turned into a Principal."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def create_access_token(user_id: int, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a signed JWT access token for a user.

    Args:
        user_id: User ID to encode as the token subject
        expires_delta: Token lifetime (defaults to settings.access_token_expire_minutes)

    Returns:
        Encoded JWT string
    """
    now = datetime.now(timezone.utc)
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)

    payload = {
        "sub": str(user_id),
        "iat": int(now.timestamp()),
        "exp": int((now + expires_delta).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def verify_access_token(token: Optional[str]) -> Principal:
    """
    Verify a credential and return the Principal it names.

    Args:
        token: JWT token string (may be None when nothing was presented)

    Returns:
        Principal for the token subject

    Raises:
        InvalidCredentials: reason is "missing", "expired" or "invalid"
    """
    if not token:
        raise InvalidCredentials("missing")

    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError:
        raise InvalidCredentials("expired")
    except JWTError:
        raise InvalidCredentials("invalid")

    subject = payload.get("sub")
    try:
        user_id = int(subject)
    except (TypeError, ValueError):
        raise InvalidCredentials("invalid")

    return Principal(id=user_id)


def hash_token(token: str) -> str:
    """
    Generate SHA-256 hash of a token for logging without exposing it.

    Args:
        token: Token string

    Returns:
        SHA-256 hash as hex string
    """
    return hashlib.sha256(token.encode()).hexdigest()
