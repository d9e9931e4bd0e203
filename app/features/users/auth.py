"""
Authentication utilities for bearer JWT verification.
"""
import jwt
from datetime import datetime, timedelta, timezone

from app.core import config
from app.core.errors import Unauthenticated


def verify_jwt_token(token: str) -> dict:
    """
    Verify a bearer token and return its payload.

    Args:
        token: JWT token from Authorization header

    Returns:
        Decoded JWT payload; the subject ("sub") is the user id

    Raises:
        Unauthenticated: If token is invalid or expired
    """
    try:
        return jwt.decode(
            token,
            config.JWT_SECRET,
            algorithms=[config.JWT_ALGORITHM],
            options={"require": ["sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token has expired")
    except jwt.InvalidTokenError as e:
        raise Unauthenticated(f"Invalid token: {str(e)}")


def create_access_token(user_id: str, expires_in: timedelta = timedelta(hours=12)) -> str:
    """
    Issue a token for a user.

    Token issuance belongs to the identity provider in production; this is
    used by scripts and tests.
    """
    now = datetime.now(timezone.utc)
    payload = {"sub": user_id, "iat": now, "exp": now + expires_in}
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)
