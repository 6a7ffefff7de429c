"""
JWT Session Management Module
==============================

Handles creation and verification of the service's own session JWTs.

Session tokens are HS256-signed and carry the Discord user id (``sub``) and
username. Validation is stateless: it checks signature, expiry, issuer and
required claims, and never consults storage or Discord. A user revoked at
Discord therefore stays authenticated here until the token expires.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Header, Request
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from ..errors import AuthFailed

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
DEFAULT_ISSUER = "activity-auth"
DEFAULT_EXPIRY_MINUTES = 60


@dataclass(frozen=True)
class SessionIdentity:
    """Identity asserted by a validated session token."""

    user_id: int
    username: str


# =============================================================================
# Token Creation
# =============================================================================

def issue_session_token(
    user_id: int,
    username: str,
    secret: str,
    expires_in_minutes: int = DEFAULT_EXPIRY_MINUTES,
    issuer: str = DEFAULT_ISSUER,
    now: Optional[datetime] = None,
) -> str:
    """
    Create a signed session JWT for a user.

    Args:
        user_id: Discord user id
        username: Discord username
        secret: HMAC signing secret
        expires_in_minutes: Validity window
        issuer: Value of the ``iss`` claim

    Returns:
        Encoded JWT string

    Example:
        >>> token = issue_session_token(123, "alice", secret)
        >>> validate_session_token(token, secret)
        SessionIdentity(user_id=123, username='alice')
    """
    issued_at = now or datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "username": username,
        "iat": issued_at,
        "exp": issued_at + timedelta(minutes=expires_in_minutes),
        "iss": issuer,
    }

    token = jwt.encode(payload, secret, algorithm=ALGORITHM)

    logger.debug(
        f"Issued session JWT for user {user_id}",
        extra={"user_id": user_id, "expires_in_minutes": expires_in_minutes},
    )

    return token


# =============================================================================
# Token Verification
# =============================================================================

def validate_session_token(
    token: str,
    secret: str,
    issuer: str = DEFAULT_ISSUER,
) -> SessionIdentity:
    """
    Verify a session JWT and return the identity it asserts.

    Raises:
        AuthFailed: On signature mismatch, malformed structure, wrong issuer,
            missing claims, or expiry in the past
    """
    if not token:
        raise AuthFailed("no authentication token provided")

    try:
        decoded = jwt.decode(
            token,
            secret,
            algorithms=[ALGORITHM],
            issuer=issuer,
            options={"require": ["exp", "iat", "sub", "iss"]},
        )
    except ExpiredSignatureError:
        logger.info("Session JWT expired")
        raise AuthFailed("token has expired") from None
    except InvalidTokenError as e:
        logger.warning(f"Invalid session JWT: {e}")
        raise AuthFailed("invalid token") from None

    username = decoded.get("username")
    if not isinstance(username, str):
        raise AuthFailed("invalid token")

    try:
        user_id = int(decoded["sub"])
    except (TypeError, ValueError):
        raise AuthFailed("invalid token") from None

    return SessionIdentity(user_id=user_id, username=username)


# =============================================================================
# Helper Functions
# =============================================================================

def extract_token_from_header(authorization: Optional[str]) -> str:
    """
    Extract Bearer token from Authorization header.

    Raises:
        AuthFailed: If the header is missing or not a Bearer credential
    """
    if not authorization:
        raise AuthFailed("missing Authorization header")

    parts = authorization.split()

    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthFailed("invalid Authorization header format, expected 'Bearer <token>'")

    return parts[1]


# =============================================================================
# FastAPI Dependencies
# =============================================================================

async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> SessionIdentity:
    """
    FastAPI dependency to extract and verify the session JWT.

    Usage in routes:
        @router.get("/me")
        async def me(identity: SessionIdentity = Depends(get_current_user)):
            ...
    """
    settings = request.app.state.settings
    token = extract_token_from_header(authorization)
    return validate_session_token(token, settings.JWT_SECRET, issuer=settings.JWT_ISSUER)


__all__ = [
    "SessionIdentity",
    "issue_session_token",
    "validate_session_token",
    "extract_token_from_header",
    "get_current_user",
]
