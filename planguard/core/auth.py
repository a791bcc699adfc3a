"""
Auth utilities for the PlanGuard API.

Validates HS256 JWTs and extracts user_id from request context.
Falls back to X-User-Id header when no bearer token is sent (tests, internal callers).
"""
from fastapi import Depends, Header, Request
from typing import Optional
from planguard.core.config import settings
from planguard.core.errors import UnauthorizedError
from planguard.models.user import User
import jwt
import logging

logger = logging.getLogger(__name__)


def verify_jwt(token: str) -> dict:
    """
    Verify a bearer JWT and return its claims.

    Raises:
        UnauthorizedError: Invalid, expired or unverifiable token
    """
    if not settings.JWT_SECRET:
        raise UnauthorizedError("Bearer tokens are not accepted: JWT_SECRET is not configured")

    try:
        claims = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise UnauthorizedError("Invalid token")

    if not claims.get("sub"):
        raise UnauthorizedError("Token has no subject")
    return claims


def _bearer_claims(request: Request) -> Optional[dict]:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return verify_jwt(auth_header[7:].strip())


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Caller user ID when no bearer token is sent")
) -> str:
    """
    Extract current user ID from request context.

    Priority:
    1. JWT from Authorization header
    2. X-User-Id header
    3. Raise 401 Unauthorized
    """
    claims = _bearer_claims(request)
    if claims:
        request.state.auth_claims = claims
        return claims["sub"]

    if x_user_id:
        return x_user_id

    raise UnauthorizedError("Missing Authorization (Bearer JWT) or X-User-Id header")


def get_current_user(request: Request, user_id: str = Depends(get_current_user_id)) -> User:
    """Load (or register) the caller; role and premium flag come from the users table."""
    from planguard.features.users.service import ensure_user

    claims = getattr(request.state, "auth_claims", None) or {}
    return ensure_user(user_id, email=claims.get("email"))
