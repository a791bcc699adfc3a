"""
Admin authentication.

Two ways in:
- A caller whose users.role is admin or super_admin
- Legacy X-Admin-Key shared secret (ADMIN_KEY)
"""
import hashlib
from dataclasses import dataclass
from typing import Literal, Optional
from fastapi import Request
from planguard.core.config import settings
from planguard.core.errors import ForbiddenError, UnauthorizedError
from planguard.models.user import ADMIN_ROLES


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_type: Literal["user", "legacy_key"]
    actor_id: str  # user ID or "legacy:<hash>"
    role: Optional[str] = None


def verify_legacy_key(request: Request) -> Optional[AdminActor]:
    """
    Verify legacy X-Admin-Key header.
    Returns AdminActor if valid, None if not present/invalid.
    """
    expected_key = settings.ADMIN_KEY
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or header_key != expected_key:
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_type="legacy_key", actor_id=f"legacy:{key_hash}")


async def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: Require admin authentication.

    Usage:
        @router.get("/admin/endpoint")
        def admin_endpoint(actor: AdminActor = Depends(require_admin)):
            ...
    """
    actor = verify_legacy_key(request)
    if actor:
        return actor

    from planguard.core.auth import _bearer_claims
    from planguard.features.users.service import get_user

    claims = _bearer_claims(request)
    user_id = claims["sub"] if claims else request.headers.get("X-User-Id")
    if not user_id:
        raise UnauthorizedError("Admin credentials required")

    user = get_user(user_id)
    if user is None or user.role not in ADMIN_ROLES:
        raise ForbiddenError("Admin role required")
    return AdminActor(actor_type="user", actor_id=user.user_id, role=user.role)
