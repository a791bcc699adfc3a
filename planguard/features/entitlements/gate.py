"""
Entitlement gate for routes.

    @router.post("/quizzes")
    def create_quiz(result: PolicyResult = Depends(require_entitlement("quiz", consume=True))):
        ...

Callers whose role is in `bypass_roles` (admins by default) skip the check.
A denial raises EntitlementDeniedError carrying the policy's reason.
"""

import logging
from typing import Callable, Iterable, Optional

from fastapi import Depends, Request

from planguard.core.auth import get_current_user
from planguard.core.errors import EntitlementDeniedError
from planguard.features.entitlements.engine import EntitlementEngine, get_entitlement_engine
from planguard.features.policies.base import PolicyResult
from planguard.models.user import ADMIN_ROLES, User

logger = logging.getLogger(__name__)


def require_entitlement(
    feature_key: str,
    consume: bool = False,
    amount: float = 1,
    bypass_roles: Optional[Iterable[str]] = None,
) -> Callable[..., PolicyResult]:
    roles = frozenset(ADMIN_ROLES if bypass_roles is None else bypass_roles)

    def dependency(
        request: Request,
        user: User = Depends(get_current_user),
        engine: EntitlementEngine = Depends(get_entitlement_engine),
    ) -> PolicyResult:
        if user.role in roles:
            result = PolicyResult.allow({"bypass": True, "role": user.role})
            request.state.entitlement = result
            return result

        if consume:
            result = engine.authorize_and_consume(user.user_id, feature_key, amount)
        else:
            result = engine.authorize(user.user_id, feature_key)

        if not result.allowed:
            raise EntitlementDeniedError(
                result.reason or "Access denied",
                details={"feature": feature_key, **(result.metadata or {})},
            )
        request.state.entitlement = result
        return result

    return dependency
