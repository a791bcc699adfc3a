"""
planguard/features/entitlements/engine.py

Entitlement engine.

Resolves the user's active plan through the plan config cache, picks the
policy for the requested feature's type, evaluates it against current
usage, and optionally consumes usage in the same call.

The check and the increment are two statements: concurrent callers on the
same (user, feature) can overshoot a limit by up to (concurrency - 1).
Callers that need a hard limit serialise per user and feature.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from planguard.features.plans.config_cache import PlanConfigCache, get_plan_config_cache
from planguard.features.policies.base import PolicyContext, PolicyResult, display_number
from planguard.features.policies.registry import PolicyRegistry
from planguard.features.usage import service as usage_service
from planguard.models.entitlement import EntitlementType

logger = logging.getLogger(__name__)

NO_ACTIVE_SUBSCRIPTION = "No active subscription"


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


class EntitlementEngine:
    def __init__(self, config_cache: PlanConfigCache, usage=usage_service):
        self.config_cache = config_cache
        self.usage = usage
        self.policies = PolicyRegistry(usage.get_usage_in_window)

    def authorize(
        self,
        user_id: str,
        feature_key: str,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> PolicyResult:
        """
        Decide whether `user_id` may use `feature_key` right now.

        Usage is only read for policies that need the running counter.
        """
        now = _normalize_now(now)
        plan = self.config_cache.get_user_active_plan(user_id)
        if plan is None:
            return PolicyResult.deny(NO_ACTIVE_SUBSCRIPTION)

        item = plan.entitlement_for(feature_key)
        if item is None:
            return PolicyResult.deny(f"Feature '{feature_key}' not included in your plan")

        policy = self.policies.policy_for(item.type)
        current_usage = self.usage.get_usage(user_id, feature_key, now=now) if policy.needs_usage else None
        result = policy.evaluate(
            PolicyContext(
                user_id=user_id,
                feature_key=feature_key,
                value=item.value,
                now=now,
                current_usage=current_usage,
                metadata=dict(metadata or {}),
            )
        )
        if not result.allowed:
            logger.info(
                "entitlement.denied",
                extra={"user_id": user_id, "feature_key": feature_key, "plan_id": plan.plan_id, "reason": result.reason},
            )
        return result

    def authorize_and_consume(
        self,
        user_id: str,
        feature_key: str,
        amount: float = 1,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> PolicyResult:
        """
        Authorize, then record `amount` of usage when allowed.

        The returned metadata reflects the state after consumption.
        """
        now = _normalize_now(now)
        result = self.authorize(user_id, feature_key, metadata=metadata, now=now)
        if not result.allowed:
            return result

        plan = self.config_cache.get_user_active_plan(user_id)
        item = plan.entitlement_for(feature_key) if plan else None
        if item is not None and EntitlementType(item.type) == EntitlementType.FREQUENCY:
            self.usage.record_usage_event(user_id, feature_key, amount, occurred_at=now)
        else:
            self.usage.increment_usage(user_id, feature_key, amount, now=now)

        if result.metadata and "used" in result.metadata and "limit" in result.metadata:
            used = result.metadata["used"] + amount
            limit = result.metadata["limit"]
            result.metadata["used"] = display_number(used)
            result.metadata["remaining"] = display_number(max(0, limit - used))
        return result

    def authorize_many(
        self,
        user_id: str,
        feature_keys: Iterable[str],
        now: Optional[datetime] = None,
    ) -> Dict[str, PolicyResult]:
        """Evaluate each key on its own; no interaction between keys."""
        now = _normalize_now(now)
        return {key: self.authorize(user_id, key, now=now) for key in feature_keys}


_engine: Optional[EntitlementEngine] = None


def get_entitlement_engine() -> EntitlementEngine:
    global _engine
    if _engine is None:
        _engine = EntitlementEngine(get_plan_config_cache())
    return _engine


def set_entitlement_engine(engine: Optional[EntitlementEngine]) -> None:
    global _engine
    _engine = engine
