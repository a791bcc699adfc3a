"""
Cache-aside read path for plan configuration.

Reads go to the cache first and fall back to the durable store on a miss
or a cache failure. Invalidation is best-effort: failures are logged and
the database stays authoritative, so stale entries live at most one TTL.

The user entry stores only the resolved plan id (or None); plan content
is always read through the plan entry, so invalidating a plan reaches
every subscriber at once.
"""

import logging
from typing import Optional

from planguard.core.cache import MISS, CacheError, CacheKeys, CachePort, get_cache
from planguard.core.config import settings
from planguard.features.plans import service as plan_service
from planguard.models.entitlement import Entitlement
from planguard.models.plan import Plan

logger = logging.getLogger(__name__)


class PlanConfigCache:
    def __init__(
        self,
        cache: CachePort,
        plan_ttl: int = settings.PLAN_CACHE_TTL_SECONDS,
        user_plan_ttl: int = settings.USER_PLAN_CACHE_TTL_SECONDS,
        null_user_plan_ttl: int = settings.USER_PLAN_NULL_CACHE_TTL_SECONDS,
        entitlement_ttl: int = settings.ENTITLEMENT_CACHE_TTL_SECONDS,
    ):
        self.cache = cache
        self.plan_ttl = plan_ttl
        self.user_plan_ttl = user_plan_ttl
        self.null_user_plan_ttl = null_user_plan_ttl
        self.entitlement_ttl = entitlement_ttl

    def _read(self, key: str):
        try:
            return self.cache.get(key)
        except CacheError as exc:
            logger.warning("cache.read_failed", extra={"cache_key": key, "error": str(exc)})
            return MISS

    def _write(self, key: str, value, ttl: int) -> None:
        try:
            self.cache.set(key, value, ttl)
        except CacheError as exc:
            logger.warning("cache.write_failed", extra={"cache_key": key, "error": str(exc)})

    def _invalidate(self, key: str) -> None:
        try:
            self.cache.delete(key)
        except Exception as exc:
            logger.error("cache.invalidate_failed", extra={"cache_key": key, "error": str(exc)})

    def get_plan_with_entitlements(self, plan_id: str) -> Optional[Plan]:
        key = CacheKeys.plan_entitlements(plan_id)
        cached = self._read(key)
        if cached is not MISS and cached is not None:
            return Plan.model_validate(cached)

        plan = plan_service.load_plan(plan_id)
        if plan is not None:
            self._write(key, plan.model_dump(mode="json"), self.plan_ttl)
        return plan

    def get_user_active_plan(self, user_id: str) -> Optional[Plan]:
        key = CacheKeys.user_active_plan(user_id)
        plan_id = self._read(key)
        if plan_id is MISS:
            plan_id = plan_service.load_user_plan_id(user_id)
            # Users without a plan are cached too, for a shorter time
            ttl = self.user_plan_ttl if plan_id is not None else self.null_user_plan_ttl
            self._write(key, plan_id, ttl)

        if plan_id is None:
            return None
        return self.get_plan_with_entitlements(plan_id)

    def get_entitlement(self, entitlement_id: str) -> Optional[Entitlement]:
        key = CacheKeys.entitlement(entitlement_id)
        cached = self._read(key)
        if cached is not MISS and cached is not None:
            return Entitlement.model_validate(cached)

        entitlement = plan_service.load_entitlement(entitlement_id)
        if entitlement is not None:
            self._write(key, entitlement.model_dump(mode="json"), self.entitlement_ttl)
        return entitlement

    def invalidate_plan(self, plan_id: str) -> None:
        self._invalidate(CacheKeys.plan_entitlements(plan_id))

    def invalidate_user_plan(self, user_id: str) -> None:
        self._invalidate(CacheKeys.user_active_plan(user_id))

    def invalidate_entitlement(self, entitlement_id: str) -> None:
        self._invalidate(CacheKeys.entitlement(entitlement_id))


_config_cache: Optional[PlanConfigCache] = None


def get_plan_config_cache() -> PlanConfigCache:
    global _config_cache
    if _config_cache is None:
        _config_cache = PlanConfigCache(get_cache())
    return _config_cache


def set_plan_config_cache(config_cache: Optional[PlanConfigCache]) -> None:
    global _config_cache
    _config_cache = config_cache
