"""
Cache port and adapters.

Every key the service writes is built by CacheKeys so the namespace is a
fixed contract. Values are JSON-serialisable; a stored None is returned as
None while a miss returns MISS.

Adapters:
- RedisCache: redis-py client, SET NX PX locks released by compare-and-delete.
- InMemoryCache: process-local TTL dict, used when REDIS_URL is unset and in tests.
"""

import json
import logging
import threading
import time
from typing import Any, Callable, Optional, Protocol
from uuid import uuid4

import redis

from planguard.core.config import settings

logger = logging.getLogger(__name__)

MISS = object()

_RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class CacheError(Exception):
    """Raised when the cache backend cannot complete an operation."""


class CacheKeys:
    """Every cache key pattern in use."""

    @staticmethod
    def plan_entitlements(plan_id: str) -> str:
        return f"plan:{plan_id}:entitlements"

    @staticmethod
    def user_active_plan(user_id: str) -> str:
        return f"user:{user_id}:activeplan"

    @staticmethod
    def entitlement(entitlement_id: str) -> str:
        return f"entitlement:{entitlement_id}"

    @staticmethod
    def webhook_event(event_id: str) -> str:
        return f"webhook:processed:{event_id}"

    @staticmethod
    def job_lock(job_name: str) -> str:
        return f"lock:job:{job_name}"


class CachePort(Protocol):
    def get(self, key: str) -> Any:
        ...

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def acquire_lock(self, key: str, ttl_seconds: int) -> Optional[str]:
        ...

    def release_lock(self, key: str, token: str) -> bool:
        ...


def _dumps(value: Any) -> str:
    return json.dumps({"v": value}, default=str)


def _loads(raw: str) -> Any:
    return json.loads(raw)["v"]


class RedisCache:
    """Redis-backed cache. Backend failures surface as CacheError."""

    def __init__(self, url: str, client: Optional["redis.Redis"] = None):
        self.url = url
        self.client = client or redis.from_url(url, decode_responses=True, socket_timeout=5.0)
        self._release = self.client.register_script(_RELEASE_LOCK_SCRIPT)

    def get(self, key: str) -> Any:
        try:
            raw = self.client.get(key)
        except redis.RedisError as exc:
            raise CacheError(f"get {key} failed: {exc}") from exc
        if raw is None:
            return MISS
        return _loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        try:
            self.client.setex(key, ttl_seconds, _dumps(value))
        except redis.RedisError as exc:
            raise CacheError(f"set {key} failed: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as exc:
            raise CacheError(f"delete {key} failed: {exc}") from exc

    def acquire_lock(self, key: str, ttl_seconds: int) -> Optional[str]:
        token = uuid4().hex
        try:
            acquired = self.client.set(key, token, nx=True, px=int(ttl_seconds * 1000))
        except redis.RedisError as exc:
            raise CacheError(f"lock {key} failed: {exc}") from exc
        return token if acquired else None

    def release_lock(self, key: str, token: str) -> bool:
        try:
            return bool(self._release(keys=[key], args=[token]))
        except redis.RedisError as exc:
            raise CacheError(f"unlock {key} failed: {exc}") from exc


class InMemoryCache:
    """Thread-safe TTL cache for single-process deployments and tests."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[float, str]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if expires_at <= self._clock():
            del self._data[key]
            return None
        return raw

    def get(self, key: str) -> Any:
        with self._lock:
            raw = self._live(key)
        if raw is None:
            return MISS
        return _loads(raw)

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (self._clock() + ttl_seconds, _dumps(value))

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def acquire_lock(self, key: str, ttl_seconds: int) -> Optional[str]:
        token = uuid4().hex
        with self._lock:
            if self._live(key) is not None:
                return None
            self._data[key] = (self._clock() + ttl_seconds, token)
        return token

    def release_lock(self, key: str, token: str) -> bool:
        with self._lock:
            if self._live(key) != token:
                return False
            del self._data[key]
        return True

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


_cache: Optional[CachePort] = None


def get_cache() -> CachePort:
    """Process-wide cache; Redis when REDIS_URL is configured."""
    global _cache
    if _cache is None:
        if settings.REDIS_URL:
            _cache = RedisCache(settings.REDIS_URL)
            logger.info("cache.backend", extra={"backend": "redis"})
        else:
            _cache = InMemoryCache()
            logger.info("cache.backend", extra={"backend": "memory"})
    return _cache


def set_cache(cache: Optional[CachePort]) -> None:
    """Replace the process-wide cache (tests, app startup)."""
    global _cache
    _cache = cache
