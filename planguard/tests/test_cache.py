"""
Cache adapters and the job lock.
"""
import json
import pytest
import redis
from unittest.mock import Mock

from planguard.core.cache import MISS, CacheError, CacheKeys, InMemoryCache, RedisCache
from planguard.core.locks import job_lock


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_key_patterns():
    assert CacheKeys.plan_entitlements("p1") == "plan:p1:entitlements"
    assert CacheKeys.user_active_plan("u1") == "user:u1:activeplan"
    assert CacheKeys.entitlement("e1") == "entitlement:e1"
    assert CacheKeys.webhook_event("evt") == "webhook:processed:evt"
    assert CacheKeys.job_lock("sweep") == "lock:job:sweep"


class TestInMemoryCache:
    def test_miss_is_distinct_from_stored_none(self):
        cache = InMemoryCache()
        assert cache.get("k") is MISS
        cache.set("k", None, 60)
        assert cache.get("k") is None

    def test_entries_expire(self):
        clock = FakeClock()
        cache = InMemoryCache(clock=clock)
        cache.set("k", {"a": 1}, 10)

        clock.now = 9.9
        assert cache.get("k") == {"a": 1}
        clock.now = 10
        assert cache.get("k") is MISS

    def test_lock_is_exclusive_until_released(self):
        cache = InMemoryCache()
        token = cache.acquire_lock("lock:job:x", 30)

        assert token is not None
        assert cache.acquire_lock("lock:job:x", 30) is None
        assert cache.release_lock("lock:job:x", "wrong-token") is False
        assert cache.release_lock("lock:job:x", token) is True
        assert cache.acquire_lock("lock:job:x", 30) is not None

    def test_lock_expires(self):
        clock = FakeClock()
        cache = InMemoryCache(clock=clock)
        cache.acquire_lock("lock:job:x", 30)
        clock.now = 31
        assert cache.acquire_lock("lock:job:x", 30) is not None


class TestRedisCache:
    def _cache(self):
        client = Mock()
        return RedisCache("redis://test", client=client), client

    def test_get_unwraps_json(self):
        cache, client = self._cache()
        client.get.return_value = json.dumps({"v": "premium-plan-id"})
        assert cache.get("user:u1:activeplan") == "premium-plan-id"

    def test_get_miss(self):
        cache, client = self._cache()
        client.get.return_value = None
        assert cache.get("k") is MISS

    def test_set_uses_ttl(self):
        cache, client = self._cache()
        cache.set("k", None, 60)
        client.setex.assert_called_once_with("k", 60, json.dumps({"v": None}))

    def test_backend_errors_become_cache_errors(self):
        cache, client = self._cache()
        client.get.side_effect = redis.ConnectionError("refused")
        client.delete.side_effect = redis.TimeoutError("slow")
        with pytest.raises(CacheError):
            cache.get("k")
        with pytest.raises(CacheError):
            cache.delete("k")

    def test_lock_uses_set_nx_px(self):
        cache, client = self._cache()
        client.set.return_value = True
        token = cache.acquire_lock("lock:job:x", 2)

        assert token
        client.set.assert_called_once_with("lock:job:x", token, nx=True, px=2000)

        client.set.return_value = None
        assert cache.acquire_lock("lock:job:x", 2) is None


class TestJobLock:
    def test_yields_true_and_releases(self):
        cache = InMemoryCache()
        with job_lock(cache, "sweep", 60) as acquired:
            assert acquired is True
            assert cache.acquire_lock(CacheKeys.job_lock("sweep"), 60) is None
        assert cache.acquire_lock(CacheKeys.job_lock("sweep"), 60) is not None

    def test_unreachable_cache_yields_false(self, caplog):
        cache = Mock()
        cache.acquire_lock.side_effect = CacheError("down")
        with job_lock(cache, "sweep", 60) as acquired:
            assert acquired is False
        assert "job.lock_unavailable" in caplog.text
