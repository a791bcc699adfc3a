"""Distributed mutual exclusion for periodic jobs, built on the cache port."""

import logging
from contextlib import contextmanager
from typing import Iterator

from planguard.core.cache import CacheError, CacheKeys, CachePort

logger = logging.getLogger(__name__)


@contextmanager
def job_lock(cache: CachePort, job_name: str, ttl_seconds: int) -> Iterator[bool]:
    """
    Hold `lock:job:{job_name}` for the duration of the block.

    Yields True when this process owns the lock. Yields False when another
    instance holds it or the cache is unreachable; callers skip the run.
    """
    key = CacheKeys.job_lock(job_name)
    try:
        token = cache.acquire_lock(key, ttl_seconds)
    except CacheError as exc:
        logger.error("job.lock_unavailable", extra={"job": job_name, "error": str(exc)})
        token = None

    if token is None:
        yield False
        return

    try:
        yield True
    finally:
        try:
            cache.release_lock(key, token)
        except CacheError as exc:
            # Lock expires on its own TTL
            logger.warning("job.lock_release_failed", extra={"job": job_name, "error": str(exc)})
