"""
Health and diagnostics endpoints.

Lightweight operational probes; nothing here exposes secrets.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional
from pydantic import BaseModel

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from planguard.core.cache import CacheError, get_cache
from planguard.core.database import check_connection, get_engine
from planguard.core.logging import latency_bucket_ms, get_request_id

logger = logging.getLogger("planguard")

router = APIRouter(prefix="/api/health", tags=["health"])
root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "app_users",
    "plans",
    "entitlements",
    "plan_entitlements",
    "subscriptions",
    "payments",
    "usage_records",
    "usage_events",
]


class DBHealth(BaseModel):
    """Database health status."""
    connected: bool
    latency_ms: Optional[float] = None  # None when `now` is pinned
    missing_tables: list[str] = []


class HealthResponse(BaseModel):
    ok: bool
    db: DBHealth
    cache: bool
    computed_at: str  # UTC ISO format


def _missing_tables() -> list[str]:
    inspector = inspect(get_engine())
    return [t for t in REQUIRED_TABLES if not inspector.has_table(t)]


def _cache_ok() -> bool:
    try:
        get_cache().get("health:probe")
        return True
    except CacheError as e:
        logger.warning(f"[health] cache probe failed: {e}")
        return False


@root_router.get("/healthz")
def healthz():
    """Liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    missing = _missing_tables()
    if missing:
        detail = f"missing tables: {', '.join(missing)}"
        logger.warning(f"[readyz] {detail}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

    return {"status": "ok"}


@router.get("/db", response_model=HealthResponse)
def health_db(now: Optional[str] = Query(None)):
    """
    Check database and cache health.

    Args:
        now: Optional ISO timestamp for deterministic testing (overrides system time)
    """
    start = time.perf_counter()
    connected = check_connection()
    latency_ms = (time.perf_counter() - start) * 1000

    db_health = DBHealth(
        connected=connected,
        latency_ms=None if now else latency_ms,
        missing_tables=_missing_tables() if connected else [],
    )
    cache_ok = _cache_ok()
    ok = connected and not db_health.missing_tables

    logger.info(
        "health.db",
        extra={
            "request_id": get_request_id(),
            "ok": ok,
            "cache_ok": cache_ok,
            "latency_bucket": latency_bucket_ms(None if now else latency_ms),
        },
    )

    return HealthResponse(
        ok=ok,
        db=db_health,
        cache=cache_ok,
        computed_at=now or datetime.now(timezone.utc).isoformat(),
    )
