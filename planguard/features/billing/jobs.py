"""
Periodic subscription jobs.

- handle_expired_subscriptions: lapse Active subscriptions past their period end
- cleanup_abandoned_payments: fail Pending payments that never completed

Both take `lock:job:{name}` first so only one instance runs a job at a time.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from sqlalchemy import select, update

from planguard.core.cache import CachePort
from planguard.core.config import settings
from planguard.core.database import get_db_session, payments, plans, subscriptions, as_utc
from planguard.core.locks import job_lock
from planguard.features.usage import service as usage_service
from planguard.features.users.service import set_premium
from planguard.models.subscription import PaymentStatus, SubscriptionStatus

logger = logging.getLogger(__name__)

SWEEP_JOB = "subscription_sweep"
CLEANUP_JOB = "abandoned_payment_cleanup"
ABANDONED_REASON = "Payment abandoned - timeout"

FREE_PLAN_PERIOD = timedelta(days=30)

cleanup_metrics: Dict[str, Any] = {
    "last_run": None,
    "last_cleaned": 0,
    "total_cleaned": 0,
}


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    return as_utc(now)


def _expire_one(sub, now: datetime) -> str:
    """Transition one lapsed subscription in its own transaction; returns the outcome."""
    with get_db_session() as session:
        values: Dict[str, Any] = {"updated_at": now, "pending_plan_id": None}
        outcome = "expired"

        pending = None
        if sub.pending_plan_id:
            pending = session.execute(
                select(plans.c.plan_id, plans.c.price).where(plans.c.plan_id == sub.pending_plan_id)
            ).first()

        if pending is not None and pending.price <= 0:
            values.update(
                plan_id=pending.plan_id,
                status=SubscriptionStatus.ACTIVE.value,
                current_period_end=now + FREE_PLAN_PERIOD,
                cancel_at_period_end=False,
            )
            outcome = "downgraded"
        else:
            values["status"] = SubscriptionStatus.EXPIRED.value
            if pending is not None:
                values["plan_id"] = pending.plan_id

        # Guard against a concurrent renewal re-activating the row meanwhile
        result = session.execute(
            update(subscriptions)
            .where(
                subscriptions.c.id == sub.id,
                subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                subscriptions.c.current_period_end < now,
            )
            .values(**values)
        )
        if result.rowcount == 0:
            return "skipped"
    return outcome


def reset_to_free_tier(user_id: str, config_cache, now: Optional[datetime] = None) -> None:
    """Zero the user's counters, clear the premium flag and drop the cached plan."""
    now = _normalize_now(now)
    usage_service.reset_user_usage(user_id, now=now)
    set_premium(user_id, False)
    config_cache.invalidate_user_plan(user_id)


def handle_expired_subscriptions(
    config_cache,
    cache: CachePort,
    now: Optional[datetime] = None,
) -> int:
    """
    Expire every Active subscription whose period ended before `now`.

    Each subscription is handled independently: a failure is logged with
    its identifiers and the sweep moves on. Usage reset happens after the
    subscription's transaction commits.

    Returns:
        Number of subscriptions processed successfully
    """
    now = _normalize_now(now)
    with job_lock(cache, SWEEP_JOB, settings.JOB_LOCK_TTL_SECONDS) as acquired:
        if not acquired:
            logger.info("[sweep] skipped: another instance holds the lock")
            return 0

        with get_db_session() as session:
            lapsed = session.execute(
                select(subscriptions).where(
                    subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                    subscriptions.c.current_period_end < now,
                )
            ).fetchall()

        processed = 0
        for sub in lapsed:
            try:
                outcome = _expire_one(sub, now)
                if outcome == "skipped":
                    continue
                reset_to_free_tier(sub.user_id, config_cache, now=now)
                processed += 1
                logger.info(
                    "[sweep] subscription lapsed",
                    extra={"subscription_id": sub.id, "user_id": sub.user_id, "outcome": outcome},
                )
            except Exception:
                logger.exception(
                    "[sweep] failed to expire subscription",
                    extra={"subscription_id": sub.id, "user_id": sub.user_id, "plan_id": sub.plan_id},
                )

    logger.info("[sweep] done", extra={"candidates": len(lapsed), "processed": processed})
    return processed


def cleanup_abandoned_payments(
    cache: CachePort,
    now: Optional[datetime] = None,
    max_age_hours: Optional[int] = None,
) -> int:
    """
    Fail Pending payments older than `max_age_hours`.

    Returns:
        Number of payments marked Failed
    """
    now = _normalize_now(now)
    hours = max_age_hours if max_age_hours is not None else settings.ABANDONED_PAYMENT_HOURS
    cutoff = now - timedelta(hours=hours)

    with job_lock(cache, CLEANUP_JOB, settings.JOB_LOCK_TTL_SECONDS) as acquired:
        if not acquired:
            logger.info("[cleanup] skipped: another instance holds the lock")
            return 0

        with get_db_session() as session:
            result = session.execute(
                update(payments)
                .where(
                    payments.c.status == PaymentStatus.PENDING.value,
                    payments.c.created_at < cutoff,
                )
                .values(
                    status=PaymentStatus.FAILED.value,
                    failure_reason=ABANDONED_REASON,
                    updated_at=now,
                )
            )
            cleaned = result.rowcount or 0

    cleanup_metrics["last_run"] = now
    cleanup_metrics["last_cleaned"] = cleaned
    cleanup_metrics["total_cleaned"] += cleaned
    logger.info("[cleanup] abandoned payments", extra={"max_age_hours": hours, "cleaned": cleaned})
    return cleaned


def get_cleanup_metrics() -> Dict[str, Any]:
    last_run = cleanup_metrics["last_run"]
    return {
        "last_run": last_run.isoformat() if last_run else None,
        "last_cleaned": cleanup_metrics["last_cleaned"],
        "total_cleaned": cleanup_metrics["total_cleaned"],
    }
