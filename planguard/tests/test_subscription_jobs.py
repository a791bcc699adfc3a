"""
Expiration sweep and abandoned payment cleanup.
"""
import pytest
from datetime import datetime, timedelta, timezone
from sqlalchemy import insert, select

from planguard.core.cache import CacheKeys
from planguard.core.config import settings
from planguard.core.database import get_db_session, payments
from planguard.features.billing import jobs
from planguard.features.plans import service as plan_service
from planguard.features.usage import service as usage_service
from planguard.features.users.service import get_user, set_premium

PREMIUM = plan_service.PREMIUM_PLAN_ID
NOW = datetime(2026, 4, 1, 0, 0, tzinfo=timezone.utc)


def _sweep(config_cache, memory_cache, now=NOW):
    return jobs.handle_expired_subscriptions(config_cache, memory_cache, now=now)


@pytest.fixture
def premium_user(seeded_plans, make_user):
    """Factory for users on an active Premium subscription."""
    def _make(user_id):
        make_user(user_id)
        set_premium(user_id, True)
        usage_service.increment_usage(user_id, "quiz", amount=7)
        return user_id

    return _make


class TestExpirationSweep:
    def test_only_past_period_end_expires(self, config_cache, memory_cache, premium_user, make_subscription, manager):
        premium_user("user_past")
        premium_user("user_future")
        make_subscription("user_past", PREMIUM, period_end=NOW - timedelta(days=1))
        make_subscription("user_future", PREMIUM, period_end=NOW + timedelta(days=1))

        assert _sweep(config_cache, memory_cache) == 1

        assert manager.get_my_subscription("user_past").status.value == "expired"
        assert manager.get_my_subscription("user_future").status.value == "active"

    def test_expired_user_reset_to_free_tier(self, config_cache, memory_cache, premium_user, make_subscription):
        premium_user("user_past")
        make_subscription("user_past", PREMIUM, period_end=NOW - timedelta(hours=1))
        memory_cache.set(CacheKeys.user_active_plan("user_past"), PREMIUM, 300)

        _sweep(config_cache, memory_cache)

        assert usage_service.get_usage("user_past", "quiz") == 0
        assert get_user("user_past").is_premium is False
        plan = config_cache.get_user_active_plan("user_past")
        assert plan.plan_id == settings.FREE_PLAN_ID

    def test_second_run_is_a_no_op(self, config_cache, memory_cache, premium_user, make_subscription):
        premium_user("user_past")
        make_subscription("user_past", PREMIUM, period_end=NOW - timedelta(days=1))

        assert _sweep(config_cache, memory_cache) == 1
        assert _sweep(config_cache, memory_cache) == 0

    def test_pending_free_plan_becomes_active(self, config_cache, memory_cache, premium_user, make_subscription, manager):
        premium_user("user_past")
        make_subscription(
            "user_past", PREMIUM, period_end=NOW - timedelta(days=1), pending_plan_id=settings.FREE_PLAN_ID
        )

        _sweep(config_cache, memory_cache)

        sub = manager.get_my_subscription("user_past")
        assert sub.status.value == "active"
        assert sub.plan_id == settings.FREE_PLAN_ID
        assert sub.pending_plan_id is None
        assert sub.current_period_end == NOW + timedelta(days=30)

    def test_pending_paid_plan_expires_on_new_plan(self, config_cache, memory_cache, premium_user, make_subscription, manager):
        basic = plan_service.create_plan("Basic", 500, entitlement_values={"quiz": 20})
        premium_user("user_past")
        make_subscription("user_past", PREMIUM, period_end=NOW - timedelta(days=1), pending_plan_id=basic.plan_id)

        _sweep(config_cache, memory_cache)

        sub = manager.get_my_subscription("user_past")
        assert sub.status.value == "expired"
        assert sub.plan_id == basic.plan_id

    def test_lock_held_elsewhere_skips_run(self, config_cache, memory_cache, premium_user, make_subscription, manager):
        premium_user("user_past")
        make_subscription("user_past", PREMIUM, period_end=NOW - timedelta(days=1))
        memory_cache.acquire_lock(CacheKeys.job_lock(jobs.SWEEP_JOB), 600)

        assert _sweep(config_cache, memory_cache) == 0
        assert manager.get_my_subscription("user_past").status.value == "active"

    def test_lock_released_after_run(self, config_cache, memory_cache):
        _sweep(config_cache, memory_cache)
        assert memory_cache.acquire_lock(CacheKeys.job_lock(jobs.SWEEP_JOB), 600) is not None

    def test_one_failure_does_not_stop_the_sweep(
        self, config_cache, memory_cache, premium_user, make_subscription, monkeypatch, caplog
    ):
        """A user whose expiry blows up is logged and skipped; the rest still expire."""
        premium_user("user_a")
        premium_user("user_b")
        make_subscription("user_a", PREMIUM, period_end=NOW - timedelta(days=2))
        make_subscription("user_b", PREMIUM, period_end=NOW - timedelta(days=1))

        original = jobs.reset_to_free_tier

        def flaky(user_id, cache, now=None):
            if user_id == "user_a":
                raise RuntimeError("boom")
            return original(user_id, cache, now=now)

        monkeypatch.setattr(jobs, "reset_to_free_tier", flaky)

        assert _sweep(config_cache, memory_cache) == 1
        assert "failed to expire subscription" in caplog.text
        assert get_user("user_b").is_premium is False


class TestAbandonedPaymentCleanup:
    @pytest.fixture(autouse=True)
    def owner_subscription(self, seeded_plans, make_user, make_subscription):
        make_user("user_alice")
        self.subscription_id = make_subscription("user_alice", PREMIUM, status="pending_payment")

    def _pending(self, reference, created_at, status="pending"):
        with get_db_session() as session:
            session.execute(
                insert(payments).values(
                    reference=reference,
                    user_id="user_alice",
                    subscription_id=self.subscription_id,
                    plan_id=PREMIUM,
                    amount=2000,
                    currency="NGN",
                    status=status,
                    created_at=created_at,
                    updated_at=created_at,
                )
            )

    def _status(self, reference):
        with get_db_session() as session:
            return session.execute(
                select(payments.c.status, payments.c.failure_reason).where(payments.c.reference == reference)
            ).first()

    def test_old_pending_payments_fail(self, memory_cache):
        self._pending("SUB_old", NOW - timedelta(hours=25))
        self._pending("SUB_new", NOW - timedelta(hours=1))
        self._pending("SUB_paid", NOW - timedelta(hours=48), status="success")

        assert jobs.cleanup_abandoned_payments(memory_cache, now=NOW) == 1

        assert self._status("SUB_old") == ("failed", jobs.ABANDONED_REASON)
        assert self._status("SUB_new").status == "pending"
        assert self._status("SUB_paid").status == "success"

    def test_metrics_accumulate(self, memory_cache):
        self._pending("SUB_one", NOW - timedelta(hours=30))
        jobs.cleanup_abandoned_payments(memory_cache, now=NOW)
        self._pending("SUB_two", NOW - timedelta(hours=30))
        jobs.cleanup_abandoned_payments(memory_cache, now=NOW)

        metrics = jobs.get_cleanup_metrics()
        assert metrics == {"last_run": NOW.isoformat(), "last_cleaned": 1, "total_cleaned": 2}

    def test_custom_max_age(self, memory_cache):
        self._pending("SUB_two_hours", NOW - timedelta(hours=2))
        assert jobs.cleanup_abandoned_payments(memory_cache, now=NOW, max_age_hours=1) == 1

    def test_lock_held_elsewhere_skips_run(self, memory_cache):
        self._pending("SUB_old", NOW - timedelta(hours=25))
        memory_cache.acquire_lock(CacheKeys.job_lock(jobs.CLEANUP_JOB), 600)

        assert jobs.cleanup_abandoned_payments(memory_cache, now=NOW) == 0
        assert self._status("SUB_old").status == "pending"


def test_job_runner_cli(memory_cache, seeded_plans):
    from planguard.workers.subscription_jobs import main

    assert main(["sweep"]) == 0
    assert main(["cleanup", "--max-age-hours", "1"]) == 0
    assert jobs.get_cleanup_metrics()["last_run"] is not None
