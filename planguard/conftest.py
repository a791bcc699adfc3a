# planguard/conftest.py
import os
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

from sqlalchemy import insert


@pytest.fixture(scope="session")
def db_url(tmp_path_factory):
    """
    Provide the test database URL.

    Uses TEST_DATABASE_URL when set (e.g. a disposable Postgres), otherwise
    a SQLite file private to this test session.
    """
    url = os.getenv("TEST_DATABASE_URL")
    if not url:
        url = f"sqlite:///{tmp_path_factory.mktemp('db') / 'planguard.db'}"
        os.environ["TEST_DATABASE_URL"] = url
    return url


@pytest.fixture(scope="session", autouse=True)
def create_tables(db_url):
    """Bind the engine to the test database once per session."""
    from planguard.core.database import init_engine, create_all_tables

    init_engine(db_url)
    create_all_tables()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_db(create_tables):
    """Every test starts from empty tables."""
    from planguard.core.database import reset_database

    reset_database()
    yield


@pytest.fixture(scope="function", autouse=True)
def memory_cache():
    """
    Fresh in-process cache per test, installed as the process-wide cache.

    The plan config cache, engine and lifecycle manager singletons are
    dropped around each test so none of them holds a previous test's cache.
    """
    from planguard.core.cache import InMemoryCache, set_cache
    from planguard.features.billing import jobs
    from planguard.features.billing.service import set_lifecycle_manager
    from planguard.features.entitlements.engine import set_entitlement_engine
    from planguard.features.plans.config_cache import set_plan_config_cache

    def _reset_singletons(value):
        set_cache(value)
        set_plan_config_cache(None)
        set_entitlement_engine(None)
        set_lifecycle_manager(None)

    memory = InMemoryCache()
    _reset_singletons(memory)
    jobs.cleanup_metrics.update(last_run=None, last_cleaned=0, total_cleaned=0)
    yield memory
    _reset_singletons(None)


@pytest.fixture
def config_cache(memory_cache):
    from planguard.features.plans.config_cache import PlanConfigCache, set_plan_config_cache

    config = PlanConfigCache(memory_cache)
    set_plan_config_cache(config)
    return config


@pytest.fixture
def entitlement_engine(config_cache):
    from planguard.features.entitlements.engine import EntitlementEngine, set_entitlement_engine

    engine = EntitlementEngine(config_cache)
    set_entitlement_engine(engine)
    return engine


@pytest.fixture
def gateway():
    """Payment gateway double: every checkout and verification succeeds for Premium (2000 NGN)."""
    from planguard.features.billing.provider import TransactionInitialization, TransactionVerification

    mock = Mock()
    mock.initialize_transaction.side_effect = lambda **kw: TransactionInitialization(
        authorization_url=f"https://checkout.paystack.test/{kw['reference']}",
        reference=kw["reference"],
        access_code="acc_test",
    )
    mock.verify_transaction.side_effect = lambda reference: TransactionVerification(
        reference=reference,
        status="success",
        amount_minor=200000,
        currency="NGN",
        paid_at=datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc),
        channel="card",
    )
    return mock


@pytest.fixture
def manager(gateway, config_cache, memory_cache):
    from planguard.features.billing.service import SubscriptionLifecycleManager, set_lifecycle_manager

    lifecycle = SubscriptionLifecycleManager(gateway, config_cache, memory_cache)
    set_lifecycle_manager(lifecycle)
    return lifecycle


@pytest.fixture
def seeded_plans():
    """Default entitlements plus the Free and Premium plans."""
    from planguard.features.plans.service import seed_default_plans

    return {plan.plan_id: plan for plan in seed_default_plans()}


@pytest.fixture
def make_user():
    from planguard.features.users.service import ensure_user

    def _make(user_id: str = "user_alice", role: str = "user", email: str | None = "default"):
        if email == "default":
            email = f"{user_id}@example.com"
        return ensure_user(user_id, email=email, role=role)

    return _make


@pytest.fixture
def make_subscription():
    """Insert a subscription row directly (bypassing checkout)."""
    from planguard.core.database import get_db_session, subscriptions

    def _make(
        user_id: str,
        plan_id: str,
        status: str = "active",
        period_end: datetime | None = None,
        pending_plan_id: str | None = None,
        cancel_at_period_end: bool = False,
    ) -> int:
        now = datetime.now(timezone.utc)
        with get_db_session() as session:
            result = session.execute(
                insert(subscriptions).values(
                    user_id=user_id,
                    plan_id=plan_id,
                    status=status,
                    current_period_end=period_end or now + timedelta(days=30),
                    pending_plan_id=pending_plan_id,
                    cancel_at_period_end=cancel_at_period_end,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    return _make
