"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Dialect-aware upsert helper
- Table definitions for plans, subscriptions, payments and usage
"""
from typing import Optional
from contextlib import contextmanager
from datetime import datetime, timezone
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Float, JSON, Text, Index, ForeignKey, UniqueConstraint, select, text, true, false
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from sqlalchemy.sql import func
import logging
import os

from planguard.core.config import settings

logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Global engine and session factory
_engine = None
_SessionLocal = None


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        # SQLite manages its own pool; allow use across FastAPI's threadpool
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def session_scope(session: Optional[Session] = None):
    """Join the caller's transaction when given one, else open a new session."""
    if session is not None:
        yield session
        return
    with get_db_session() as own:
        yield own


@contextmanager
def get_locking_session(lock_timeout_ms: int, statement_timeout_ms: int):
    """
    Session for short, contended transactions (payment activation).

    On PostgreSQL the lock wait and statement time are bounded with
    SET LOCAL so a stuck activation fails fast and can be retried.
    """
    with get_db_session() as session:
        if session.get_bind().dialect.name == "postgresql":
            session.execute(text(f"SET LOCAL lock_timeout = {int(lock_timeout_ms)}"))
            session.execute(text(f"SET LOCAL statement_timeout = {int(statement_timeout_ms)}"))
        yield session


def upsert(session: Session, table: Table):
    """
    Return the dialect-specific INSERT construct for `table`.

    Both PostgreSQL and SQLite inserts expose on_conflict_do_update /
    on_conflict_do_nothing, which back every atomic upsert here.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upsert is not supported on dialect {dialect}")


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(select(1))
        return True
    except Exception as e:
        logger.warning("db.connection_check_failed", extra={"error": str(e)})
        return False


# Users table
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(255), nullable=True),
    Column('display_name', Text, nullable=True),
    Column('role', String(50), nullable=False, server_default='user'),  # user, admin, super_admin
    Column('is_premium', Boolean, nullable=False, server_default=false()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_created_at', 'created_at'),
)

# Subscription plans
plans = Table(
    'plans',
    metadata,
    Column('plan_id', String(50), primary_key=True),
    Column('name', String(200), nullable=False, unique=True),
    Column('description', Text, nullable=True),
    Column('price', Float, nullable=False, server_default='0'),  # major currency unit
    Column('interval', String(20), nullable=False, server_default='monthly'),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_plans_is_active', 'is_active'),
)

# Entitlement definitions (feature keys)
entitlements = Table(
    'entitlements',
    metadata,
    Column('entitlement_id', String(50), primary_key=True),
    Column('key', String(100), nullable=False, unique=True),
    Column('name', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('type', String(20), nullable=False),  # counter, boolean, frequency, level
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Plan x Entitlement values
plan_entitlements = Table(
    'plan_entitlements',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('plan_id', String(50), ForeignKey('plans.plan_id', ondelete='CASCADE'), nullable=False),
    Column('entitlement_id', String(50), ForeignKey('entitlements.entitlement_id', ondelete='CASCADE'), nullable=False),
    Column('value', JSON, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('plan_id', 'entitlement_id', name='uq_plan_entitlements_plan_entitlement'),
    Index('idx_plan_entitlements_plan_id', 'plan_id'),
)

# One subscription row per user
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False, unique=True),
    Column('plan_id', String(50), ForeignKey('plans.plan_id'), nullable=False),
    Column('pending_plan_id', String(50), ForeignKey('plans.plan_id'), nullable=True),
    Column('status', String(30), nullable=False),  # pending_payment, active, expired
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default=false()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_subscriptions_status_period_end', 'status', 'current_period_end'),
    Index('idx_subscriptions_plan_id', 'plan_id'),
)

# Payments (reference is the activation idempotency key)
payments = Table(
    'payments',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('reference', String(100), nullable=False, unique=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False, index=True),
    Column('subscription_id', Integer, ForeignKey('subscriptions.id'), nullable=False),
    Column('plan_id', String(50), ForeignKey('plans.plan_id'), nullable=False),
    Column('amount', Float, nullable=False),  # major currency unit
    Column('currency', String(10), nullable=False),
    Column('status', String(20), nullable=False),  # pending, success, failed
    Column('failure_reason', Text, nullable=True),
    Column('channel', String(50), nullable=True),
    Column('paid_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_payments_status_created', 'status', 'created_at'),
)

# Running usage counters, one row per (user, feature)
usage_records = Table(
    'usage_records',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('feature_key', String(100), nullable=False),
    Column('current_value', Float, nullable=False, server_default='0'),
    Column('reset_at', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('user_id', 'feature_key', name='uq_usage_records_user_feature'),
)

# Append-only event log for frequency-limited features
usage_events = Table(
    'usage_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('feature_key', String(100), nullable=False),
    Column('amount', Float, nullable=False, server_default='1'),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    # Composite index for window counts: (user_id, feature_key, occurred_at)
    Index('idx_usage_events_user_key_occurred', 'user_id', 'feature_key', 'occurred_at'),
)
