"""
planguard/features/plans/service.py

Plan and entitlement service.

Handles:
- Reading plans with their entitlement values (the cache loaders)
- Active plan resolution for a user
- Plan and entitlement administration with cache invalidation
- Default plan seeding (Free, Premium)
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4
from sqlalchemy import select, insert, update, delete, or_
from sqlalchemy.orm import Session

from planguard.core.config import settings
from planguard.core.database import (
    session_scope,
    upsert,
    plans,
    entitlements,
    plan_entitlements,
    subscriptions,
    payments,
    as_utc,
)
from planguard.core.errors import BadRequestError, ConflictError, NotFoundError
from planguard.models.entitlement import Entitlement, EntitlementType, validate_entitlement_value
from planguard.models.plan import BillingInterval, Plan, PlanEntitlement
from planguard.models.subscription import SubscriptionStatus


# Standard feature keys
DEFAULT_ENTITLEMENTS = {
    "quiz": ("Quizzes", EntitlementType.COUNTER, "Quizzes generated per billing period"),
    "flashcard": ("Flashcards", EntitlementType.COUNTER, "Flashcard decks generated per billing period"),
    "studyMaterial": ("Study materials", EntitlementType.COUNTER, "Study materials generated per billing period"),
    "aiTutor": ("AI tutor", EntitlementType.BOOLEAN, "Access to the AI tutor"),
    "fileUpload": ("File uploads", EntitlementType.COUNTER, "Files uploaded per billing period"),
    "fileStorage": ("File storage", EntitlementType.COUNTER, "Storage in MB"),
    "analyticsAccess": ("Analytics", EntitlementType.BOOLEAN, "Access to learning analytics"),
    "apiRateLimit": ("API rate limit", EntitlementType.FREQUENCY, "Requests per time window"),
    "accessLevel": ("Access level", EntitlementType.LEVEL, "Content tier"),
}

PREMIUM_PLAN_ID = "premium-plan-id"

DEFAULT_PLANS = {
    settings.FREE_PLAN_ID: {
        "name": "Free",
        "description": "Get started with the essentials",
        "price": 0,
        "interval": BillingInterval.MONTHLY.value,
        "entitlements": {
            "quiz": 5,
            "flashcard": 5,
            "studyMaterial": 3,
            "aiTutor": False,
            "fileUpload": 5,
            "fileStorage": 100,
            "analyticsAccess": False,
            "apiRateLimit": {"limit": 60, "window": "1h"},
            "accessLevel": 1,
        },
    },
    PREMIUM_PLAN_ID: {
        "name": "Premium",
        "description": "Higher limits and every feature",
        "price": 2000,
        "interval": BillingInterval.MONTHLY.value,
        "entitlements": {
            "quiz": 100,
            "flashcard": 100,
            "studyMaterial": 50,
            "aiTutor": True,
            "fileUpload": 100,
            "fileStorage": 5000,
            "analyticsAccess": True,
            "apiRateLimit": {"limit": 1000, "window": "1h"},
            "accessLevel": 3,
        },
    },
}


def _config_cache(cache=None):
    if cache is not None:
        return cache
    from planguard.features.plans.config_cache import get_plan_config_cache
    return get_plan_config_cache()


def _validate_interval(interval: str) -> str:
    try:
        return BillingInterval(interval).value
    except ValueError:
        raise BadRequestError(f"Invalid billing interval '{interval}'")


def _plan_entitlement_rows(session: Session, plan_ids: List[str]) -> Dict[str, List[PlanEntitlement]]:
    rows = session.execute(
        select(
            plan_entitlements.c.plan_id,
            plan_entitlements.c.value,
            entitlements.c.entitlement_id,
            entitlements.c.key,
            entitlements.c.name,
            entitlements.c.type,
        )
        .join(entitlements, entitlements.c.entitlement_id == plan_entitlements.c.entitlement_id)
        .where(plan_entitlements.c.plan_id.in_(plan_ids))
        .order_by(entitlements.c.key)
    ).all()
    grouped: Dict[str, List[PlanEntitlement]] = {plan_id: [] for plan_id in plan_ids}
    for row in rows:
        grouped[row.plan_id].append(
            PlanEntitlement(
                entitlement_id=row.entitlement_id,
                key=row.key,
                name=row.name,
                type=row.type,
                value=row.value,
            )
        )
    return grouped


def _row_to_plan(row, items: List[PlanEntitlement]) -> Plan:
    return Plan(
        plan_id=row.plan_id,
        name=row.name,
        description=row.description,
        price=row.price,
        interval=row.interval,
        is_active=bool(row.is_active),
        created_at=as_utc(row.created_at),
        entitlements=tuple(items),
    )


def _row_to_entitlement(row) -> Entitlement:
    return Entitlement(
        entitlement_id=row.entitlement_id,
        key=row.key,
        name=row.name,
        type=row.type,
        description=row.description,
    )


# --- loaders (durable reads behind the plan config cache) ---

def load_plan(plan_id: str, session: Optional[Session] = None) -> Optional[Plan]:
    """Plan with its entitlement values, active or not."""
    with session_scope(session) as s:
        row = s.execute(select(plans).where(plans.c.plan_id == plan_id)).first()
        if not row:
            return None
        items = _plan_entitlement_rows(s, [plan_id])[plan_id]
        return _row_to_plan(row, items)


def load_user_plan_id(user_id: str) -> Optional[str]:
    """
    Resolve the plan a user is entitled to right now.

    An active subscription wins. Without one (no row, a checkout
    placeholder, or an expired subscription) the user falls back to the
    free plan when it exists and is active.
    """
    with session_scope() as s:
        sub = s.execute(
            select(subscriptions.c.plan_id, subscriptions.c.status)
            .where(subscriptions.c.user_id == user_id)
        ).first()
        if sub and sub.status == SubscriptionStatus.ACTIVE.value:
            return sub.plan_id

        free_active = s.execute(
            select(plans.c.is_active).where(plans.c.plan_id == settings.FREE_PLAN_ID)
        ).scalar_one_or_none()
        if free_active:
            return settings.FREE_PLAN_ID
    return None


def load_entitlement(entitlement_id: str) -> Optional[Entitlement]:
    with session_scope() as s:
        row = s.execute(
            select(entitlements).where(entitlements.c.entitlement_id == entitlement_id)
        ).first()
    return _row_to_entitlement(row) if row else None


# --- plan administration ---

def list_plans(include_inactive: bool = False) -> List[Plan]:
    """Plans ordered by price, cheapest first."""
    with session_scope() as s:
        query = select(plans).order_by(plans.c.price, plans.c.name)
        if not include_inactive:
            query = query.where(plans.c.is_active == True)
        rows = s.execute(query).all()
        grouped = _plan_entitlement_rows(s, [row.plan_id for row in rows]) if rows else {}
        return [_row_to_plan(row, grouped.get(row.plan_id, [])) for row in rows]


def get_plan(plan_id: str) -> Plan:
    plan = load_plan(plan_id)
    if plan is None:
        raise NotFoundError("Subscription plan not found")
    return plan


def _entitlement_row_by_key(session: Session, key: str):
    row = session.execute(select(entitlements).where(entitlements.c.key == key)).first()
    if not row:
        raise NotFoundError(f"Entitlement '{key}' not found")
    return row


def _write_plan_entitlement(session: Session, plan_id: str, key: str, value: Any) -> None:
    ent = _entitlement_row_by_key(session, key)
    try:
        validate_entitlement_value(EntitlementType(ent.type), value)
    except ValueError as exc:
        raise BadRequestError(f"Invalid value for '{key}': {exc}")

    stmt = upsert(session, plan_entitlements).values(
        plan_id=plan_id,
        entitlement_id=ent.entitlement_id,
        value=value,
        created_at=datetime.now(timezone.utc),
    )
    session.execute(
        stmt.on_conflict_do_update(
            index_elements=[plan_entitlements.c.plan_id, plan_entitlements.c.entitlement_id],
            set_={"value": stmt.excluded.value},
        )
    )


def create_plan(
    name: str,
    price: float,
    interval: str = BillingInterval.MONTHLY.value,
    description: Optional[str] = None,
    is_active: bool = True,
    entitlement_values: Optional[Dict[str, Any]] = None,
    plan_id: Optional[str] = None,
) -> Plan:
    """
    Create a plan and its entitlement values in one transaction.

    Raises:
        BadRequestError: Negative price, unknown interval or mis-shaped value
        ConflictError: A plan with the same name already exists
        NotFoundError: An entitlement key does not exist
    """
    if price < 0:
        raise BadRequestError("Plan price cannot be negative")
    interval = _validate_interval(interval)
    plan_id = plan_id or uuid4().hex
    now = datetime.now(timezone.utc)

    with session_scope() as s:
        clash = s.execute(
            select(plans.c.plan_id).where(or_(plans.c.name == name, plans.c.plan_id == plan_id))
        ).first()
        if clash:
            raise ConflictError(f"Plan '{name}' already exists")
        s.execute(
            insert(plans).values(
                plan_id=plan_id,
                name=name,
                description=description,
                price=price,
                interval=interval,
                is_active=is_active,
                created_at=now,
                updated_at=now,
            )
        )
        for key, value in (entitlement_values or {}).items():
            _write_plan_entitlement(s, plan_id, key, value)

    return get_plan(plan_id)


def update_plan(
    plan_id: str,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    price: Optional[float] = None,
    interval: Optional[str] = None,
    is_active: Optional[bool] = None,
    entitlement_values: Optional[Dict[str, Any]] = None,
    cache=None,
) -> Plan:
    """Apply the given fields, then invalidate the plan's cache entry."""
    values: Dict[str, Any] = {}
    if name is not None:
        values["name"] = name
    if description is not None:
        values["description"] = description
    if price is not None:
        if price < 0:
            raise BadRequestError("Plan price cannot be negative")
        values["price"] = price
    if interval is not None:
        values["interval"] = _validate_interval(interval)
    if is_active is not None:
        values["is_active"] = is_active

    with session_scope() as s:
        exists = s.execute(select(plans.c.plan_id).where(plans.c.plan_id == plan_id)).first()
        if not exists:
            raise NotFoundError("Subscription plan not found")
        if values:
            values["updated_at"] = datetime.now(timezone.utc)
            s.execute(update(plans).where(plans.c.plan_id == plan_id).values(**values))
        for key, value in (entitlement_values or {}).items():
            _write_plan_entitlement(s, plan_id, key, value)

    _config_cache(cache).invalidate_plan(plan_id)
    return get_plan(plan_id)


def set_plan_entitlement(plan_id: str, key: str, value: Any, cache=None) -> Plan:
    return update_plan(plan_id, entitlement_values={key: value}, cache=cache)


def remove_plan_entitlement(plan_id: str, key: str, cache=None) -> Plan:
    with session_scope() as s:
        ent = _entitlement_row_by_key(s, key)
        result = s.execute(
            delete(plan_entitlements).where(
                plan_entitlements.c.plan_id == plan_id,
                plan_entitlements.c.entitlement_id == ent.entitlement_id,
            )
        )
        if result.rowcount == 0:
            raise NotFoundError(f"Plan does not include '{key}'")

    _config_cache(cache).invalidate_plan(plan_id)
    return get_plan(plan_id)


def delete_plan(plan_id: str, cache=None) -> Dict[str, Any]:
    """
    Remove a plan.

    A plan still referenced by any subscription or payment is deactivated
    instead of deleted, so history and live subscribers keep resolving it.
    """
    with session_scope() as s:
        exists = s.execute(select(plans.c.plan_id).where(plans.c.plan_id == plan_id)).first()
        if not exists:
            raise NotFoundError("Subscription plan not found")

        referenced = s.execute(
            select(subscriptions.c.id).where(
                or_(subscriptions.c.plan_id == plan_id, subscriptions.c.pending_plan_id == plan_id)
            ).limit(1)
        ).first() or s.execute(
            select(payments.c.id).where(payments.c.plan_id == plan_id).limit(1)
        ).first()

        if referenced:
            s.execute(
                update(plans)
                .where(plans.c.plan_id == plan_id)
                .values(is_active=False, updated_at=datetime.now(timezone.utc))
            )
            mode = "deactivated"
        else:
            s.execute(delete(plan_entitlements).where(plan_entitlements.c.plan_id == plan_id))
            s.execute(delete(plans).where(plans.c.plan_id == plan_id))
            mode = "deleted"

    _config_cache(cache).invalidate_plan(plan_id)
    return {"plan_id": plan_id, "result": mode}


# --- entitlement administration ---

def list_entitlements() -> List[Entitlement]:
    with session_scope() as s:
        rows = s.execute(select(entitlements).order_by(entitlements.c.key)).all()
    return [_row_to_entitlement(row) for row in rows]


def get_entitlement_by_key(key: str) -> Entitlement:
    with session_scope() as s:
        return _row_to_entitlement(_entitlement_row_by_key(s, key))


def create_entitlement(
    key: str,
    name: str,
    entitlement_type: str,
    description: Optional[str] = None,
    entitlement_id: Optional[str] = None,
) -> Entitlement:
    try:
        etype = EntitlementType(entitlement_type)
    except ValueError:
        raise BadRequestError(f"Unknown entitlement type '{entitlement_type}'")

    with session_scope() as s:
        if s.execute(select(entitlements.c.entitlement_id).where(entitlements.c.key == key)).first():
            raise ConflictError(f"Entitlement '{key}' already exists")
        s.execute(
            insert(entitlements).values(
                entitlement_id=entitlement_id or uuid4().hex,
                key=key,
                name=name,
                type=etype.value,
                description=description,
                created_at=datetime.now(timezone.utc),
            )
        )
    return get_entitlement_by_key(key)


def update_entitlement(
    key: str,
    *,
    name: Optional[str] = None,
    description: Optional[str] = None,
    cache=None,
) -> Entitlement:
    """Update display fields; the entitlement and every plan carrying it are invalidated."""
    values: Dict[str, Any] = {}
    if name is not None:
        values["name"] = name
    if description is not None:
        values["description"] = description

    with session_scope() as s:
        ent = _entitlement_row_by_key(s, key)
        if values:
            s.execute(
                update(entitlements)
                .where(entitlements.c.entitlement_id == ent.entitlement_id)
                .values(**values)
            )
        plan_ids = s.execute(
            select(plan_entitlements.c.plan_id)
            .where(plan_entitlements.c.entitlement_id == ent.entitlement_id)
        ).scalars().all()

    config_cache = _config_cache(cache)
    config_cache.invalidate_entitlement(ent.entitlement_id)
    for plan_id in plan_ids:
        config_cache.invalidate_plan(plan_id)
    return get_entitlement_by_key(key)


def seed_default_plans() -> List[Plan]:
    """
    Seed the standard entitlements and the Free and Premium plans (idempotent).

    Existing rows are left as they are; only missing ones are created.
    """
    with session_scope() as s:
        existing_keys = set(s.execute(select(entitlements.c.key)).scalars().all())
    for key, (name, etype, description) in DEFAULT_ENTITLEMENTS.items():
        if key not in existing_keys:
            create_entitlement(key, name, etype.value, description)

    with session_scope() as s:
        existing_plans = set(s.execute(select(plans.c.plan_id)).scalars().all())
    for plan_id, config in DEFAULT_PLANS.items():
        if plan_id in existing_plans:
            continue
        create_plan(
            name=config["name"],
            price=config["price"],
            interval=config["interval"],
            description=config["description"],
            entitlement_values=config["entitlements"],
            plan_id=plan_id,
        )

    return list_plans()
