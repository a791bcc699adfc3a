"""
planguard/features/usage/service.py

Usage tracking service.

Handles:
- Running counters per (user, feature) with an atomic upsert-increment
- Scheduled reset dates (one calendar month out), applied lazily once they pass
- Append-only events for frequency-limited features and window counts
"""

import calendar
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional
from sqlalchemy import select, insert, update, func, case
from sqlalchemy.orm import Session

from planguard.core.database import session_scope, upsert, usage_records, usage_events, as_utc
from planguard.core.errors import NotFoundError
from planguard.models.usage import UsageRecord


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    return as_utc(now)


def next_reset_date(now: Optional[datetime] = None) -> datetime:
    """Same day next month, clamped to the month's last day."""
    now = _normalize_now(now)
    year = now.year + (1 if now.month == 12 else 0)
    month = 1 if now.month == 12 else now.month + 1
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


def _live_value(current_value, reset_at, now: datetime) -> float:
    # A counter past its reset date counts as already reset
    if as_utc(reset_at) <= now:
        return 0.0
    return float(current_value)


def get_usage(
    user_id: str,
    feature_key: str,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> float:
    """Current counter value; 0 when the user has no record (none is created) or its reset date has passed."""
    now = _normalize_now(now)
    with session_scope(session) as s:
        row = s.execute(
            select(usage_records.c.current_value, usage_records.c.reset_at).where(
                usage_records.c.user_id == user_id,
                usage_records.c.feature_key == feature_key,
            )
        ).first()
    if row is None:
        return 0.0
    return _live_value(row.current_value, row.reset_at, now)


def get_usage_record(user_id: str, feature_key: str) -> Optional[UsageRecord]:
    with session_scope() as s:
        row = s.execute(
            select(usage_records).where(
                usage_records.c.user_id == user_id,
                usage_records.c.feature_key == feature_key,
            )
        ).first()
    if row is None:
        return None
    return UsageRecord(
        user_id=row.user_id,
        feature_key=row.feature_key,
        current_value=row.current_value,
        reset_at=as_utc(row.reset_at),
    )


def increment_usage(
    user_id: str,
    feature_key: str,
    amount: float = 1,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> float:
    """
    Add `amount` to the counter in a single INSERT .. ON CONFLICT statement.

    The addition happens in the database so concurrent increments never
    lose updates. A new record gets reset_at one month out; an existing
    record whose reset date has passed restarts from `amount` in the same
    statement.

    Returns:
        The counter value after the increment
    """
    now = _normalize_now(now)
    with session_scope(session) as s:
        stmt = upsert(s, usage_records).values(
            user_id=user_id,
            feature_key=feature_key,
            current_value=amount,
            reset_at=next_reset_date(now),
            updated_at=now,
        )
        lapsed = usage_records.c.reset_at <= now
        stmt = stmt.on_conflict_do_update(
            index_elements=[usage_records.c.user_id, usage_records.c.feature_key],
            set_={
                "current_value": case(
                    (lapsed, stmt.excluded.current_value),
                    else_=usage_records.c.current_value + stmt.excluded.current_value,
                ),
                "reset_at": case((lapsed, stmt.excluded.reset_at), else_=usage_records.c.reset_at),
                "updated_at": now,
            },
        ).returning(usage_records.c.current_value)
        value = s.execute(stmt).scalar_one()
    return float(value)


def decrement_usage(
    user_id: str,
    feature_key: str,
    amount: float,
    session: Optional[Session] = None,
) -> float:
    """
    Subtract `amount` from an existing counter.

    Raises:
        NotFoundError: If the user has no record for the feature
    """
    with session_scope(session) as s:
        value = s.execute(
            update(usage_records)
            .where(
                usage_records.c.user_id == user_id,
                usage_records.c.feature_key == feature_key,
            )
            .values(current_value=usage_records.c.current_value - amount)
            .returning(usage_records.c.current_value)
        ).scalar_one_or_none()
    if value is None:
        raise NotFoundError(f"No usage recorded for '{feature_key}'")
    return float(value)


def reset_usage(
    user_id: str,
    feature_key: str,
    now: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> None:
    """
    Zero a counter and push its reset date one month out.

    Raises:
        NotFoundError: If the user has no record for the feature
    """
    now = _normalize_now(now)
    with session_scope(session) as s:
        result = s.execute(
            update(usage_records)
            .where(
                usage_records.c.user_id == user_id,
                usage_records.c.feature_key == feature_key,
            )
            .values(current_value=0, reset_at=next_reset_date(now), updated_at=now)
        )
    if result.rowcount == 0:
        raise NotFoundError(f"No usage recorded for '{feature_key}'")


def reset_user_usage(
    user_id: str,
    feature_keys: Optional[Iterable[str]] = None,
    now: Optional[datetime] = None,
    reset_at: Optional[datetime] = None,
    session: Optional[Session] = None,
) -> int:
    """
    Zero every counter the user has (or only `feature_keys`).

    Returns:
        Number of records reset
    """
    now = _normalize_now(now)
    query = update(usage_records).where(usage_records.c.user_id == user_id)
    if feature_keys is not None:
        keys = list(feature_keys)
        if not keys:
            return 0
        query = query.where(usage_records.c.feature_key.in_(keys))
    with session_scope(session) as s:
        result = s.execute(
            query.values(current_value=0, reset_at=reset_at or next_reset_date(now), updated_at=now)
        )
    return result.rowcount


def get_user_usage(user_id: str, now: Optional[datetime] = None) -> Dict[str, float]:
    """All counters for a user, keyed by feature. Lapsed counters read as 0."""
    now = _normalize_now(now)
    with session_scope() as s:
        rows = s.execute(
            select(usage_records.c.feature_key, usage_records.c.current_value, usage_records.c.reset_at)
            .where(usage_records.c.user_id == user_id)
        ).all()
    return {row.feature_key: _live_value(row.current_value, row.reset_at, now) for row in rows}


def record_usage_event(
    user_id: str,
    feature_key: str,
    amount: float = 1,
    occurred_at: Optional[datetime] = None,
) -> None:
    """Append one event to the frequency log."""
    occurred_at = _normalize_now(occurred_at)
    with session_scope() as s:
        s.execute(
            insert(usage_events).values(
                user_id=user_id,
                feature_key=feature_key,
                amount=amount,
                occurred_at=occurred_at,
            )
        )


def get_usage_in_window(user_id: str, feature_key: str, window_start: datetime) -> float:
    """Sum of event amounts recorded at or after window_start."""
    window_start = as_utc(window_start)
    with session_scope() as s:
        total = s.execute(
            select(func.coalesce(func.sum(usage_events.c.amount), 0)).where(
                usage_events.c.user_id == user_id,
                usage_events.c.feature_key == feature_key,
                usage_events.c.occurred_at >= window_start,
            )
        ).scalar_one()
    return float(total)
