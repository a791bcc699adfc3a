"""
Payment reporting for admins.

Handles:
- Recent payment failures (paginated, newest first)
- Successful payment totals per channel
"""
from typing import Any, Dict, List
from sqlalchemy import select, func

from planguard.core.database import get_db_session, payments, as_utc
from planguard.core.errors import BadRequestError
from planguard.models.subscription import PaymentStatus

MAX_PAGE_SIZE = 100


def get_recent_payment_failures(page: int = 1, limit: int = 20) -> Dict[str, Any]:
    """
    List failed payments with their failure reasons.

    Args:
        page: 1-based page number
        limit: Page size (max 100)

    Returns:
        Dict with items, page, limit, total
    """
    if page < 1 or limit < 1 or limit > MAX_PAGE_SIZE:
        raise BadRequestError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}")

    failed = payments.c.status == PaymentStatus.FAILED.value
    with get_db_session() as session:
        total = session.execute(select(func.count()).select_from(payments).where(failed)).scalar() or 0
        rows = session.execute(
            select(payments)
            .where(failed)
            .order_by(payments.c.created_at.desc(), payments.c.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).fetchall()

    items: List[Dict[str, Any]] = [
        {
            "reference": row.reference,
            "user_id": row.user_id,
            "plan_id": row.plan_id,
            "amount": row.amount,
            "currency": row.currency,
            "failure_reason": row.failure_reason,
            "created_at": as_utc(row.created_at).isoformat(),
        }
        for row in rows
    ]
    return {"items": items, "page": page, "limit": limit, "total": total}


def get_payment_method_stats() -> List[Dict[str, Any]]:
    """Successful payments grouped by channel, busiest first."""
    channel = func.coalesce(payments.c.channel, "unknown")
    with get_db_session() as session:
        rows = session.execute(
            select(
                channel.label("channel"),
                func.count().label("count"),
                func.coalesce(func.sum(payments.c.amount), 0).label("total_amount"),
            )
            .where(payments.c.status == PaymentStatus.SUCCESS.value)
            .group_by(channel)
            .order_by(func.count().desc())
        ).fetchall()

    return [
        {"channel": row.channel, "count": row.count, "total_amount": float(row.total_amount)}
        for row in rows
    ]
