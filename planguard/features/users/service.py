"""
User domain service.
- get_user(user_id)
- ensure_user(user_id, email, role)
- set_premium(user_id, flag)
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from planguard.core.database import session_scope, upsert, users as app_users, as_utc
from planguard.core.errors import BadRequestError
from planguard.models.user import User

VALID_ROLES = ("user", "admin", "super_admin")


def _row_to_user(row) -> User:
    return User(
        user_id=row.user_id,
        role=row.role,
        email=row.email,
        display_name=row.display_name,
        is_premium=bool(row.is_premium),
        created_at=as_utc(row.created_at),
    )


def get_user(user_id: str) -> Optional[User]:
    with session_scope() as session:
        row = session.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
        if not row:
            return None
        return _row_to_user(row)


def ensure_user(
    user_id: str,
    email: Optional[str] = None,
    role: str = "user",
    display_name: Optional[str] = None,
) -> User:
    """Create the user if missing; existing rows are returned untouched."""
    if role not in VALID_ROLES:
        raise BadRequestError(f"Unknown role '{role}'")

    with session_scope() as session:
        stmt = upsert(session, app_users).values(
            user_id=user_id,
            email=email,
            role=role,
            display_name=display_name,
            is_premium=False,
            created_at=datetime.now(timezone.utc),
        )
        session.execute(stmt.on_conflict_do_nothing(index_elements=[app_users.c.user_id]))

    return get_user(user_id)


def set_premium(user_id: str, is_premium: bool, session: Optional[Session] = None) -> None:
    with session_scope(session) as s:
        s.execute(
            update(app_users)
            .where(app_users.c.user_id == user_id)
            .values(is_premium=is_premium)
        )
