"""
User directory.
- get_user(user_id)
- get_or_create_user(user_id, email, name, role)
- row_to_user(row)
- lookups by external gateway ids
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import select, insert, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from quillpass.core.database import get_db_session, users as app_users
from quillpass.models.subscription import Subscription, SubscriptionStatus, UsageCounter
from quillpass.models.user import User

VALID_ROLES = {"user", "author", "admin"}


def row_to_user(row) -> User:
    return User(
        user_id=row.user_id,
        email=row.email,
        name=row.name,
        role=row.role or "user",
        created_at=row.created_at,
        subscription=Subscription(
            plan=row.subscription_plan or "free",
            status=SubscriptionStatus(row.subscription_status or "active"),
            start_date=row.subscription_start_date,
            end_date=row.subscription_end_date,
            external_subscription_id=row.external_subscription_id,
            external_customer_id=row.external_customer_id,
            checkout_session_id=row.checkout_session_id,
            cancel_at_period_end=bool(row.cancel_at_period_end),
        ),
        usage=UsageCounter(
            month=row.usage_month,
            year=row.usage_year,
            count=row.usage_count or 0,
        ),
    )


def load_user(session: Session, user_id: str, *, for_update: bool = False) -> Optional[User]:
    stmt = select(app_users).where(app_users.c.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = session.execute(stmt).first()
    return row_to_user(row) if row else None


def get_user(user_id: str) -> Optional[User]:
    with get_db_session() as session:
        return load_user(session, user_id)


def find_user_id_by_subscription(session: Session, external_subscription_id: Optional[str]) -> Optional[str]:
    if not external_subscription_id:
        return None
    return session.execute(
        select(app_users.c.user_id).where(app_users.c.external_subscription_id == external_subscription_id)
    ).scalar()


def find_user_id_by_customer_or_subscription(
    session: Session,
    external_customer_id: Optional[str],
    external_subscription_id: Optional[str],
) -> Optional[str]:
    clauses = []
    if external_customer_id:
        clauses.append(app_users.c.external_customer_id == external_customer_id)
    if external_subscription_id:
        clauses.append(app_users.c.external_subscription_id == external_subscription_id)
    if not clauses:
        return None
    return session.execute(select(app_users.c.user_id).where(or_(*clauses)).limit(1)).scalar()


def get_or_create_user(
    user_id: str,
    email: Optional[str] = None,
    name: Optional[str] = None,
    role: Optional[str] = None,
) -> User:
    """Provision the local record for an identity issued elsewhere.

    Profile claims (email, name, role) are refreshed when the identity carries them.
    """
    if role is not None and role not in VALID_ROLES:
        role = "user"

    existing = get_user(user_id)
    if existing is None:
        try:
            with get_db_session() as session:
                session.execute(
                    insert(app_users).values(
                        user_id=user_id,
                        email=email,
                        name=name,
                        role=role or "user",
                        created_at=datetime.now(timezone.utc),
                    )
                )
        except IntegrityError:
            # Concurrent first request for the same identity
            pass
        return get_user(user_id)

    changes = {}
    if email and email != existing.email:
        changes["email"] = email
    if name and name != existing.name:
        changes["name"] = name
    if role and role != existing.role:
        changes["role"] = role
    if not changes:
        return existing
    with get_db_session() as session:
        session.execute(update(app_users).where(app_users.c.user_id == user_id).values(**changes))
        return load_user(session, user_id)
