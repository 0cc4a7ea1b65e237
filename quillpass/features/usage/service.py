"""
quillpass/features/usage/service.py

Metered AI-summary quota.

Handles:
- Lazy calendar-month rollover (UTC), applied on any read or write
- Atomic check-and-consume via a conditional UPDATE
- Quota snapshots for GET /subscription and quota-exceeded errors
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import select, update, and_, or_
from sqlalchemy.orm import Session

from quillpass.core.database import get_db_session, users as app_users
from quillpass.core.errors import NotFoundError, QuotaExceededError
from quillpass.core.locks import user_locks
from quillpass.core.metrics import quota_decisions_total
from quillpass.features.plans.service import PLANS
from quillpass.features.subscriptions.service import effective_plan
from quillpass.features.users.service import load_user
from quillpass.models.subscription import ADMIN_PLAN, QuotaDecision

logger = logging.getLogger("quillpass")


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def limit_for_plan(plan_id: str) -> Optional[int]:
    """Monthly AI-summary limit; None means unlimited."""
    if plan_id == ADMIN_PLAN:
        return None
    return PLANS[plan_id].ai_summary_limit


def _rollover(session: Session, user_id: str, now: datetime) -> bool:
    """Reset the counter if it belongs to another month. Returns True if reset."""
    result = session.execute(
        update(app_users)
        .where(
            app_users.c.user_id == user_id,
            or_(
                app_users.c.usage_month.is_(None),
                app_users.c.usage_year.is_(None),
                app_users.c.usage_month != now.month,
                app_users.c.usage_year != now.year,
            ),
        )
        .values(usage_month=now.month, usage_year=now.year, usage_count=0)
    )
    return result.rowcount > 0


def _current_count(session: Session, user_id: str) -> int:
    return session.execute(
        select(app_users.c.usage_count).where(app_users.c.user_id == user_id)
    ).scalar() or 0


def get_quota(user_id: str, now: Optional[datetime] = None) -> QuotaDecision:
    """Current month's usage without consuming. `allowed` says whether the next call would pass."""
    now = _normalize_now(now)
    with user_locks.hold(f"user:{user_id}"):
        with get_db_session() as session:
            user = load_user(session, user_id)
            if user is None:
                raise NotFoundError(f"User not found: {user_id}")
            _rollover(session, user_id, now)
            plan_id = effective_plan(user, now)
            limit = limit_for_plan(plan_id)
            used = _current_count(session, user_id)
    return QuotaDecision(
        allowed=limit is None or used < limit,
        plan=plan_id,
        used=used,
        limit=limit,
    )


def check_and_consume(user_id: str, now: Optional[datetime] = None) -> QuotaDecision:
    """Consume one metered unit if the effective plan allows it.

    The increment is a single conditional UPDATE (count < limit), so
    concurrent callers can never push the count past the limit.
    Denials consume nothing.
    """
    now = _normalize_now(now)
    with user_locks.hold(f"user:{user_id}"):
        with get_db_session() as session:
            user = load_user(session, user_id)
            if user is None:
                raise NotFoundError(f"User not found: {user_id}")
            _rollover(session, user_id, now)

            plan_id = effective_plan(user, now)
            limit = limit_for_plan(plan_id)

            conditions = [
                app_users.c.user_id == user_id,
                app_users.c.usage_month == now.month,
                app_users.c.usage_year == now.year,
            ]
            if limit is not None:
                conditions.append(app_users.c.usage_count < limit)

            result = session.execute(
                update(app_users)
                .where(and_(*conditions))
                .values(usage_count=app_users.c.usage_count + 1)
            )
            allowed = result.rowcount == 1
            used = _current_count(session, user_id)

    quota_decisions_total.inc(labels={"plan": plan_id, "allowed": str(allowed).lower()})
    if not allowed:
        logger.info(
            "quota.denied",
            extra={"user_id": user_id, "event_type": "ai_summary", "status": 403},
        )
    return QuotaDecision(allowed=allowed, plan=plan_id, used=used, limit=limit)


def consume_or_raise(user_id: str, now: Optional[datetime] = None) -> QuotaDecision:
    """check_and_consume, raising QuotaExceededError with the usage snapshot on denial."""
    decision = check_and_consume(user_id, now)
    if not decision.allowed:
        raise QuotaExceededError(
            "Monthly AI summary limit reached. Upgrade to Premium or Pro for unlimited summaries.",
            details={"plan": decision.plan, **decision.to_payload()},
        )
    return decision
