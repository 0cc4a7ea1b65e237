"""
quillpass/features/subscriptions/service.py

Subscription service: the only read/write API over the subscription state
embedded in a user record.

Handles:
- Effective plan evaluation (lazy expiry, admin override)
- Entitlements derived from the effective plan and role
- Snapshots for API callers
- Subscription writes used by webhooks, reconciliation and cancellation
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import update
from sqlalchemy.orm import Session

from quillpass.core.database import users as app_users
from quillpass.core.errors import NotFoundError
from quillpass.features.plans.service import FREE_PLAN_ID, PLANS, resolve
from quillpass.features.users.service import get_user
from quillpass.models.subscription import (
    ADMIN_PLAN,
    Entitlements,
    Subscription,
    SubscriptionSnapshot,
    SubscriptionStatus,
)
from quillpass.models.user import User

CONTENT_CREATOR_ROLES = {"admin", "author"}


def _now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def has_paid_access(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    """True while a paid plan's period is running.

    A cancellation scheduled for period end keeps access until end_date.
    """
    now = _now(now)
    if subscription.plan == FREE_PLAN_ID or subscription.plan not in PLANS:
        return False
    if subscription.end_date is None or subscription.end_date <= now:
        return False
    if subscription.status == SubscriptionStatus.ACTIVE:
        return True
    return subscription.status == SubscriptionStatus.CANCELLED and subscription.cancel_at_period_end


def effective_plan(user: User, now: Optional[datetime] = None) -> str:
    if user.is_admin:
        return ADMIN_PLAN
    if has_paid_access(user.subscription, now):
        return user.subscription.plan
    return FREE_PLAN_ID


def entitlements(user: User, now: Optional[datetime] = None) -> Entitlements:
    plan_id = effective_plan(user, now)
    if plan_id == ADMIN_PLAN:
        return Entitlements(ai_summary_limit=None, ad_free=True, can_create_content=True)
    plan = PLANS[plan_id]
    return Entitlements(
        ai_summary_limit=plan.ai_summary_limit,
        ad_free=plan.ad_free,
        can_create_content=plan.can_create_content or user.role in CONTENT_CREATOR_ROLES,
    )


def snapshot(user: User, now: Optional[datetime] = None) -> SubscriptionSnapshot:
    now = _now(now)
    plan_id = effective_plan(user, now)
    sub = user.subscription
    active = has_paid_access(sub, now)
    features_plan = PLANS.get(sub.plan if active else FREE_PLAN_ID, PLANS[FREE_PLAN_ID])
    status = sub.status
    if not active and sub.plan != FREE_PLAN_ID and status == SubscriptionStatus.ACTIVE:
        # Lapsed without a webhook; readers see it as expired
        status = SubscriptionStatus.EXPIRED
    return SubscriptionSnapshot(
        user_id=user.user_id,
        plan=plan_id,
        stored_plan=sub.plan,
        status=status,
        is_active=active,
        start_date=sub.start_date,
        end_date=sub.end_date,
        cancel_at_period_end=sub.cancel_at_period_end,
        features=list(features_plan.features),
        entitlements=entitlements(user, now),
    )


def get_snapshot(user_id: str, now: Optional[datetime] = None) -> SubscriptionSnapshot:
    user = get_user(user_id)
    if user is None:
        raise NotFoundError(f"User not found: {user_id}")
    return snapshot(user, now)


def _columns(subscription: Subscription) -> dict:
    return {
        "subscription_plan": subscription.plan,
        "subscription_status": subscription.status.value,
        "subscription_start_date": subscription.start_date,
        "subscription_end_date": subscription.end_date,
        "external_subscription_id": subscription.external_subscription_id,
        "external_customer_id": subscription.external_customer_id,
        "checkout_session_id": subscription.checkout_session_id,
        "cancel_at_period_end": subscription.cancel_at_period_end,
    }


def write_subscription(session: Session, user_id: str, subscription: Subscription) -> None:
    """Overwrite the stored subscription. Callers hold the user's lock."""
    resolve(subscription.plan)
    session.execute(
        update(app_users).where(app_users.c.user_id == user_id).values(**_columns(subscription))
    )


def apply_changes(session: Session, user: User, **changes) -> Subscription:
    """Write a partial change on top of the user's current subscription."""
    updated = user.subscription.model_copy(update=changes)
    write_subscription(session, user.user_id, updated)
    return updated
