"""
Session reconciler.

Synchronous counterpart to the webhook path:
- verify_session: post-redirect confirmation by the paying user
- process_session: operator replay of any paid session
- cancel_subscription: cancel at period end
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy.exc import SQLAlchemyError

from quillpass.core.database import get_db_session
from quillpass.core.errors import (
    NoActiveSubscriptionError,
    NotFoundError,
    PaymentNotCompletedError,
    PermissionError,
    PersistenceError,
    ValidationError,
)
from quillpass.core.locks import user_locks
from quillpass.core.logging import log_event
from quillpass.features.billing import ledger
from quillpass.features.billing.completion import CompletionResult, apply_checkout_completion
from quillpass.features.billing.gateway import GatewayCheckoutSession, PaymentGateway
from quillpass.features.subscriptions.service import apply_changes, get_snapshot
from quillpass.features.users.service import get_user, load_user
from quillpass.models.subscription import CancellationConfirmation, SubscriptionSnapshot, SubscriptionStatus
from quillpass.models.transaction import TransactionStatus

logger = logging.getLogger("quillpass")


@dataclass(frozen=True)
class VerifyResult:
    snapshot: SubscriptionSnapshot
    cached: bool
    transaction_id: str


@dataclass(frozen=True)
class ReplayResult:
    completion: CompletionResult
    snapshot: Optional[SubscriptionSnapshot]


def _now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    return now if now.tzinfo else now.replace(tzinfo=timezone.utc)


def _complete(
    gateway: PaymentGateway,
    checkout: GatewayCheckoutSession,
    now: datetime,
    *,
    source: str,
    user_id_hint: Optional[str] = None,
) -> CompletionResult:
    if not checkout.paid or not checkout.subscription_id:
        raise PaymentNotCompletedError(
            "Payment not completed for this checkout session",
            details={"session_id": checkout.session_id, "payment_status": checkout.payment_status},
        )
    subscription = gateway.retrieve_subscription(checkout.subscription_id)
    lock_user = checkout.metadata.get("user_id") or user_id_hint or checkout.session_id
    try:
        with user_locks.hold(f"user:{lock_user}"):
            with get_db_session() as session:
                return apply_checkout_completion(
                    session, checkout, subscription, now, source=source, user_id_hint=user_id_hint
                )
    except SQLAlchemyError as e:
        logger.error(
            "reconcile.persistence_failed",
            exc_info=True,
            extra={"transaction_id": checkout.session_id, "event_type": source},
        )
        raise PersistenceError("Failed to record checkout completion; please retry") from e


def verify_session(
    gateway: PaymentGateway,
    session_id: str,
    user_id: str,
    now: Optional[datetime] = None,
) -> VerifyResult:
    """Confirm a checkout after redirect.

    A completed ledger row short-circuits without calling the gateway, so a
    polling client never triggers duplicate processing.
    """
    now = _now(now)
    with get_db_session() as session:
        row = ledger.get_by_transaction_id(session, session_id)
    if row is not None and row.user_id != user_id:
        raise PermissionError("Checkout session belongs to another user")
    if row is not None and row.status == TransactionStatus.COMPLETED:
        return VerifyResult(snapshot=get_snapshot(user_id, now), cached=True, transaction_id=session_id)

    checkout = gateway.retrieve_session(session_id)
    owner = checkout.metadata.get("user_id")
    if owner and owner != user_id:
        raise PermissionError("Checkout session belongs to another user")

    result = _complete(gateway, checkout, now, source="verify_session", user_id_hint=user_id)
    log_event(
        "info",
        f"reconcile.verify_session.{result.outcome}",
        user_id=user_id,
        transaction_id=session_id,
    )
    if result.outcome not in ("applied", "already_completed"):
        raise ValidationError(
            "Checkout session could not be applied to this account",
            code="checkout_not_applied",
            details={"session_id": session_id, "outcome": result.outcome},
        )
    return VerifyResult(snapshot=get_snapshot(user_id, now), cached=False, transaction_id=session_id)


def process_session(
    gateway: PaymentGateway,
    session_id: str,
    now: Optional[datetime] = None,
) -> ReplayResult:
    """Admin replay of the completion logic for a paid session, bypassing the cache."""
    now = _now(now)
    checkout = gateway.retrieve_session(session_id)
    if not checkout.metadata.get("user_id"):
        with get_db_session() as session:
            row = ledger.get_by_transaction_id(session, session_id)
        if row is None:
            raise ValidationError("Session carries no user metadata and has no ledger row")
    result = _complete(gateway, checkout, now, source="admin_replay")
    snapshot = get_snapshot(result.user_id, now) if result.user_id and result.outcome != "no_user" else None
    log_event(
        "info",
        f"reconcile.process_session.{result.outcome}",
        user_id=result.user_id,
        transaction_id=session_id,
    )
    return ReplayResult(completion=result, snapshot=snapshot)


def cancel_subscription(
    gateway: PaymentGateway,
    user_id: str,
    now: Optional[datetime] = None,
) -> CancellationConfirmation:
    """Cancel at period end. Access continues until the returned period_end."""
    now = _now(now)
    user = get_user(user_id)
    if user is None:
        raise NotFoundError(f"User not found: {user_id}")
    sub = user.subscription
    terminated = sub.status == SubscriptionStatus.EXPIRED or (
        sub.status == SubscriptionStatus.CANCELLED and not sub.cancel_at_period_end
    )
    if not sub.external_subscription_id or terminated:
        raise NoActiveSubscriptionError("No active subscription to cancel")

    gw_sub = gateway.cancel_at_period_end(sub.external_subscription_id)
    period_end = gw_sub.current_period_end or sub.end_date

    try:
        with user_locks.hold(f"user:{user_id}"):
            with get_db_session() as session:
                current = load_user(session, user_id, for_update=True)
                apply_changes(
                    session,
                    current,
                    status=SubscriptionStatus.CANCELLED,
                    cancel_at_period_end=True,
                    end_date=period_end,
                )
    except SQLAlchemyError as e:
        logger.error("cancel.persistence_failed", exc_info=True, extra={"user_id": user_id})
        raise PersistenceError("Subscription cancelled at the gateway but not recorded; please retry") from e

    log_event(
        "info",
        "subscription.cancel_scheduled",
        user_id=user_id,
        extra={"period_end": period_end.isoformat() if period_end else None},
    )
    return CancellationConfirmation(
        message="Subscription will be cancelled at the end of the current billing period",
        period_end=period_end,
        subscription=get_snapshot(user_id, now),
    )
