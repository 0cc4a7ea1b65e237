"""
Checkout completion.

One reconciliation function for a paid checkout session, shared by the
checkout.session.completed webhook, client-side session verification and the
admin replay endpoint. Callers differ only in how they obtained the gateway
subscription (event + lookup, or a synchronous retrieval) and hold the user's
lock around the enclosing transaction.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy.orm import Session

from quillpass.core.errors import InvalidPlanError
from quillpass.core.metrics import period_end_fallback_total
from quillpass.features.billing import ledger
from quillpass.features.billing.gateway import GatewayCheckoutSession, GatewaySubscription
from quillpass.features.plans.service import resolve
from quillpass.features.subscriptions.service import write_subscription
from quillpass.features.users.service import load_user
from quillpass.models.subscription import Subscription, SubscriptionStatus
from quillpass.models.transaction import TransactionStatus, TransactionType

logger = logging.getLogger("quillpass")

FALLBACK_NOTE = "Used fallback end date due to missing current_period_end"


@dataclass(frozen=True)
class CompletionResult:
    outcome: str  # applied | already_completed | no_user | ignored
    user_id: Optional[str] = None
    transaction_id: Optional[str] = None
    fallback_used: bool = False


def resolve_checkout_user(checkout: GatewayCheckoutSession, session: Session, user_id_hint: Optional[str] = None):
    """user_id/plan_id from session metadata, else from the pending ledger row."""
    user_id = checkout.metadata.get("user_id")
    plan_id = checkout.metadata.get("plan_id")
    if not user_id or not plan_id:
        row = ledger.get_by_transaction_id(session, checkout.session_id)
        if row is not None:
            user_id = user_id or row.user_id
            plan_id = plan_id or row.plan
    return user_id or user_id_hint, plan_id


def apply_checkout_completion(
    session: Session,
    checkout: GatewayCheckoutSession,
    subscription: Optional[GatewaySubscription],
    now: datetime,
    *,
    source: str,
    user_id_hint: Optional[str] = None,
) -> CompletionResult:
    """Activate the purchased plan and complete the session's ledger row.

    Idempotent: a session whose row is already completed re-writes the
    subscription from the row's recorded period instead of appending or
    extending anything.
    """
    user_id, plan_id = resolve_checkout_user(checkout, session, user_id_hint)
    if not user_id or not plan_id:
        logger.warning(
            "checkout.completion.missing_metadata",
            extra={"transaction_id": checkout.session_id, "event_type": source},
        )
        return CompletionResult(outcome="ignored")

    try:
        plan = resolve(plan_id)
    except InvalidPlanError:
        logger.warning(
            f"checkout.completion.unknown_plan plan_id={plan_id}",
            extra={"user_id": user_id, "transaction_id": checkout.session_id},
        )
        return CompletionResult(outcome="ignored", user_id=user_id)

    user = load_user(session, user_id, for_update=True)
    if user is None:
        logger.warning(
            "checkout.completion.no_user",
            extra={"user_id": user_id, "transaction_id": checkout.session_id},
        )
        return CompletionResult(outcome="no_user", user_id=user_id)

    existing = ledger.get_by_transaction_id(session, checkout.session_id)
    subscription_id = (subscription.subscription_id if subscription else None) or checkout.subscription_id
    customer_id = (subscription.customer_id if subscription else None) or checkout.customer_id

    if existing is not None and existing.status == TransactionStatus.COMPLETED:
        current = user.subscription
        # Only the checkout that produced the current subscription may re-write it;
        # later renewals or deletions for it must not be rolled back.
        if current.checkout_session_id == checkout.session_id and current.status == SubscriptionStatus.ACTIVE:
            end_date = existing.billing_period_end
            if current.end_date and (end_date is None or current.end_date > end_date):
                end_date = current.end_date
            write_subscription(
                session,
                user_id,
                current.model_copy(
                    update={
                        "plan": existing.plan,
                        "start_date": existing.billing_period_start or current.start_date,
                        "end_date": end_date,
                        "external_subscription_id": subscription_id or current.external_subscription_id,
                        "external_customer_id": customer_id or current.external_customer_id,
                    }
                ),
            )
        return CompletionResult(
            outcome="already_completed",
            user_id=user_id,
            transaction_id=existing.transaction_id,
            fallback_used=existing.period_end_fallback,
        )

    period_end = subscription.current_period_end if subscription else None
    fallback_used = period_end is None
    if fallback_used:
        period_end = now + timedelta(days=plan.duration_days)
        period_end_fallback_total.inc(labels={"source": source})
        logger.warning(
            "checkout.completion.period_end_fallback",
            extra={"user_id": user_id, "transaction_id": checkout.session_id, "event_type": source},
        )

    write_subscription(
        session,
        user_id,
        Subscription(
            plan=plan.plan_id,
            status=SubscriptionStatus.ACTIVE,
            start_date=now,
            end_date=period_end,
            external_subscription_id=subscription_id,
            external_customer_id=customer_id,
            checkout_session_id=checkout.session_id,
            cancel_at_period_end=bool(subscription.cancel_at_period_end) if subscription else False,
        ),
    )

    metadata = dict(existing.metadata) if existing else {}
    metadata["completed_via"] = source
    if fallback_used:
        metadata["fallback_note"] = FALLBACK_NOTE

    completion_values = dict(
        external_session_id=checkout.session_id,
        external_subscription_id=subscription_id,
        external_customer_id=customer_id,
        external_payment_intent_id=checkout.payment_intent_id,
        external_invoice_id=(subscription.latest_invoice_id if subscription else None) or checkout.invoice_id,
        billing_period_start=now,
        billing_period_end=period_end,
        period_end_fallback=fallback_used,
        paid_at=now,
        metadata=metadata,
        updated_at=now,
    )

    if existing is None:
        # Pending write was lost after the session was created; record it now
        ledger.insert_transaction(
            session,
            transaction_id=checkout.session_id,
            user_id=user_id,
            user_email=user.email or checkout.customer_email,
            user_name=user.display_name,
            amount=checkout.amount_total if checkout.amount_total is not None else plan.amount,
            currency=checkout.currency or plan.currency,
            plan=plan.plan_id,
            plan_name=plan.name,
            status=TransactionStatus.COMPLETED,
            type=TransactionType.SUBSCRIPTION,
            description=f"{plan.name} subscription",
            created_at=now,
            **completion_values,
        )
        logger.info(
            "checkout.completion.recovered_row",
            extra={"user_id": user_id, "transaction_id": checkout.session_id, "event_type": source},
        )
    elif not ledger.complete_pending(session, checkout.session_id, **completion_values):
        logger.warning(
            f"checkout.completion.row_not_pending status={existing.status.value}",
            extra={"user_id": user_id, "transaction_id": checkout.session_id},
        )

    logger.info(
        "checkout.completion.applied",
        extra={"user_id": user_id, "transaction_id": checkout.session_id, "event_type": source},
    )
    return CompletionResult(
        outcome="applied",
        user_id=user_id,
        transaction_id=checkout.session_id,
        fallback_used=fallback_used,
    )
