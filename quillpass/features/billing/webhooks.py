"""
Webhook event processor.

Flow per delivery:
1. Verify the signature (reject before any handler runs).
2. Parse the envelope into a WebhookEvent variant.
3. Skip event ids already processed.
4. Do gateway lookups outside the database transaction (failures fall back).
5. Under the user's lock, record the event id and apply the handler's effects
   in one transaction. A local write failure rolls both back and surfaces as
   PersistenceError so the gateway redelivers.
"""
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from quillpass.core.database import get_db_session, billing_events
from quillpass.core.errors import (
    GatewayUnavailableError,
    ExternalGatewayError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from quillpass.core.locks import user_locks
from quillpass.core.logging import log_event
from quillpass.core.metrics import webhook_events_total
from quillpass.features.billing import ledger
from quillpass.features.billing.completion import apply_checkout_completion, resolve_checkout_user
from quillpass.features.billing.events import (
    CheckoutCompleted,
    InvoicePaymentFailed,
    SubscriptionDeleted,
    SubscriptionUpdated,
    UnhandledEvent,
    WebhookEvent,
    parse_event,
)
from quillpass.features.billing.gateway import GatewayInvoice, GatewaySubscription, PaymentGateway
from quillpass.features.plans.service import PLANS, plan_for_price
from quillpass.features.subscriptions.service import apply_changes
from quillpass.features.users.service import (
    find_user_id_by_customer_or_subscription,
    find_user_id_by_subscription,
    load_user,
)
from quillpass.models.subscription import SubscriptionStatus
from quillpass.models.transaction import TransactionStatus, TransactionType

logger = logging.getLogger("quillpass")

# Gateway subscription status -> local status. Anything unlisted is expired.
STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.ACTIVE,  # grace period while the gateway retries
    "canceled": SubscriptionStatus.CANCELLED,
}


def map_gateway_status(status: Optional[str]) -> SubscriptionStatus:
    return STATUS_MAP.get((status or "").lower(), SubscriptionStatus.EXPIRED)


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    outcome: str  # applied | already_completed | ignored | no_user | duplicate
    user_id: Optional[str] = None


@dataclass
class _Lookups:
    """Gateway data fetched before the write transaction."""
    subscription: Optional[GatewaySubscription] = None
    invoice: Optional[GatewayInvoice] = None
    notes: Dict[str, Any] = field(default_factory=dict)


def _now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    return now if now.tzinfo else now.replace(tzinfo=timezone.utc)


# -- gateway lookups (non-fatal) ---------------------------------------------

def _lookup(gateway: PaymentGateway, event: WebhookEvent) -> _Lookups:
    lookups = _Lookups()
    try:
        if isinstance(event, CheckoutCompleted) and event.session.subscription_id:
            lookups.subscription = gateway.retrieve_subscription(event.session.subscription_id)
        elif (
            isinstance(event, SubscriptionUpdated)
            and event.subscription.status == "active"
            and event.subscription.latest_invoice_id
        ):
            lookups.invoice = gateway.retrieve_invoice(event.subscription.latest_invoice_id)
    except (GatewayUnavailableError, ExternalGatewayError, NotFoundError) as e:
        lookups.notes["lookup_error"] = e.message
        logger.warning(
            f"webhook.lookup_failed: {e.message}",
            extra={"event_id": event.event_id, "event_type": event.event_type, "error_code": e.code},
        )
    return lookups


# -- handlers (run inside the write transaction) -----------------------------

def _handle_checkout_completed(
    session: Session, event: CheckoutCompleted, lookups: _Lookups, now: datetime
) -> WebhookOutcome:
    if not event.session.subscription_id:
        logger.warning(
            "webhook.checkout_without_subscription",
            extra={"event_id": event.event_id, "transaction_id": event.session.session_id},
        )
        return WebhookOutcome(event.event_id, event.event_type, "ignored")
    result = apply_checkout_completion(
        session, event.session, lookups.subscription, now, source="webhook"
    )
    return WebhookOutcome(event.event_id, event.event_type, result.outcome, result.user_id)


def _handle_subscription_updated(
    session: Session, event: SubscriptionUpdated, lookups: _Lookups, now: datetime
) -> WebhookOutcome:
    gw_sub = event.subscription
    user_id = find_user_id_by_subscription(session, gw_sub.subscription_id)
    if user_id is None:
        return WebhookOutcome(event.event_id, event.event_type, "no_user")
    user = load_user(session, user_id, for_update=True)

    changes: Dict[str, Any] = {
        "status": map_gateway_status(gw_sub.status),
        "cancel_at_period_end": gw_sub.cancel_at_period_end,
    }
    if gw_sub.current_period_end is not None:
        changes["end_date"] = gw_sub.current_period_end
    mapped_plan = plan_for_price(gw_sub.price_ref)
    plan_changed = mapped_plan is not None and mapped_plan.plan_id != user.subscription.plan
    if plan_changed:
        changes["plan"] = mapped_plan.plan_id
    apply_changes(session, user, **changes)

    if gw_sub.status == "active":
        _append_renewal(session, user, gw_sub, lookups, now, upgrade=plan_changed)
    return WebhookOutcome(event.event_id, event.event_type, "applied", user_id)


def _is_initial_invoice(
    session: Session, gw_sub: GatewaySubscription, invoice: Optional[GatewayInvoice], invoice_id: Optional[str]
) -> bool:
    """True when the invoice is the first one, already charged by the subscription's checkout row.

    The checkout row is completed without an invoice id when the subscription
    lookup failed; the first invoice is then attached to it here.
    """
    row = ledger.checkout_without_invoice(session, gw_sub.subscription_id)
    if row is None:
        return False
    if invoice is not None and invoice.billing_reason:
        initial = invoice.billing_reason == "subscription_create"
    else:
        started = gw_sub.current_period_start
        initial = started is None or row.billing_period_start is None or started <= row.billing_period_start
    if initial and invoice_id:
        ledger.attach_invoice(session, row.transaction_id, invoice_id)
    return initial


def _append_renewal(session: Session, user, gw_sub: GatewaySubscription, lookups: _Lookups, now: datetime, *, upgrade: bool) -> None:
    invoice = lookups.invoice
    invoice_id = invoice.invoice_id if invoice else gw_sub.latest_invoice_id
    if ledger.has_completed_invoice(session, invoice_id):
        # Invoice already on the ledger (initial checkout or an earlier delivery)
        return
    if _is_initial_invoice(session, gw_sub, invoice, invoice_id):
        return

    plan = plan_for_price(gw_sub.price_ref) or PLANS.get(user.subscription.plan) or PLANS["free"]
    metadata: Dict[str, Any] = {"subscription_status": gw_sub.status}
    if invoice is not None:
        amount = invoice.amount_paid
        currency = invoice.currency or plan.currency
        paid_at = invoice.paid_at or now
        period_start = invoice.period_start or gw_sub.current_period_start
        if invoice.billing_reason:
            metadata["billing_reason"] = invoice.billing_reason
    else:
        amount = plan.amount
        currency = plan.currency
        paid_at = now
        period_start = gw_sub.current_period_start
        metadata["amount_source"] = "catalog"
        metadata.update(lookups.notes)

    ledger.insert_transaction(
        session,
        transaction_id=ledger.derived_transaction_id("renewal", gw_sub.subscription_id, now),
        user_id=user.user_id,
        user_email=user.email,
        user_name=user.display_name,
        amount=amount,
        currency=currency,
        plan=plan.plan_id,
        plan_name=plan.name,
        status=TransactionStatus.COMPLETED,
        type=TransactionType.UPGRADE if upgrade else TransactionType.RENEWAL,
        external_subscription_id=gw_sub.subscription_id,
        external_customer_id=gw_sub.customer_id,
        external_invoice_id=invoice_id,
        external_payment_intent_id=invoice.payment_intent_id if invoice else None,
        billing_period_start=period_start or now,
        billing_period_end=gw_sub.current_period_end,
        description=f"{plan.name} subscription renewal",
        metadata=metadata,
        paid_at=paid_at,
        created_at=now,
        updated_at=now,
    )


def _handle_subscription_deleted(
    session: Session, event: SubscriptionDeleted, lookups: _Lookups, now: datetime
) -> WebhookOutcome:
    gw_sub = event.subscription
    user_id = find_user_id_by_subscription(session, gw_sub.subscription_id)
    if user_id is None:
        return WebhookOutcome(event.event_id, event.event_type, "no_user")
    user = load_user(session, user_id, for_update=True)
    apply_changes(
        session,
        user,
        status=SubscriptionStatus.CANCELLED,
        end_date=now,
        cancel_at_period_end=False,
    )

    if ledger.has_cancellation(session, gw_sub.subscription_id):
        return WebhookOutcome(event.event_id, event.event_type, "applied", user_id)

    plan = PLANS.get(user.subscription.plan) or PLANS["free"]
    ledger.insert_transaction(
        session,
        transaction_id=ledger.derived_transaction_id("cancellation", gw_sub.subscription_id, now),
        user_id=user.user_id,
        user_email=user.email,
        user_name=user.display_name,
        amount=0,
        currency=plan.currency,
        plan=plan.plan_id,
        plan_name=plan.name,
        status=TransactionStatus.CANCELLED,
        type=TransactionType.CANCELLATION,
        external_subscription_id=gw_sub.subscription_id,
        external_customer_id=gw_sub.customer_id,
        description=f"{plan.name} subscription cancelled",
        metadata={"cancellation_reason": gw_sub.cancellation_reason or "unknown"},
        created_at=now,
        updated_at=now,
    )
    return WebhookOutcome(event.event_id, event.event_type, "applied", user_id)


def _handle_invoice_payment_failed(
    session: Session, event: InvoicePaymentFailed, lookups: _Lookups, now: datetime
) -> WebhookOutcome:
    invoice = event.invoice
    user_id = find_user_id_by_customer_or_subscription(session, invoice.customer_id, invoice.subscription_id)
    if user_id is None:
        logger.info(
            "webhook.invoice_failed.no_user",
            extra={"event_id": event.event_id, "event_type": event.event_type},
        )
        return WebhookOutcome(event.event_id, event.event_type, "no_user")
    user = load_user(session, user_id)

    # Subscription status is left alone: a failed attempt does not revoke access
    plan = PLANS.get(user.subscription.plan) or PLANS["free"]
    ledger.insert_transaction(
        session,
        transaction_id=ledger.derived_transaction_id("failed", invoice.invoice_id, now),
        user_id=user.user_id,
        user_email=user.email,
        user_name=user.display_name,
        amount=invoice.amount_due,
        currency=invoice.currency or plan.currency,
        plan=plan.plan_id,
        plan_name=plan.name,
        status=TransactionStatus.FAILED,
        type=TransactionType.RENEWAL,
        external_subscription_id=invoice.subscription_id,
        external_customer_id=invoice.customer_id,
        external_invoice_id=invoice.invoice_id,
        external_payment_intent_id=invoice.payment_intent_id,
        billing_period_start=invoice.period_start,
        billing_period_end=invoice.period_end,
        description=f"{plan.name} renewal payment failed",
        metadata={"attempt_count": invoice.attempt_count},
        failed_at=now,
        created_at=now,
        updated_at=now,
    )
    return WebhookOutcome(event.event_id, event.event_type, "applied", user_id)


def _handle_unhandled(session: Session, event: UnhandledEvent, lookups: _Lookups, now: datetime) -> WebhookOutcome:
    return WebhookOutcome(event.event_id, event.event_type, "ignored")


HANDLERS: Dict[type, Callable[..., WebhookOutcome]] = {
    CheckoutCompleted: _handle_checkout_completed,
    SubscriptionUpdated: _handle_subscription_updated,
    SubscriptionDeleted: _handle_subscription_deleted,
    InvoicePaymentFailed: _handle_invoice_payment_failed,
    UnhandledEvent: _handle_unhandled,
}


# -- event-id bookkeeping ----------------------------------------------------

def _already_processed(event_id: str) -> bool:
    with get_db_session() as session:
        processed = session.execute(
            select(billing_events.c.processed).where(billing_events.c.event_id == event_id)
        ).scalar()
    return bool(processed)


def _claim_event(session: Session, event: WebhookEvent, payload_hash: str) -> bool:
    """Record the event id inside the handler's transaction. False if already processed."""
    existing = session.execute(
        select(billing_events.c.processed).where(billing_events.c.event_id == event.event_id)
    ).first()
    if existing is None:
        session.execute(
            insert(billing_events).values(
                event_id=event.event_id,
                event_type=event.event_type,
                payload_hash=payload_hash,
                processed=False,
            )
        )
        return True
    if existing.processed:
        return False
    # Earlier attempt failed; this redelivery re-runs it
    result = session.execute(
        update(billing_events)
        .where(billing_events.c.event_id == event.event_id, billing_events.c.processed.is_(False))
        .values(error=None)
    )
    return result.rowcount == 1


def _mark_processed(session: Session, event_id: str, outcome: str, now: datetime) -> None:
    session.execute(
        update(billing_events)
        .where(billing_events.c.event_id == event_id)
        .values(processed=True, processed_at=now, outcome=outcome, error=None)
    )


def _record_failure(event: WebhookEvent, payload_hash: str, error: str) -> None:
    """Best-effort error note for operators; the gateway retry is what matters."""
    try:
        with get_db_session() as session:
            result = session.execute(
                update(billing_events)
                .where(billing_events.c.event_id == event.event_id)
                .values(error=error[:2000])
            )
            if result.rowcount == 0:
                session.execute(
                    insert(billing_events).values(
                        event_id=event.event_id,
                        event_type=event.event_type,
                        payload_hash=payload_hash,
                        processed=False,
                        error=error[:2000],
                    )
                )
    except SQLAlchemyError:
        logger.error(
            "webhook.failure_record_failed",
            exc_info=True,
            extra={"event_id": event.event_id, "event_type": event.event_type},
        )


def _lock_key(event: WebhookEvent) -> str:
    """Serialize on the affected user where it can be known up front."""
    try:
        with get_db_session() as session:
            if isinstance(event, CheckoutCompleted):
                user_id, _ = resolve_checkout_user(event.session, session)
            elif isinstance(event, (SubscriptionUpdated, SubscriptionDeleted)):
                user_id = find_user_id_by_subscription(session, event.subscription.subscription_id)
            elif isinstance(event, InvoicePaymentFailed):
                user_id = find_user_id_by_customer_or_subscription(
                    session, event.invoice.customer_id, event.invoice.subscription_id
                )
            else:
                user_id = None
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to read user for webhook {event.event_id}") from e
    return f"user:{user_id}" if user_id else f"event:{event.event_id}"


# -- entry point -------------------------------------------------------------

def process_webhook(
    gateway: PaymentGateway,
    payload: bytes,
    signature: Optional[str],
    now: Optional[datetime] = None,
) -> WebhookOutcome:
    """Verify, deduplicate and apply one webhook delivery.

    Raises:
        WebhookSignatureError: signature or envelope rejected (400, nothing applied)
        PersistenceError: local write failed (500, the gateway will redeliver)
    """
    now = _now(now)
    envelope = gateway.construct_event(payload, signature)
    payload_hash = envelope.payload_hash or hashlib.sha256(payload).hexdigest()
    try:
        event = parse_event(envelope)
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Malformed {envelope.event_type} event: {e}")

    if _already_processed(event.event_id):
        webhook_events_total.inc(labels={"event_type": event.event_type, "outcome": "duplicate"})
        log_event("info", "webhook.duplicate", event_id=event.event_id, event_type=event.event_type)
        return WebhookOutcome(event.event_id, event.event_type, "duplicate")

    lookups = _lookup(gateway, event)
    handler = HANDLERS[type(event)]

    try:
        with user_locks.hold(_lock_key(event)):
            with get_db_session() as session:
                if not _claim_event(session, event, payload_hash):
                    outcome = WebhookOutcome(event.event_id, event.event_type, "duplicate")
                else:
                    outcome = handler(session, event, lookups, now)
                    _mark_processed(session, event.event_id, outcome.outcome, now)
    except IntegrityError as e:
        if _already_processed(event.event_id):
            # Concurrent delivery of the same event won the race
            outcome = WebhookOutcome(event.event_id, event.event_type, "duplicate")
        else:
            _fail(event, payload_hash, e)
    except SQLAlchemyError as e:
        _fail(event, payload_hash, e)

    webhook_events_total.inc(labels={"event_type": event.event_type, "outcome": outcome.outcome})
    log_event(
        "info",
        f"webhook.{outcome.outcome}",
        user_id=outcome.user_id,
        event_id=event.event_id,
        event_type=event.event_type,
    )
    return outcome


def _fail(event: WebhookEvent, payload_hash: str, error: Exception) -> None:
    webhook_events_total.inc(labels={"event_type": event.event_type, "outcome": "error"})
    log_event(
        "error",
        "webhook.persistence_failed",
        event_id=event.event_id,
        event_type=event.event_type,
        error_code=PersistenceError.code,
        extra={"error": error},
    )
    _record_failure(event, payload_hash, f"{type(error).__name__}: {error}")
    raise PersistenceError(f"Failed to persist webhook {event.event_id}; retry delivery") from error
