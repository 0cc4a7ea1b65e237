"""
Billing service.

Coordinates:
- Gateway selection (Stripe when configured)
- Checkout initiation and its pending ledger row

Webhook handling lives in webhooks.py, synchronous reconciliation in reconcile.py.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy.exc import SQLAlchemyError

from quillpass.core.config import settings
from quillpass.core.database import get_db_session
from quillpass.core.errors import BillingDisabledError, GatewayUnavailableError, PersistenceError
from quillpass.core.logging import log_event
from quillpass.core.metrics import checkout_sessions_total
from quillpass.features.billing import ledger
from quillpass.features.billing.gateway import PaymentGateway
from quillpass.features.plans.service import purchasable
from quillpass.models.transaction import TransactionStatus, TransactionType
from quillpass.models.user import User

logger = logging.getLogger("quillpass")


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_gateway() -> PaymentGateway:
    """FastAPI dependency: the configured payment gateway.

    Raises:
        BillingDisabledError: STRIPE_SECRET_KEY is not set (503)
    """
    if not billing_enabled():
        raise BillingDisabledError("Billing is disabled: STRIPE_SECRET_KEY is not configured")
    from quillpass.features.billing.stripe_gateway import StripeGateway
    return StripeGateway()


@dataclass(frozen=True)
class CheckoutResult:
    checkout_url: str
    transaction_id: str


def checkout_urls(client_url: Optional[str] = None):
    base = (client_url or settings.CLIENT_URL).rstrip("/")
    return (
        f"{base}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
        f"{base}/payment/cancel",
    )


def start_checkout(
    gateway: PaymentGateway,
    user: User,
    plan_id: str,
    now: Optional[datetime] = None,
) -> CheckoutResult:
    """
    Open a gateway checkout session and record it as a pending ledger row.

    Entitlements do not change here; only a confirmed payment activates the plan.

    Raises:
        InvalidPlanError: unknown, free or unconfigured plan (400)
        GatewayUnavailableError: gateway failed or timed out; no row is written (503)
        PersistenceError: session created but the pending row could not be saved (500);
            checkout completion re-creates the row from session metadata
    """
    now = now or datetime.now(timezone.utc)
    plan = purchasable(plan_id)
    success_url, cancel_url = checkout_urls()

    try:
        checkout = gateway.create_checkout_session(
            price_ref=plan.price_ref,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={
                "user_id": user.user_id,
                "plan_id": plan.plan_id,
                "user_email": user.email or "",
            },
            customer_email=user.email,
            client_reference_id=user.user_id,
        )
    except GatewayUnavailableError:
        checkout_sessions_total.inc(labels={"plan": plan.plan_id, "outcome": "gateway_error"})
        log_event(
            "warning",
            "checkout.gateway_unavailable",
            user_id=user.user_id,
            error_code=GatewayUnavailableError.code,
        )
        raise

    try:
        with get_db_session() as session:
            ledger.insert_transaction(
                session,
                transaction_id=checkout.session_id,
                user_id=user.user_id,
                user_email=user.email,
                user_name=user.display_name,
                amount=plan.amount,
                currency=plan.currency,
                plan=plan.plan_id,
                plan_name=plan.name,
                status=TransactionStatus.PENDING,
                type=TransactionType.SUBSCRIPTION,
                external_session_id=checkout.session_id,
                description=f"{plan.name} subscription",
                metadata={"checkout_started_at": now.isoformat()},
                created_at=now,
                updated_at=now,
            )
    except SQLAlchemyError as e:
        checkout_sessions_total.inc(labels={"plan": plan.plan_id, "outcome": "persistence_error"})
        logger.error(
            "checkout.pending_row_failed",
            exc_info=True,
            extra={"user_id": user.user_id, "transaction_id": checkout.session_id},
        )
        raise PersistenceError("Checkout session created but could not be recorded; please retry") from e

    checkout_sessions_total.inc(labels={"plan": plan.plan_id, "outcome": "created"})
    log_event(
        "info",
        "checkout.created",
        user_id=user.user_id,
        transaction_id=checkout.session_id,
        extra={"plan_id": plan.plan_id},
    )
    return CheckoutResult(checkout_url=checkout.url or "", transaction_id=checkout.session_id)
