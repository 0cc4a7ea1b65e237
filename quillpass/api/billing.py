"""
Payment API routes.

- GET  /api/payment/plans: Plan catalog (public)
- POST /api/payment/checkout: Create checkout session
- GET  /api/payment/subscription: Effective plan, entitlements and quota
- GET  /api/payment/verify-session/{session_id}: Post-redirect verification
- POST /api/payment/cancel-subscription: Cancel at period end
- POST /api/payment/webhook: Stripe webhooks
"""
from datetime import datetime
from typing import Dict, List, Optional, Union
from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from quillpass.core.auth import get_current_user
from quillpass.features.billing.gateway import PaymentGateway
from quillpass.features.billing.reconcile import cancel_subscription, verify_session
from quillpass.features.billing.service import get_gateway, start_checkout
from quillpass.features.billing.webhooks import process_webhook
from quillpass.features.plans.service import list_plans
from quillpass.features.subscriptions.service import snapshot
from quillpass.features.usage.service import get_quota
from quillpass.models.subscription import Entitlements, SubscriptionSnapshot
from quillpass.models.user import User


router = APIRouter(prefix="/payment", tags=["billing"])


class PlanResponse(BaseModel):
    plan_id: str
    name: str
    amount: int
    currency: str
    duration_days: int
    features: List[str]
    purchasable: bool


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    plan_id: str = Field(..., min_length=1, max_length=50)


class CheckoutResponse(BaseModel):
    checkout_url: str
    transaction_id: str


class QuotaResponse(BaseModel):
    used: int
    limit: Union[int, str]
    remaining: Union[int, str]


class SubscriptionResponse(BaseModel):
    """What feature-gating surfaces read (content creation, ads, AI summaries)."""
    plan: str
    status: str
    is_active: bool
    end_date: Optional[datetime]
    cancel_at_period_end: bool
    features: List[str]
    entitlements: Entitlements
    quota: QuotaResponse


class VerifySessionResponse(BaseModel):
    cached: bool
    transaction_id: str
    subscription: SubscriptionSnapshot


class CancelResponse(BaseModel):
    message: str
    period_end: Optional[datetime]
    subscription: SubscriptionSnapshot


@router.get("/plans", response_model=List[PlanResponse])
def get_plans():
    return [
        PlanResponse(
            plan_id=p.plan_id,
            name=p.name,
            amount=p.amount,
            currency=p.currency,
            duration_days=p.duration_days,
            features=list(p.features),
            purchasable=p.is_paid and bool(p.price_ref),
        )
        for p in list_plans()
    ]


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    body: CheckoutRequest,
    user: User = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """
    Create a checkout session for a paid plan.

    Errors:
        400: Unknown, free or unconfigured plan
        503: Billing disabled, or gateway unavailable (retry)
    """
    result = start_checkout(gateway, user, body.plan_id)
    return CheckoutResponse(checkout_url=result.checkout_url, transaction_id=result.transaction_id)


@router.get("/subscription", response_model=SubscriptionResponse)
def get_subscription(user: User = Depends(get_current_user)):
    quota = get_quota(user.user_id)
    snap = snapshot(user)
    return SubscriptionResponse(
        plan=snap.plan,
        status=snap.status.value,
        is_active=snap.is_active,
        end_date=snap.end_date,
        cancel_at_period_end=snap.cancel_at_period_end,
        features=snap.features,
        entitlements=snap.entitlements,
        quota=QuotaResponse(**quota.to_payload()),
    )


@router.get("/verify-session/{session_id}", response_model=VerifySessionResponse)
def verify_checkout_session(
    session_id: str,
    user: User = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """
    Errors:
        400: Payment not completed
        403: Session belongs to another user
        503: Gateway unavailable (retry)
    """
    result = verify_session(gateway, session_id, user.user_id)
    return VerifySessionResponse(
        cached=result.cached,
        transaction_id=result.transaction_id,
        subscription=result.snapshot,
    )


@router.post("/cancel-subscription", response_model=CancelResponse)
def cancel(
    user: User = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_gateway),
):
    confirmation = cancel_subscription(gateway, user.user_id)
    return CancelResponse(
        message=confirmation.message,
        period_end=confirmation.period_end,
        subscription=confirmation.subscription,
    )


@router.post("/webhook")
async def handle_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    gateway: PaymentGateway = Depends(get_gateway),
) -> Dict[str, object]:
    """
    Handle Stripe webhook events.

    Raw body is required for signature verification. Every verified event is
    acknowledged, including types we do not act on.

    Errors:
        400: Invalid signature or payload (not applied)
        500: Local write failed (Stripe will redeliver)
    """
    body = await request.body()
    outcome = await run_in_threadpool(process_webhook, gateway, body, stripe_signature)
    return {"received": True, "event_id": outcome.event_id, "outcome": outcome.outcome}
