"""
Payment gateway protocol.

Defines the interface the billing flows use to talk to the payment gateway,
plus normalized value objects so business logic never touches raw gateway
payloads. Stripe lives in stripe_gateway.py; tests use an in-memory fake.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Epoch seconds to aware UTC datetime; None when missing or unparseable."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _as_id(value: Any) -> Optional[str]:
    """Gateway references arrive either as ids or as expanded objects."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return str(value)


@dataclass(frozen=True)
class GatewayCheckoutSession:
    session_id: str
    url: Optional[str] = None
    status: Optional[str] = None  # open, complete, expired
    payment_status: Optional[str] = None  # paid, unpaid, no_payment_required
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    payment_intent_id: Optional[str] = None
    invoice_id: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def paid(self) -> bool:
        return self.payment_status == "paid"

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "GatewayCheckoutSession":
        details = data.get("customer_details") or {}
        return cls(
            session_id=data["id"],
            url=data.get("url"),
            status=data.get("status"),
            payment_status=data.get("payment_status"),
            subscription_id=_as_id(data.get("subscription")),
            customer_id=_as_id(data.get("customer")),
            customer_email=data.get("customer_email") or details.get("email"),
            payment_intent_id=_as_id(data.get("payment_intent")),
            invoice_id=_as_id(data.get("invoice")),
            amount_total=data.get("amount_total"),
            currency=data.get("currency"),
            metadata={k: str(v) for k, v in (data.get("metadata") or {}).items()},
        )


@dataclass(frozen=True)
class GatewaySubscription:
    subscription_id: str
    status: str
    customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    latest_invoice_id: Optional[str] = None
    price_ref: Optional[str] = None
    cancellation_reason: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "GatewaySubscription":
        items = (data.get("items") or {}).get("data") or []
        first_item = items[0] if items else {}
        # Newer API versions report the period on the subscription item
        period_start = data.get("current_period_start") or first_item.get("current_period_start")
        period_end = data.get("current_period_end") or first_item.get("current_period_end")
        price = first_item.get("price") or {}
        return cls(
            subscription_id=data["id"],
            status=data.get("status") or "unknown",
            customer_id=_as_id(data.get("customer")),
            current_period_start=parse_timestamp(period_start),
            current_period_end=parse_timestamp(period_end),
            cancel_at_period_end=bool(data.get("cancel_at_period_end")),
            latest_invoice_id=_as_id(data.get("latest_invoice")),
            price_ref=_as_id(price) if price else None,
            cancellation_reason=(data.get("cancellation_details") or {}).get("reason"),
            metadata={k: str(v) for k, v in (data.get("metadata") or {}).items()},
        )


@dataclass(frozen=True)
class GatewayInvoice:
    invoice_id: str
    amount_paid: int = 0
    amount_due: int = 0
    currency: Optional[str] = None
    status: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    attempt_count: int = 0
    billing_reason: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "GatewayInvoice":
        transitions = data.get("status_transitions") or {}
        subscription = data.get("subscription")
        if subscription is None:
            # Newer API versions nest the subscription under parent details
            parent = (data.get("parent") or {}).get("subscription_details") or {}
            subscription = parent.get("subscription")
        return cls(
            invoice_id=data["id"],
            amount_paid=int(data.get("amount_paid") or 0),
            amount_due=int(data.get("amount_due") or 0),
            currency=data.get("currency"),
            status=data.get("status"),
            subscription_id=_as_id(subscription),
            customer_id=_as_id(data.get("customer")),
            payment_intent_id=_as_id(data.get("payment_intent")),
            paid_at=parse_timestamp(transitions.get("paid_at")),
            period_start=parse_timestamp(data.get("period_start")),
            period_end=parse_timestamp(data.get("period_end")),
            attempt_count=int(data.get("attempt_count") or 0),
            billing_reason=data.get("billing_reason"),
        )


@dataclass(frozen=True)
class GatewayEvent:
    """A verified webhook envelope: {id, type, data.object}."""
    event_id: str
    event_type: str
    data: Dict[str, Any]
    payload_hash: str = ""


class PaymentGateway(Protocol):
    """
    Protocol for payment gateways.

    Implementations must:
    - bound every network call with a timeout and not retry locally
    - raise GatewayUnavailableError for transient failures
    - raise NotFoundError when the referenced object does not exist
    - raise WebhookSignatureError when an inbound event fails verification
    """

    def create_checkout_session(
        self,
        *,
        price_ref: str,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        customer_email: Optional[str] = None,
        client_reference_id: Optional[str] = None,
    ) -> GatewayCheckoutSession:
        ...

    def retrieve_session(self, session_id: str) -> GatewayCheckoutSession:
        ...

    def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        ...

    def retrieve_invoice(self, invoice_id: str) -> GatewayInvoice:
        ...

    def cancel_at_period_end(self, subscription_id: str) -> GatewaySubscription:
        """Schedule cancellation at the end of the current period."""
        ...

    def construct_event(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        """Verify the signature header and parse the envelope."""
        ...
