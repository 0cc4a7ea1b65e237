"""
Webhook event variants.

The gateway delivers a fixed set of event type strings; each one we act on
becomes its own frozen dataclass, and everything else is UnhandledEvent.
"""
from dataclasses import dataclass
from typing import Callable, Dict, Union

from quillpass.features.billing.gateway import (
    GatewayCheckoutSession,
    GatewayEvent,
    GatewayInvoice,
    GatewaySubscription,
)


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    session: GatewayCheckoutSession
    event_type: str = "checkout.session.completed"


@dataclass(frozen=True)
class SubscriptionUpdated:
    event_id: str
    subscription: GatewaySubscription
    event_type: str = "customer.subscription.updated"


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str
    subscription: GatewaySubscription
    event_type: str = "customer.subscription.deleted"


@dataclass(frozen=True)
class InvoicePaymentFailed:
    event_id: str
    invoice: GatewayInvoice
    event_type: str = "invoice.payment_failed"


@dataclass(frozen=True)
class UnhandledEvent:
    event_id: str
    event_type: str


WebhookEvent = Union[
    CheckoutCompleted,
    SubscriptionUpdated,
    SubscriptionDeleted,
    InvoicePaymentFailed,
    UnhandledEvent,
]

_PARSERS: Dict[str, Callable[[GatewayEvent], WebhookEvent]] = {
    "checkout.session.completed": lambda e: CheckoutCompleted(
        event_id=e.event_id, session=GatewayCheckoutSession.from_payload(e.data)
    ),
    "customer.subscription.updated": lambda e: SubscriptionUpdated(
        event_id=e.event_id, subscription=GatewaySubscription.from_payload(e.data)
    ),
    "customer.subscription.deleted": lambda e: SubscriptionDeleted(
        event_id=e.event_id, subscription=GatewaySubscription.from_payload(e.data)
    ),
    "invoice.payment_failed": lambda e: InvoicePaymentFailed(
        event_id=e.event_id, invoice=GatewayInvoice.from_payload(e.data)
    ),
}


def parse_event(event: GatewayEvent) -> WebhookEvent:
    parser = _PARSERS.get(event.event_type)
    if parser is None:
        return UnhandledEvent(event_id=event.event_id, event_type=event.event_type)
    return parser(event)
