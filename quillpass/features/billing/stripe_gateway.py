"""
Stripe implementation of the PaymentGateway protocol.

Every call is bounded by GATEWAY_TIMEOUT_SECONDS and never retried locally;
Stripe's own webhook retry schedule is the retry mechanism.
"""
import hashlib
import json
import logging
from typing import Any, Callable, Dict, Optional, TypeVar
import stripe

from quillpass.core.config import settings
from quillpass.core.errors import (
    BillingDisabledError,
    ExternalGatewayError,
    GatewayUnavailableError,
    NotFoundError,
    WebhookSignatureError,
)
from quillpass.core.metrics import gateway_errors_total
from quillpass.features.billing.gateway import (
    GatewayCheckoutSession,
    GatewayEvent,
    GatewayInvoice,
    GatewaySubscription,
)

logger = logging.getLogger("quillpass")

T = TypeVar("T")


def _plain(obj: Any) -> Dict[str, Any]:
    """StripeObject -> plain dict (its str() is the JSON representation)."""
    if obj is None:
        return {}
    return json.loads(str(obj))


class StripeGateway:
    """Stripe implementation of PaymentGateway."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.timeout_seconds = timeout_seconds or settings.GATEWAY_TIMEOUT_SECONDS

        if not self.secret_key:
            raise BillingDisabledError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout_seconds)

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except stripe.InvalidRequestError as e:
            gateway_errors_total.inc(labels={"operation": operation})
            if getattr(e, "http_status", None) == 404:
                raise NotFoundError(f"Stripe object not found during {operation}")
            raise ExternalGatewayError(f"Stripe rejected {operation}: {e.user_message or e}")
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            gateway_errors_total.inc(labels={"operation": operation})
            logger.warning(f"[stripe] {operation} unavailable: {e}")
            raise GatewayUnavailableError(f"Payment gateway unavailable during {operation}; retry later")
        except stripe.StripeError as e:
            gateway_errors_total.inc(labels={"operation": operation})
            status = getattr(e, "http_status", None)
            logger.warning(f"[stripe] {operation} failed (status={status}): {e}")
            if status is None or status >= 500:
                raise GatewayUnavailableError(f"Payment gateway error during {operation}; retry later")
            raise ExternalGatewayError(f"Stripe error during {operation}")

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
        params: Dict[str, Any] = {
            "payment_method_types": ["card"],
            "line_items": [{"price": price_ref, "quantity": 1}],
            "mode": "subscription",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        if customer_email:
            params["customer_email"] = customer_email
        if client_reference_id:
            params["client_reference_id"] = client_reference_id
        session = self._call("create_checkout_session", lambda: stripe.checkout.Session.create(**params))
        return GatewayCheckoutSession.from_payload(_plain(session))

    def retrieve_session(self, session_id: str) -> GatewayCheckoutSession:
        session = self._call("retrieve_session", lambda: stripe.checkout.Session.retrieve(session_id))
        return GatewayCheckoutSession.from_payload(_plain(session))

    def retrieve_subscription(self, subscription_id: str) -> GatewaySubscription:
        subscription = self._call(
            "retrieve_subscription", lambda: stripe.Subscription.retrieve(subscription_id)
        )
        return GatewaySubscription.from_payload(_plain(subscription))

    def retrieve_invoice(self, invoice_id: str) -> GatewayInvoice:
        invoice = self._call("retrieve_invoice", lambda: stripe.Invoice.retrieve(invoice_id))
        return GatewayInvoice.from_payload(_plain(invoice))

    def cancel_at_period_end(self, subscription_id: str) -> GatewaySubscription:
        subscription = self._call(
            "cancel_subscription",
            lambda: stripe.Subscription.modify(subscription_id, cancel_at_period_end=True),
        )
        return GatewaySubscription.from_payload(_plain(subscription))

    def construct_event(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        """Verify Stripe webhook signature and return the parsed envelope."""
        if not self.webhook_secret:
            raise BillingDisabledError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature:
            raise WebhookSignatureError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            raise WebhookSignatureError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid signature: {e}")

        envelope = json.loads(payload)
        return GatewayEvent(
            event_id=envelope["id"],
            event_type=envelope["type"],
            data=(envelope.get("data") or {}).get("object") or {},
            payload_hash=hashlib.sha256(payload).hexdigest(),
        )
