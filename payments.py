"""Payment processing service.

Integrates with Stripe for card payments: payment intents are opened at
checkout, cancelled when the checkout transaction aborts, and resolved later
through signed webhook events.
"""
import logging
from dataclasses import dataclass
from typing import Optional

import stripe

import config
from errors import PaymentProcessorError

logger = logging.getLogger(__name__)

PAYMENT_STATUS_BY_EVENT = {
    "payment_intent.succeeded": "paid",
    "payment_intent.payment_failed": "failed",
    "charge.refunded": "refunded",
}


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    client_secret: str


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


def intent_shipping(address: dict) -> dict:
    return {
        "name": address["full_name"],
        "phone": address.get("phone_number"),
        "address": {
            "line1": address["street_address"],
            "line2": address.get("apartment") or "",
            "city": address["city"],
            "state": address.get("state") or "",
            "country": address["country"],
            "postal_code": address["postal_code"],
        },
    }


class StripeGateway:
    """Thin wrapper over the Stripe client."""

    def __init__(self, api_key: str = None, webhook_secret: str = None, currency: str = None):
        self.api_key = api_key if api_key is not None else config.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret if webhook_secret is not None else config.STRIPE_WEBHOOK_SECRET
        self.currency = currency or config.PAYMENT_CURRENCY

    def create_intent(self, amount: float, shipping: dict, metadata: Optional[dict] = None) -> PaymentIntent:
        """Open a card payment intent for amount (major units)."""
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=to_minor_units(amount),
                currency=self.currency,
                payment_method_types=["card"],
                shipping=shipping,
                metadata={k: str(v) for k, v in (metadata or {}).items() if v is not None},
            )
        except stripe.StripeError as e:
            raise PaymentProcessorError(e.user_message or str(e)) from e
        return PaymentIntent(id=intent.id, client_secret=intent.client_secret)

    def cancel_intent(self, intent_id: str):
        try:
            stripe.PaymentIntent.cancel(intent_id, api_key=self.api_key)
        except stripe.StripeError as e:
            raise PaymentProcessorError(e.user_message or str(e)) from e

    def construct_event(self, payload: bytes, signature: str):
        """Verify a webhook body and return the parsed event.

        Raises ValueError for an unparsable body and
        stripe.SignatureVerificationError for a bad signature.
        """
        return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)


def event_payment_update(event) -> Optional[tuple]:
    """Map a webhook event to (payment_intent_id, payment_status).

    Returns None for event types that do not move payment status.
    """
    status = PAYMENT_STATUS_BY_EVENT.get(event["type"])
    if status is None:
        return None
    obj = event["data"]["object"]
    intent_id = obj["payment_intent"] if event["type"] == "charge.refunded" else obj["id"]
    if not intent_id:
        return None
    return intent_id, status


_gateway = None


def get_gateway():
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway()
    return _gateway
