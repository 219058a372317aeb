"""
Thin wrapper around the Stripe SDK.

Everything that talks to Stripe goes through this module so the rest of the
code base (and the tests) never touch ``stripe`` directly.
"""
import json
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional

import stripe

from .config import settings

logger = logging.getLogger("tourhub.payments")

stripe.api_key = settings.STRIPE_SECRET_KEY

StripeError = stripe.StripeError
SignatureVerificationError = stripe.SignatureVerificationError


def to_minor_units(amount: Decimal) -> int:
    # Stripe expects unit_amount in cents
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def create_checkout_session(
        amount: Decimal,
        product_name: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
):
    """
    Creates a one-off Checkout Session for exactly ``amount``.
    The metadata is echoed back on the webhook so settlement can find its rows.
    """
    return stripe.checkout.Session.create(
        payment_method_types=["card"],
        line_items=[{
            "price_data": {
                "currency": settings.CURRENCY,
                "product_data": {"name": product_name[:100]},
                "unit_amount": to_minor_units(amount),
            },
            "quantity": 1,
        }],
        mode="payment",
        success_url=success_url,
        cancel_url=cancel_url,
        customer_email=customer_email,
        metadata=metadata,
    )


def retrieve_checkout_session(session_id: str):
    return stripe.checkout.Session.retrieve(session_id)


def construct_event(payload: bytes, sig_header: Optional[str]) -> dict:
    """
    Verifies the Stripe-Signature header and returns the event as a plain dict.
    Raises SignatureVerificationError or ValueError on a bad payload.
    """
    if not sig_header:
        raise ValueError("Missing Stripe-Signature header")
    stripe.Webhook.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    return json.loads(payload)


def create_transfer(amount: Decimal, destination: str, payout_id: int) -> str:
    transfer = stripe.Transfer.create(
        amount=to_minor_units(amount),
        currency=settings.CURRENCY,
        destination=destination,
        metadata={"payoutId": str(payout_id)},
        idempotency_key=f"payout-{payout_id}",
    )
    return transfer.id


def create_refund(payment_intent: str, payment_id: int) -> str:
    refund = stripe.Refund.create(
        payment_intent=payment_intent,
        metadata={"paymentId": str(payment_id)},
        idempotency_key=f"refund-{payment_id}",
    )
    logger.info(f"Refund {refund.id} issued for payment {payment_id}")
    return refund.id
