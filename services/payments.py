"""
Payment capability used when a booking's access fee is collected up front.

The booking code only sees ``process_payment(amount, currency, method,
reference) -> PaymentResult``; the installed gateway lives in
``app.extensions["payment_gateway"]`` so tests and other providers can
replace Stripe.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import stripe
from flask import current_app

from services.errors import PaymentError

logger = logging.getLogger(__name__)

# currencies Stripe bills in whole units
ZERO_DECIMAL_CURRENCIES = {"jpy", "krw", "vnd", "clp", "pyg", "ugx", "rwf", "xaf", "xof"}


@dataclass
class PaymentResult:
    success: bool
    transaction_id: Optional[str] = None
    error: Optional[str] = None


class StripeGateway:
    name = "STRIPE"

    def __init__(self, api_key=None):
        self.api_key = api_key

    @staticmethod
    def _smallest_unit(amount: Decimal, currency: str) -> int:
        if currency.lower() in ZERO_DECIMAL_CURRENCIES:
            return int(amount)
        return int((amount * 100).to_integral_value())

    def process_payment(self, amount, currency, method, reference) -> PaymentResult:
        if not self.api_key:
            return PaymentResult(False, error="Stripe secret key missing (STRIPE_SECRET_KEY)")

        stripe.api_key = self.api_key
        try:
            intent = stripe.PaymentIntent.create(
                amount=self._smallest_unit(Decimal(str(amount)), currency),
                currency=currency.lower(),
                payment_method=method,
                confirm=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                metadata={"reference": reference},
            )
        except stripe.StripeError as exc:
            # timeouts surface as APIConnectionError: a failed payment, never a silent success
            logger.warning("stripe payment failed for %s: %s", reference, exc)
            return PaymentResult(False, error=getattr(exc, "user_message", None) or str(exc))

        if intent.status != "succeeded":
            return PaymentResult(False, transaction_id=intent.id, error=f"Payment {intent.status}")
        return PaymentResult(True, transaction_id=intent.id)


def build_gateway(app):
    provider = (app.config.get("PAYMENT_PROVIDER") or "stripe").lower()
    if provider != "stripe":
        raise RuntimeError(f"Unsupported PAYMENT_PROVIDER {provider!r}")
    return StripeGateway(api_key=app.config.get("STRIPE_SECRET_KEY"))


def get_gateway():
    return current_app.extensions["payment_gateway"]


def charge(amount, currency, method, reference) -> PaymentResult:
    """Run a payment; any failure raises PaymentError."""
    gateway = get_gateway()
    try:
        result = gateway.process_payment(amount, currency, method, reference)
    except TimeoutError:
        result = PaymentResult(False, error="Payment provider timed out")
    if not result.success:
        raise PaymentError("Payment processing failed", reason=result.error)
    return result
