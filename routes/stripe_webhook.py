import logging

import stripe
from flask import Blueprint, current_app, request, jsonify

from services.booking_service import apply_payment_event

logger = logging.getLogger(__name__)

webhook_bp = Blueprint("webhook", __name__, url_prefix="/webhooks")


@webhook_bp.post("/stripe")
def stripe_webhook():
    endpoint_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    sig_header = request.headers.get("Stripe-Signature")
    payload = request.data

    if not endpoint_secret:
        return jsonify(error="Webhook secret not configured"), 500

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, endpoint_secret)
    except (ValueError, stripe.SignatureVerificationError):
        return jsonify(error="Invalid webhook signature"), 400

    event_type = event["type"]
    if event_type in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        intent = event["data"]["object"]
        failure = None
        if event_type == "payment_intent.payment_failed":
            last_error = intent.get("last_payment_error") or {}
            failure = last_error.get("message") or "Payment failed"
        payment = apply_payment_event(intent["id"], event_type == "payment_intent.succeeded", failure)
        logger.info("stripe %s for %s -> payment %s", event_type, intent["id"],
                    payment.id if payment is not None else None)

    return jsonify(received=True), 200
