"""
Best-effort side channels: email/push notifications and QR verification
artifacts. Nothing here may ever fail a booking; callers queue work on a
``PostCommitHooks`` and it only runs once the booking transaction has
committed.
"""
import base64
import io
import json
import logging

import qrcode
from flask import current_app

from models import db
from models.notification import Notification
from models.user import User
from utils.emailer import send_email

logger = logging.getLogger(__name__)

TEMPLATES = {
    "booking_created_customer": (
        "Your booking is received",
        "Hi {customer}, your booking for {service} at {store} on {when} is {status}. "
        "Access fee: {access_fee}. Verification code: {code}.",
    ),
    "booking_created_merchant": (
        "New booking",
        "{customer} booked {service} on {when} (booking #{booking_id}).",
    ),
    "booking_confirmed": (
        "Booking confirmed",
        "Your booking #{booking_id} for {service} on {when} is confirmed.",
    ),
    "booking_cancelled": (
        "Booking cancelled",
        "Booking #{booking_id} for {service} on {when} was cancelled. Reason: {reason}",
    ),
    "booking_rescheduled": (
        "Booking rescheduled",
        "Booking #{booking_id} for {service} moved from {old_when} to {when}. Reason: {reason}",
    ),
    "booking_checked_in": (
        "Checked in",
        "Booking #{booking_id} for {service} is in progress.",
    ),
    "booking_completed": (
        "Service completed",
        "Booking #{booking_id} for {service} is complete. Thanks for visiting {store}!",
    ),
    "booking_no_show": (
        "Missed appointment",
        "Booking #{booking_id} for {service} on {when} was marked as a no-show. {reason}",
    ),
    "booking_expired": (
        "Booking expired",
        "Booking #{booking_id} for {service} on {when} expired before payment was received.",
    ),
}


class _SafeDict(dict):
    def __missing__(self, key):
        return ""


def render(template_kind: str, context: dict):
    subject, body = TEMPLATES[template_kind]
    values = _SafeDict(context or {})
    return subject.format_map(values), body.format_map(values)


class Notifier:
    """notify(channel, recipient_id, template_kind, context); fire-and-forget."""

    def notify(self, channel: str, recipient_id, template_kind: str, context: dict):
        subject, body = render(template_kind, context)
        if channel == "email":
            user = db.session.get(User, recipient_id)
            if user is None:
                logger.info("notify: no user %s for %s", recipient_id, template_kind)
                return False
            ok, err = send_email(user.email, subject, body)
            if not ok:
                logger.info("notify: email %s to user %s not sent: %s", template_kind, recipient_id, err)
            return ok
        if channel == "push":
            db.session.add(Notification(
                recipient_user_id=recipient_id,
                channel="push",
                kind=template_kind,
                title=subject,
                body=body,
                context_json=context,
            ))
            try:
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise
            return True
        raise ValueError(f"Unknown notification channel {channel!r}")


class QRArtifactGenerator:
    """PNG QR code for front-desk verification, returned as a data URL."""

    def generate(self, booking_id, payload: dict):
        if not current_app.config.get("QR_ARTIFACTS_ENABLED", True):
            return None
        img = qrcode.make(json.dumps({"bookingId": booking_id, **payload}, default=str))
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("utf-8")


def get_notifier():
    return current_app.extensions["notifier"]


def get_artifact_generator():
    return current_app.extensions["artifact_generator"]


class PostCommitHooks:
    """Side effects queued during a use case, run only after commit.

    Each hook is isolated: a failure is logged and the next hook still runs.
    """

    def __init__(self):
        self._hooks = []

    def add(self, label, fn, *args, **kwargs):
        self._hooks.append((label, fn, args, kwargs))

    def __len__(self):
        return len(self._hooks)

    def run(self):
        for label, fn, args, kwargs in self._hooks:
            try:
                fn(*args, **kwargs)
            except Exception:
                logger.exception("post-commit side effect %s failed", label)
                db.session.rollback()
        self._hooks = []


def notify_parties(hooks: PostCommitHooks, booking, template_kind: str, context: dict,
                   customer_kind=None, merchant_kind=None):
    """Queue email + push to the customer and the store's merchant."""
    customer_kind = customer_kind or template_kind
    merchant_kind = merchant_kind or template_kind
    merchant_id = booking.store.owner_user_id if booking.store is not None else None

    def _send(channel, recipient_id, kind):
        get_notifier().notify(channel, recipient_id, kind, context)

    for channel in ("email", "push"):
        hooks.add(f"{channel}:{customer_kind}:customer", _send, channel, booking.user_id, customer_kind)
        if merchant_id is not None:
            hooks.add(f"{channel}:{merchant_kind}:merchant", _send, channel, merchant_id, merchant_kind)


def booking_context(booking, **extra) -> dict:
    """Template values for a booking; times shown store-local."""
    from services.availability import to_local
    from services.service_config import load_zone

    store = booking.store
    tz = load_zone(store.timezone if store is not None else None)
    user = booking.user
    ctx = {
        "booking_id": booking.id,
        "customer": (user.full_name or user.email) if user is not None else "Customer",
        "service": booking.service.name if booking.service is not None else "Service",
        "store": store.name if store is not None else "the store",
        "when": to_local(booking.start_time, tz).strftime("%b %d, %Y at %I:%M %p"),
        "status": booking.status,
        "access_fee": str(booking.access_fee),
        "code": booking.verification_code,
    }
    ctx.update(extra)
    return ctx
