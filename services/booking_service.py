"""
Booking creation and payment.

``create_booking`` is the one transactional use case that turns a slot
request into a Booking row. The order is fixed: everything that can be
rejected without writing is checked first, then the service row is locked,
capacity is re-checked and a seat claimed, the access fee is charged and the
transaction committed. Any failure rolls back the whole thing. Side effects
(QR artifact, notifications) only run after commit and can never fail a
booking.
"""
import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from decimal import Decimal
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from models import db
from models.booking import Booking
from models.payment import Payment
from models.store import Store
from models.user import User
from services.access import ensure_can_view, ensure_owner_or_manager
from services.availability import (
    REASON_FULL,
    REASON_WINDOW,
    advance_window_violation,
    capacity_scope_for,
    check_slot,
    free_seat,
    lock_service,
    normalize_start_time,
    resolve_staff,
    to_local,
    to_utc_naive,
)
from services.errors import (
    InvalidStateError,
    NotFoundError,
    PaymentError,
    SlotUnavailableError,
    ValidationError,
)
from services.fees import booking_fee
from services.notifications import (
    PostCommitHooks,
    booking_context,
    get_artifact_generator,
    notify_parties,
)
from services.payments import charge, get_gateway
from services.service_config import load_zone, parse_id, resolve_target
from utils.audit import log_event
from utils.clock import utcnow

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6


@dataclass
class BookingResult:
    booking: Booking
    remaining_slots: int
    total_slots: int
    access_fee: Decimal
    payment: Optional[Payment] = None

    def to_dict(self):
        return {
            "booking": booking_to_dict(self.booking),
            "remainingSlots": self.remaining_slots,
            "totalSlots": self.total_slots,
            "accessFee": str(self.access_fee),
            "payment": payment_to_dict(self.payment) if self.payment is not None else None,
        }


def generate_verification_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def _iso(value):
    return value.isoformat() if value else None


def booking_to_dict(b: Booking) -> dict:
    tz = load_zone(b.store.timezone if b.store is not None else None)
    return {
        "id": b.id,
        "kind": b.booking_kind,
        "offer_id": b.offer_id,
        "service_id": b.service_id,
        "service_name": b.service.name if b.service is not None else None,
        "user_id": b.user_id,
        "store_id": b.store_id,
        "branch_id": b.branch_id,
        "staff_id": b.staff_id,
        "status": b.status,
        "payment_status": b.payment_status,
        "access_fee": str(b.access_fee) if b.access_fee is not None else None,
        "verification_code": b.verification_code,
        "qr_artifact": b.qr_artifact,
        "notes": b.notes,
        "start_time": _iso(b.start_time),
        "end_time": _iso(b.end_time),
        "local_start_time": to_local(b.start_time, tz).isoformat(),
        "local_end_time": to_local(b.end_time, tz).isoformat(),
        "confirmed_at": _iso(b.confirmed_at),
        "checked_in_at": _iso(b.checked_in_at),
        "service_end_time": _iso(b.service_end_time),
        "completed_at": _iso(b.completed_at),
        "completion_method": b.completion_method,
        "completion_details": b.completion_details,
        "actual_duration": b.actual_duration,
        "no_show_marked_at": _iso(b.no_show_marked_at),
        "no_show_reason": b.no_show_reason,
        "no_show_details": b.no_show_details,
        "cancelled_at": _iso(b.cancelled_at),
        "cancellation_reason": b.cancellation_reason,
        "cancelled_by": b.cancelled_by,
        "rescheduled_at": _iso(b.rescheduled_at),
        "reschedule_count": b.reschedule_count,
        "expired_at": _iso(b.expired_at),
        "created_at": _iso(b.created_at),
    }


def payment_to_dict(p: Payment) -> dict:
    return {
        "id": p.id,
        "provider": p.provider,
        "amount": str(p.amount),
        "currency": p.currency,
        "status": p.status,
        "transaction_id": p.transaction_id,
        "paid_at": _iso(p.paid_at),
    }


def _ensure_offer_bookable(target, now):
    offer = target.offer
    if offer is None:
        return
    if offer.status != "active":
        raise ValidationError("Offer is not active", offer_status=offer.status)
    if offer.expiration_date is not None and offer.expiration_date <= now:
        raise ValidationError("Offer has expired", expired_at=offer.expiration_date.isoformat())


def _ensure_service_bookable(target):
    service = target.service
    if service.status != "active" or not target.rules.booking_enabled:
        raise ValidationError("Online booking is disabled for this service")


def _payment_method(payment) -> Optional[str]:
    if not payment:
        return None
    if isinstance(payment, str):
        return payment
    return payment.get("method") or payment.get("payment_method")


def _record_payment(user_id, amount, method, reference, now) -> Payment:
    currency = current_app.config.get("CURRENCY", "KES")
    result = charge(amount, currency, method, reference)
    row = Payment(
        user_id=user_id,
        reference=reference,
        provider=getattr(get_gateway(), "name", "STRIPE"),
        method=method,
        amount=amount,
        currency=currency,
        status="PAID",
        transaction_id=result.transaction_id,
        paid_at=now,
    )
    db.session.add(row)
    db.session.flush()
    return row


def _attach_artifact(booking_id, payload):
    ref = get_artifact_generator().generate(booking_id, payload)
    if not ref:
        return
    Booking.query.filter(Booking.id == booking_id).update(
        {"qr_artifact": ref}, synchronize_session=False
    )
    db.session.commit()


def create_booking(entity_id, user_id, start_time, kind="offer", store_id=None, branch_id=None,
                   staff_id=None, notes=None, payment=None) -> BookingResult:
    try:
        target = resolve_target(entity_id, kind, branch_id=branch_id)
        store_id = parse_id(store_id, "store_id")
        if store_id is not None and target.service.store_id != store_id:
            raise NotFoundError("Store not found")

        start_utc = to_utc_naive(normalize_start_time(start_time, target.hours.tz))
        now = utcnow()

        _ensure_offer_bookable(target, now)
        _ensure_service_bookable(target)

        user = db.session.get(User, user_id)
        if user is None or not user.is_active:
            raise NotFoundError("User not found")

        violation = advance_window_violation(target.rules, start_utc, now)
        if violation:
            raise SlotUnavailableError(REASON_WINDOW, violation)

        staff = resolve_staff(target, staff_id)
        scope, capacity = capacity_scope_for(target, staff)

        lock_service(target.service.id)
        check = check_slot(target, start_utc, scope, capacity, now=now)
        if not check.available:
            raise SlotUnavailableError(
                check.reason,
                remaining_slots=check.remaining_slots,
                total_slots=check.total_slots,
            )
        seat = free_seat(scope, start_utc, capacity)
        if seat is None:
            raise SlotUnavailableError(REASON_FULL, remaining_slots=0, total_slots=capacity)

        fee = booking_fee(target)

        booking = Booking(
            booking_kind=target.kind,
            offer_id=target.offer.id if target.offer is not None else None,
            service_id=target.service.id,
            user_id=user.id,
            store_id=target.service.store_id,
            branch_id=target.branch.id if target.branch is not None else None,
            staff_id=staff.id if staff is not None else None,
            start_time=start_utc,
            end_time=start_utc + timedelta(minutes=target.rules.duration_minutes),
            capacity_scope=scope,
            seat_no=seat,
            status="pending",
            payment_status="unpaid",
            access_fee=fee,
            verification_code=generate_verification_code(),
            notes=(notes or "").strip() or None,
        )
        db.session.add(booking)
        # claim the seat before any money moves
        db.session.flush()

        payment_row = None
        method = _payment_method(payment)
        if fee <= 0:
            booking.payment_status = "not_required"
            if target.rules.auto_confirm_bookings:
                booking.status = "confirmed"
                booking.confirmed_at = now
        elif method:
            payment_row = _record_payment(user.id, fee, method, f"booking:{booking.id}", now)
            booking.payment_id = payment_row.id
            booking.payment_status = "paid"
            booking.status = "confirmed"
            booking.confirmed_at = now

        log_event("BOOKING_CREATE", user_id=user.id, entity="booking", entity_id=booking.id,
                  metadata={"kind": target.kind, "entity_id": target.entity_id, "start_time": start_utc,
                            "scope": scope, "status": booking.status, "access_fee": fee},
                  commit=False)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        # Unique constraint uq_booking_slot_seat: another request took the last seat
        log_event("BOOKING_FAIL_SLOT_FULL", user_id=user_id, entity=kind, entity_id=entity_id,
                  metadata={"start_time": start_time})
        raise SlotUnavailableError(REASON_FULL)
    except PaymentError as exc:
        db.session.rollback()
        log_event("BOOKING_FAIL_PAYMENT", user_id=user_id, entity=kind, entity_id=entity_id,
                  metadata={"start_time": start_time, "reason": exc.details.get("reason")})
        raise
    except Exception:
        db.session.rollback()
        raise

    logger.info("booking %s created (%s) for user %s at %s", booking.id, booking.status, user_id, start_utc)

    hooks = PostCommitHooks()
    hooks.add("qr_artifact", _attach_artifact, booking.id, {
        "code": booking.verification_code,
        "userId": user_id,
        "startTime": start_utc.isoformat(),
        "storeId": booking.store_id,
    })
    notify_parties(hooks, booking, "booking_created", booking_context(booking),
                   customer_kind="booking_created_customer", merchant_kind="booking_created_merchant")
    hooks.run()

    return BookingResult(
        booking=booking,
        remaining_slots=max(0, check.remaining_slots - 1),
        total_slots=capacity,
        access_fee=fee,
        payment=payment_row,
    )


def pay_for_booking(booking_id, actor, payment) -> BookingResult:
    """Collect the access fee of a pending booking and confirm it."""
    method = _payment_method(payment)
    if not method:
        raise ValidationError("payment method required")

    booking = db.session.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError("Booking not found")
    ensure_owner_or_manager(actor, booking)
    if booking.status != "pending" or booking.payment_status != "unpaid":
        raise InvalidStateError(
            f"Booking cannot be paid while {booking.status}/{booking.payment_status}",
            current_status=booking.status,
        )

    now = utcnow()
    fee = Decimal(str(booking.access_fee))
    try:
        # claim the transition first so a concurrent sweep cannot expire a paid booking
        claimed = Booking.query.filter(
            Booking.id == booking.id,
            Booking.status == "pending",
            Booking.payment_status == "unpaid",
        ).update({"status": "confirmed", "confirmed_at": now}, synchronize_session=False)
        if claimed == 0:
            db.session.rollback()
            booking = db.session.get(Booking, booking_id)
            raise InvalidStateError(f"Booking is already {booking.status}", current_status=booking.status)

        payment_row = _record_payment(booking.user_id, fee, method, f"booking:{booking.id}", now)
        Booking.query.filter(Booking.id == booking.id).update(
            {"payment_id": payment_row.id, "payment_status": "paid"}, synchronize_session=False
        )
        log_event("BOOKING_PAID", user_id=actor.id, entity="booking", entity_id=booking.id,
                  metadata={"payment_id": payment_row.id, "amount": fee}, commit=False)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    booking = db.session.get(Booking, booking_id)
    hooks = PostCommitHooks()
    notify_parties(hooks, booking, "booking_confirmed", booking_context(booking))
    hooks.run()
    return BookingResult(booking=booking, remaining_slots=0, total_slots=0, access_fee=fee, payment=payment_row)


def apply_payment_event(transaction_id, succeeded: bool, failure_reason=None):
    """Reconcile a provider webhook with our Payment row (idempotent)."""
    payment = Payment.query.filter_by(transaction_id=transaction_id).first()
    if payment is None:
        logger.info("payment event for unknown transaction %s", transaction_id)
        return None

    if succeeded:
        if payment.status == "PAID":
            return payment
        payment.status = "PAID"
        payment.paid_at = utcnow()
        booking = Booking.query.filter_by(payment_id=payment.id).first()
        if booking is not None and booking.status == "pending":
            Booking.query.filter(Booking.id == booking.id, Booking.status == "pending").update(
                {"status": "confirmed", "confirmed_at": payment.paid_at, "payment_status": "paid"},
                synchronize_session=False,
            )
        log_event("PAYMENT_PAID", entity="payment", entity_id=payment.id,
                  metadata={"transaction_id": transaction_id}, source="webhook", commit=False)
    else:
        if payment.status == "PAID":
            return payment
        payment.status = "FAILED"
        payment.failure_reason = (failure_reason or "")[:255] or None
        log_event("PAYMENT_FAILED", entity="payment", entity_id=payment.id,
                  metadata={"transaction_id": transaction_id, "reason": failure_reason},
                  source="webhook", commit=False)
    db.session.commit()
    return payment


def get_booking(booking_id, actor) -> Booking:
    booking = db.session.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError("Booking not found")
    ensure_can_view(actor, booking)
    return booking


def list_user_bookings(user_id, status=None):
    q = Booking.query.filter_by(user_id=user_id)
    if status:
        q = q.filter_by(status=status)
    return q.order_by(Booking.start_time.desc()).all()


def list_store_bookings(actor, store_id=None, status=None, day=None, limit=200):
    """Bookings of the stores the actor runs (any store for admins)."""
    q = Booking.query
    if not actor.has_role("ADMIN"):
        owned = [s.id for s in Store.query.filter_by(owner_user_id=actor.id).all()]
        q = q.filter(Booking.store_id.in_(owned))
    if store_id is not None:
        q = q.filter(Booking.store_id == store_id)
    if status:
        q = q.filter(Booking.status == status)
    if day is not None:
        # day boundaries in UTC; the listing is an overview, not a calendar
        start = datetime.combine(day, time.min)
        q = q.filter(Booking.start_time >= start, Booking.start_time < start + timedelta(days=1))
    return q.order_by(Booking.start_time.asc()).limit(limit).all()
