"""
Booking lifecycle state machine.

    pending -> confirmed -> checked_in -> completed
    pending/confirmed/checked_in -> cancelled
    pending/confirmed -> no_show   (sweeper, or merchant override)
    pending -> expired             (sweeper, unpaid past its deadline)

Every status change is a conditional update keyed on the status we read
(``UPDATE ... WHERE id = ? AND status = ?``). If another transaction got
there first the update touches no row and the operation reports
``applied=False`` instead of overwriting the winner.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError

from models import db
from models.booking import Booking, TERMINAL_STATUSES
from models.payment import Payment
from services.access import (
    ensure_manager,
    ensure_owner_or_manager,
    is_booking_owner,
    is_store_manager,
)
from services.availability import (
    REASON_FULL,
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
    PermissionDenied,
    SlotUnavailableError,
    ValidationError,
)
from services.notifications import PostCommitHooks, booking_context, notify_parties
from services.service_config import load_zone, resolve_target, rules_for
from utils.audit import log_event
from utils.clock import utcnow

logger = logging.getLogger(__name__)

TRANSITIONS = {
    "pending": {"confirmed", "cancelled", "no_show", "expired"},
    "confirmed": {"checked_in", "cancelled", "no_show"},
    "checked_in": {"completed", "cancelled"},
}
RESCHEDULABLE = ("pending", "confirmed")


@dataclass
class TransitionResult:
    booking: Booking
    applied: bool
    from_status: str
    to_status: str
    message: Optional[str] = None

    def to_dict(self):
        from services.booking_service import booking_to_dict
        return {
            "applied": self.applied,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "message": self.message,
            "booking": booking_to_dict(self.booking),
        }


def ensure_transition(booking: Booking, new_status: str):
    current = booking.status
    if current in TERMINAL_STATUSES:
        raise InvalidStateError(
            f"Booking is already {current}; no further changes are possible",
            current_status=current,
        )
    if new_status not in TRANSITIONS.get(current, set()):
        raise InvalidStateError(
            f"Cannot change booking from {current} to {new_status}",
            current_status=current,
        )


def _load(booking_id) -> Booking:
    booking = db.session.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError("Booking not found")
    return booking


def _conditional_update(booking_id, expected_status, values, **extra_filters) -> int:
    q = Booking.query.filter(Booking.id == booking_id, Booking.status == expected_status)
    for column, value in extra_filters.items():
        q = q.filter(getattr(Booking, column) == value)
    return q.update(values, synchronize_session=False)


def _transition(booking, new_status, values, audit_action, actor_id=None, metadata=None,
                notify_kind=None, notify_extra=None, **extra_filters) -> TransitionResult:
    """Apply one guarded status change, commit, then notify."""
    from_status = booking.status
    booking_id = booking.id
    values = dict(values, status=new_status)
    try:
        rows = _conditional_update(booking_id, from_status, values, **extra_filters)
        if rows == 0:
            db.session.rollback()
            current = _load(booking_id)
            logger.info("booking %s: %s -> %s lost to concurrent change (now %s)",
                        booking_id, from_status, new_status, current.status)
            return TransitionResult(current, False, from_status, new_status,
                                    message=f"Booking is now {current.status}")
        log_event(audit_action, user_id=actor_id, entity="booking", entity_id=booking_id,
                  metadata=dict(metadata or {}, from_status=from_status, to_status=new_status),
                  commit=False)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    booking = _load(booking_id)
    if notify_kind:
        hooks = PostCommitHooks()
        notify_parties(hooks, booking, notify_kind, booking_context(booking, **(notify_extra or {})))
        hooks.run()
    return TransitionResult(booking, True, from_status, new_status)


# ---------- operations ----------

def confirm_booking(booking_id, actor=None) -> TransitionResult:
    """pending -> confirmed. ``actor=None`` is the payment system itself."""
    booking = _load(booking_id)
    if actor is not None:
        ensure_manager(actor, booking)
    ensure_transition(booking, "confirmed")
    return _transition(
        booking, "confirmed", {"confirmed_at": utcnow()}, "BOOKING_CONFIRM",
        actor_id=actor.id if actor is not None else None,
        notify_kind="booking_confirmed",
    )


def check_in(booking_id, actor, verification_code=None) -> TransitionResult:
    booking = _load(booking_id)
    ensure_transition(booking, "checked_in")
    rules = rules_for(booking.service)
    now = utcnow()

    if is_store_manager(actor, booking.store):
        if verification_code and verification_code.strip().upper() != (booking.verification_code or ""):
            raise ValidationError("Verification code does not match")
        method = "staff"
    elif is_booking_owner(actor, booking):
        if not rules.allow_early_checkin:
            raise PermissionDenied("Self check-in is not enabled for this service")
        opens = booking.start_time - timedelta(minutes=rules.early_checkin_minutes)
        closes = booking.start_time + timedelta(minutes=rules.grace_period_minutes + rules.duration_minutes)
        if now < opens:
            raise ValidationError(
                f"Check-in opens {rules.early_checkin_minutes} minutes before the start time",
                opens_at=opens.isoformat(),
            )
        if now > closes:
            raise ValidationError("Check-in window has closed", closed_at=closes.isoformat())
        method = "self"
    else:
        raise PermissionDenied("You cannot check in this booking")

    values = {
        "checked_in_at": now,
        "service_started_at": now,
        "service_end_time": now + timedelta(minutes=rules.duration_minutes),
    }
    return _transition(
        booking, "checked_in", values, "BOOKING_CHECK_IN",
        actor_id=actor.id, metadata={"method": method},
        notify_kind="booking_checked_in",
    )


def complete_booking(booking_id, actor, notes=None) -> TransitionResult:
    booking = _load(booking_id)
    ensure_manager(actor, booking)
    ensure_transition(booking, "completed")
    now = utcnow()
    started = booking.service_started_at or booking.checked_in_at or booking.start_time
    values = {
        "completed_at": now,
        "auto_completed": False,
        "completion_method": "manual",
        "actual_duration": max(0, int((now - started).total_seconds() // 60)),
        "completion_details": {
            "completedBy": actor.id,
            "scheduledEnd": booking.service_end_time.isoformat() if booking.service_end_time else None,
            "notes": notes,
            "autoProcessed": False,
        },
    }
    return _transition(
        booking, "completed", values, "BOOKING_COMPLETE",
        actor_id=actor.id, notify_kind="booking_completed",
    )


def cancel_booking(booking_id, actor, reason=None) -> TransitionResult:
    booking = _load(booking_id)
    ensure_owner_or_manager(actor, booking)
    ensure_transition(booking, "cancelled")

    rules = rules_for(booking.service)
    now = utcnow()
    hours = rules.min_cancellation_hours
    if booking.start_time - now < timedelta(hours=hours):
        raise ValidationError(
            f"Cancellation not allowed within {hours} hours of start",
            min_cancellation_hours=hours,
        )

    cancelled_by = "customer" if is_booking_owner(actor, booking) else "merchant"
    values = {
        "seat_no": None,
        "cancelled_at": now,
        "cancellation_reason": (reason or "").strip() or None,
        "cancelled_by": cancelled_by,
    }
    refund = booking.payment_status == "paid"
    if refund:
        values["payment_status"] = "refund_requested"
        if booking.payment_id is not None:
            Payment.query.filter(Payment.id == booking.payment_id, Payment.status == "PAID").update(
                {"status": "REFUND_REQUESTED"}, synchronize_session=False
            )

    return _transition(
        booking, "cancelled", values, "BOOKING_CANCEL",
        actor_id=actor.id, metadata={"reason": reason, "by": cancelled_by, "refund_requested": refund},
        notify_kind="booking_cancelled", notify_extra={"reason": reason or "not given"},
    )


def reschedule_booking(booking_id, actor, new_start_time, reason=None, staff_id=None) -> TransitionResult:
    """Move a pending/confirmed booking to another slot in one transaction.

    The old seat is released and the new one claimed by a single UPDATE, so
    a failed move leaves the booking exactly where it was.
    """
    booking = _load(booking_id)
    ensure_owner_or_manager(actor, booking)
    if booking.status not in RESCHEDULABLE:
        raise InvalidStateError(
            f"Only pending or confirmed bookings can be rescheduled (booking is {booking.status})",
            current_status=booking.status,
        )

    entity_id = booking.offer_id if booking.booking_kind == "offer" else booking.service_id
    target = resolve_target(entity_id, booking.booking_kind, branch_id=booking.branch_id)
    new_start = to_utc_naive(normalize_start_time(new_start_time, target.hours.tz))

    staff = resolve_staff(target, staff_id if staff_id is not None else booking.staff_id)
    scope, capacity = capacity_scope_for(target, staff)
    if new_start == booking.start_time and scope == booking.capacity_scope:
        raise ValidationError("Booking is already at that time")

    old_start = booking.start_time
    from_status = booking.status
    now = utcnow()
    try:
        lock_service(target.service.id)
        check = check_slot(target, new_start, scope, capacity, now=now, exclude_booking_id=booking.id)
        if not check.available:
            raise SlotUnavailableError(check.reason, remaining_slots=check.remaining_slots,
                                       total_slots=check.total_slots)
        seat = free_seat(scope, new_start, capacity)
        if seat is None:
            raise SlotUnavailableError(REASON_FULL, remaining_slots=0, total_slots=capacity)

        rows = _conditional_update(
            booking.id, from_status,
            {
                "start_time": new_start,
                "end_time": new_start + timedelta(minutes=target.rules.duration_minutes),
                "capacity_scope": scope,
                "seat_no": seat,
                "staff_id": staff.id if staff is not None else None,
                "rescheduled_at": now,
                "reschedule_reason": (reason or "").strip() or None,
                "reschedule_count": Booking.reschedule_count + 1,
            },
            start_time=old_start,
        )
        if rows == 0:
            db.session.rollback()
            current = _load(booking_id)
            return TransitionResult(current, False, from_status, from_status,
                                    message=f"Booking changed concurrently (now {current.status})")
        log_event("BOOKING_RESCHEDULE", user_id=actor.id, entity="booking", entity_id=booking.id,
                  metadata={"from": old_start, "to": new_start, "scope": scope, "reason": reason},
                  commit=False)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise SlotUnavailableError(REASON_FULL)
    except Exception:
        db.session.rollback()
        raise

    booking = _load(booking_id)
    hooks = PostCommitHooks()
    tz = load_zone(booking.store.timezone if booking.store is not None else None)
    notify_parties(hooks, booking, "booking_rescheduled", booking_context(
        booking,
        old_when=to_local(old_start, tz).strftime("%b %d, %Y at %I:%M %p"),
        reason=reason or "not given",
    ))
    hooks.run()
    return TransitionResult(booking, True, from_status, from_status)


def mark_no_show(booking_id, actor, reason=None) -> TransitionResult:
    """Merchant override: no elapsed-time guard, terminal bookings still refused."""
    booking = _load(booking_id)
    ensure_manager(actor, booking)
    ensure_transition(booking, "no_show")
    now = utcnow()
    reason = (reason or "").strip() or "Marked as no-show by the store"
    values = {
        "seat_no": None,
        "no_show_marked_at": now,
        "no_show_reason": reason,
        "no_show_details": {
            "markedBy": actor.id,
            "minutesFromStart": int((now - booking.start_time).total_seconds() // 60),
            "autoProcessed": False,
        },
    }
    return _transition(
        booking, "no_show", values, "BOOKING_NO_SHOW",
        actor_id=actor.id, metadata={"reason": reason, "manual": True},
        notify_kind="booking_no_show", notify_extra={"reason": reason},
    )
