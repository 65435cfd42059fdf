"""
Slot availability engine.

A slot is a fixed start time on a store-local calendar day plus the
capacity left in its scope. Candidate start times run from opening time in
steps of ``duration + buffer``; the last one must finish by closing time.
Capacity is counted per *capacity scope* (a service at one location, or a
single staff member when the service needs the staff member's exclusive
time) and per exact start time.

All persisted times are naive UTC; everything shown to a client is
store-local.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import func

from models import db
from models.booking import Booking, RELEASED_STATUSES
from models.service import Service
from models.staff import Staff
from services.errors import NotFoundError, ValidationError
from services.fees import booking_fee
from services.service_config import parse_id, resolve_target
from utils.clock import utcnow

logger = logging.getLogger(__name__)

REASON_FULL = "slot full"
REASON_WINDOW = "outside booking window"
REASON_CLOSED = "non-working day"
REASON_NOT_A_SLOT = "not a slot start time"
REASON_STARTED = "slot already started"

EXPECTED_FORMAT = "YYYY-MM-DDTHH:MM:SS (e.g. 2025-08-25T09:00:00)"
_INPUT_FORMATS = (
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
)


@dataclass
class Slot:
    start: datetime          # store-local, tz-aware
    end: datetime
    start_utc: datetime      # naive UTC, as stored on bookings
    total: int
    booked: int
    reason: Optional[str] = None

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.booked)

    @property
    def available(self) -> bool:
        return self.reason is None and self.remaining > 0

    def to_dict(self):
        return {
            "time": self.start.strftime("%I:%M %p").lstrip("0"),
            "startTime": self.start.strftime("%H:%M"),
            "endTime": self.end.strftime("%H:%M"),
            "startsAt": self.start.isoformat(),
            "total": self.total,
            "booked": self.booked,
            "available": self.remaining,
            "isAvailable": self.available,
            "reason": self.reason,
        }


@dataclass
class SlotListing:
    day: date
    slots: List[Slot] = field(default_factory=list)
    store_info: dict = field(default_factory=dict)
    booking_rules: dict = field(default_factory=dict)
    access_fee: Optional[object] = None
    closed_reason: Optional[str] = None

    def to_dict(self):
        return {
            "date": self.day.isoformat(),
            "availableSlots": [s.to_dict()["time"] for s in self.slots if s.available],
            "detailedSlots": [s.to_dict() for s in self.slots],
            "storeInfo": self.store_info,
            "bookingRules": self.booking_rules,
            "accessFee": str(self.access_fee) if self.access_fee is not None else None,
            "closedReason": self.closed_reason,
        }


@dataclass
class SlotCheck:
    available: bool
    remaining_slots: int
    total_slots: int
    reason: Optional[str] = None

    def to_dict(self):
        return {
            "available": self.available,
            "remainingSlots": self.remaining_slots,
            "totalSlots": self.total_slots,
            "reason": self.reason,
        }


# ---------- time helpers ----------

def to_utc_naive(local_dt: datetime) -> datetime:
    return local_dt.astimezone(timezone.utc).replace(tzinfo=None)


def to_local(utc_naive: datetime, tz) -> datetime:
    return utc_naive.replace(tzinfo=timezone.utc).astimezone(tz)


def _localize(naive: datetime, tz) -> datetime:
    earlier = naive.replace(tzinfo=tz, fold=0)
    later = naive.replace(tzinfo=tz, fold=1)
    if earlier.utcoffset() != later.utcoffset():
        raise ValidationError(
            f"Start time {naive.isoformat()} is ambiguous or does not exist in {tz} "
            f"(daylight saving change). Pick another time.",
            expected=EXPECTED_FORMAT,
        )
    return earlier


def normalize_start_time(value, tz) -> datetime:
    """Parse client input into a tz-aware store-local datetime.

    Naive input is read as store-local wall time; input carrying an offset is
    converted into the store's zone.
    """
    if value is None or value == "":
        raise ValidationError("startTime is required", expected=EXPECTED_FORMAT)

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        parsed = None
        for fmt in _INPUT_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
        if parsed is None and len(text) > 10:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                parsed = None
        if parsed is None:
            raise ValidationError(
                f"Invalid start time format: {value!r}. Expected {EXPECTED_FORMAT}",
                received=value,
                expected=EXPECTED_FORMAT,
            )
    else:
        raise ValidationError(f"Invalid start time: {value!r}", expected=EXPECTED_FORMAT)

    if parsed.tzinfo is None:
        return _localize(parsed, tz)
    return parsed.astimezone(tz)


def parse_day(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except (TypeError, ValueError):
        raise ValidationError("Invalid date. Use YYYY-MM-DD", received=value)


# ---------- rules ----------

def advance_window_violation(rules, start_utc: datetime, now: datetime) -> Optional[str]:
    """The one advance-booking predicate used by listing, point query and booking.

    Legal when ``now + min <= start <= now + max``. Returns a message naming
    the bounds when the start time is outside the window, else None.
    """
    earliest = now + timedelta(minutes=rules.min_advance_minutes)
    latest = now + timedelta(minutes=rules.max_advance_minutes)
    if earliest <= start_utc <= latest:
        return None
    return (
        f"Booking must be made between {_fmt_minutes(rules.min_advance_minutes)} "
        f"and {_fmt_minutes(rules.max_advance_minutes)} in advance"
    )


def _fmt_minutes(minutes: int) -> str:
    if minutes % (24 * 60) == 0 and minutes >= 24 * 60:
        days = minutes // (24 * 60)
        return f"{days} day{'s' if days != 1 else ''}"
    if minutes % 60 == 0 and minutes >= 60:
        hours = minutes // 60
        return f"{hours} hour{'s' if hours != 1 else ''}"
    return f"{minutes} minute{'s' if minutes != 1 else ''}"


def candidate_starts(rules, hours, day: date) -> List[datetime]:
    if not hours.configured or not hours.is_working_day(day):
        return []

    duration = timedelta(minutes=rules.duration_minutes)
    step = timedelta(minutes=rules.slot_step_minutes)
    current = _localize(datetime.combine(day, hours.opening_time), hours.tz)
    closing = _localize(datetime.combine(day, hours.closing_time), hours.tz)

    starts = []
    while current + duration <= closing:
        starts.append(current)
        current = current + step
    return starts


def resolve_staff(target, staff_id) -> Optional[Staff]:
    """Staff must be active and work where the booking takes place."""
    staff_id = parse_id(staff_id, "staff_id")
    if staff_id is None:
        return None
    staff = db.session.get(Staff, staff_id)
    if staff is None or staff.status != "active" or staff.store_id != target.service.store_id:
        raise NotFoundError("Staff member not found or not available at this location")
    if target.branch is not None and staff.branch_id not in (None, target.branch.id):
        raise NotFoundError("Staff member not found or not available at this location")
    return staff


def capacity_scope_for(target, staff=None):
    """(scope key, capacity) that a booking on this target consumes."""
    if staff is not None and target.rules.exclusive_staff_time:
        return f"staff:{staff.id}", 1
    if target.branch is not None:
        location = f"branch:{target.branch.id}"
    else:
        location = f"store:{target.service.store_id}"
    return f"service:{target.service.id}@{location}", target.rules.max_concurrent_bookings


def _live(query):
    return query.filter(Booking.status.notin_(RELEASED_STATUSES))


def count_live_bookings(scope: str, start_utc: datetime, exclude_booking_id=None) -> int:
    q = _live(Booking.query.filter(
        Booking.capacity_scope == scope,
        Booking.start_time == start_utc,
    ))
    if exclude_booking_id is not None:
        q = q.filter(Booking.id != exclude_booking_id)
    return q.count()


def _counts_for_range(scope: str, start_utc: datetime, end_utc: datetime) -> dict:
    rows = _live(
        db.session.query(Booking.start_time, func.count(Booking.id))
        .filter(
            Booking.capacity_scope == scope,
            Booking.start_time >= start_utc,
            Booking.start_time < end_utc,
        )
    ).group_by(Booking.start_time).all()
    return {start: count for start, count in rows}


def lock_service(service_id):
    """Row lock serialising seat claims on one service; a no-op on SQLite."""
    db.session.query(Service).filter(Service.id == service_id).with_for_update().one()


def free_seat(scope: str, start_utc: datetime, capacity: int) -> Optional[int]:
    """Lowest seat number of the slot not held by a live booking."""
    held = {
        seat for (seat,) in db.session.query(Booking.seat_no).filter(
            Booking.capacity_scope == scope,
            Booking.start_time == start_utc,
            Booking.seat_no.isnot(None),
        )
    }
    for seat in range(1, capacity + 1):
        if seat not in held:
            return seat
    return None


# ---------- queries ----------

def _store_info(target):
    store = target.store
    info = {"id": store.id, "name": store.name, "location": store.location}
    if target.branch is not None:
        info["branch"] = {"id": target.branch.id, "name": target.branch.name}
    info.update(target.hours.as_dict())
    return info


def get_available_slots(entity_id, day, kind: str = "offer", staff_id=None, branch_id=None) -> SlotListing:
    day = parse_day(day)
    target = resolve_target(entity_id, kind, branch_id=branch_id)
    staff = resolve_staff(target, staff_id)
    rules, hours = target.rules, target.hours

    now = utcnow()
    if day < to_local(now, hours.tz).date():
        raise ValidationError("Cannot list slots for a past date", date=day.isoformat())

    listing = SlotListing(
        day=day,
        store_info=_store_info(target),
        booking_rules=rules.as_dict(),
        access_fee=booking_fee(target),
    )

    starts = candidate_starts(rules, hours, day)
    if not starts:
        listing.closed_reason = REASON_CLOSED if hours.configured else "working hours not configured"
        return listing

    scope, capacity = capacity_scope_for(target, staff)
    first_utc = to_utc_naive(starts[0])
    last_utc = to_utc_naive(starts[-1])
    counts = _counts_for_range(scope, first_utc, last_utc + timedelta(seconds=1))

    for start in starts:
        start_utc = to_utc_naive(start)
        if start_utc <= now:
            continue
        slot = Slot(
            start=start,
            end=start + timedelta(minutes=rules.duration_minutes),
            start_utc=start_utc,
            total=capacity,
            booked=counts.get(start_utc, 0),
        )
        if advance_window_violation(rules, start_utc, now):
            slot.reason = REASON_WINDOW
        elif slot.remaining <= 0:
            slot.reason = REASON_FULL
        listing.slots.append(slot)

    return listing


def check_slot(target, start_utc: datetime, scope: str, capacity: int, now=None, exclude_booking_id=None) -> SlotCheck:
    """Point query for one start time, read at call time."""
    now = now or utcnow()
    rules, hours = target.rules, target.hours

    def _no(reason, remaining=0):
        return SlotCheck(available=False, remaining_slots=remaining, total_slots=capacity, reason=reason)

    if start_utc <= now:
        return _no(REASON_STARTED)

    local = to_local(start_utc, hours.tz)
    if not hours.configured or not hours.is_working_day(local.date()):
        return _no(REASON_CLOSED)
    if local not in candidate_starts(rules, hours, local.date()):
        return _no(REASON_NOT_A_SLOT)

    remaining = max(0, capacity - count_live_bookings(scope, start_utc, exclude_booking_id))
    if advance_window_violation(rules, start_utc, now):
        return _no(REASON_WINDOW, remaining)
    if remaining <= 0:
        return _no(REASON_FULL)
    return SlotCheck(available=True, remaining_slots=remaining, total_slots=capacity)


def is_slot_available(entity_id, start_time, kind: str = "offer", staff_id=None, branch_id=None) -> SlotCheck:
    target = resolve_target(entity_id, kind, branch_id=branch_id)
    staff = resolve_staff(target, staff_id)
    start_local = normalize_start_time(start_time, target.hours.tz)
    scope, capacity = capacity_scope_for(target, staff)
    return check_slot(target, to_utc_naive(start_local), scope, capacity)
