"""
Read-only view of what governs a bookable offer or service.

The booking engine never reads ``Service``/``Store``/``Branch`` columns
directly; it resolves a ``BookingTarget`` once and works from the
``ServiceRules`` and ``OperatingHours`` snapshots, with config defaults
filled in for anything the merchant left empty.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import current_app

from models import db
from models.branch import Branch
from models.offer import Offer
from models.service import Service
from services.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

BOOKING_KINDS = ("offer", "service")
WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


@dataclass(frozen=True)
class ServiceRules:
    duration_minutes: int
    buffer_time_minutes: int
    grace_period_minutes: int
    min_advance_minutes: int
    max_advance_minutes: int
    max_concurrent_bookings: int
    exclusive_staff_time: bool
    auto_confirm_bookings: bool
    auto_complete_on_duration: bool
    allow_early_checkin: bool
    early_checkin_minutes: int
    min_cancellation_hours: int
    booking_enabled: bool

    @property
    def slot_step_minutes(self) -> int:
        return self.duration_minutes + self.buffer_time_minutes

    def as_dict(self):
        return {
            "serviceDuration": self.duration_minutes,
            "bufferTime": self.buffer_time_minutes,
            "gracePeriod": self.grace_period_minutes,
            "minAdvanceBooking": self.min_advance_minutes,
            "maxAdvanceBooking": self.max_advance_minutes,
            "maxConcurrentBookings": self.max_concurrent_bookings,
        }


@dataclass(frozen=True)
class OperatingHours:
    opening_time: Optional[time]
    closing_time: Optional[time]
    working_days: List[str] = field(default_factory=list)
    tz: ZoneInfo = ZoneInfo("UTC")

    @property
    def configured(self) -> bool:
        return self.opening_time is not None and self.closing_time is not None

    def is_working_day(self, day: date) -> bool:
        return WEEKDAYS[day.weekday()] in self.working_days

    def as_dict(self):
        return {
            "openingTime": self.opening_time.strftime("%H:%M") if self.opening_time else None,
            "closingTime": self.closing_time.strftime("%H:%M") if self.closing_time else None,
            "workingDays": [d.capitalize() for d in self.working_days],
            "timezone": str(self.tz),
        }


@dataclass
class BookingTarget:
    kind: str
    service: Service
    rules: ServiceRules
    hours: OperatingHours
    offer: Optional[Offer] = None
    branch: Optional[Branch] = None

    @property
    def store(self):
        return self.service.store

    @property
    def entity_id(self):
        return self.offer.id if self.offer is not None else self.service.id


def parse_working_days(raw) -> List[str]:
    """Accepts a list, a JSON list string or "mon,tue"-style CSV."""
    if not raw:
        return []
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            parsed = raw.split(",")
        raw = parsed if isinstance(parsed, list) else [parsed]
    if not isinstance(raw, (list, tuple)):
        return []

    days = []
    for item in raw:
        if not isinstance(item, str) or not item.strip():
            continue
        name = item.strip().lower()
        # accept "mon" as well as "monday"
        match = next((d for d in WEEKDAYS if d.startswith(name[:3])), None)
        if match and match not in days:
            days.append(match)
    return days


def parse_id(value, name: str):
    """Request ids arrive as ints or digit strings; anything else is a 400."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a positive integer", received=value)
    try:
        parsed = int(str(value).strip())
    except ValueError:
        raise ValidationError(f"{name} must be a positive integer", received=value) from None
    if parsed <= 0:
        raise ValidationError(f"{name} must be a positive integer", received=value)
    return parsed


def parse_clock_time(raw) -> Optional[time]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, time):
        return raw
    for fmt in ("%H:%M:%S", "%H:%M"):
        try:
            return datetime.strptime(str(raw).strip(), fmt).time()
        except ValueError:
            continue
    logger.warning("unparseable opening/closing time %r", raw)
    return None


def load_zone(name: Optional[str]) -> ZoneInfo:
    default = current_app.config.get("DEFAULT_STORE_TIMEZONE", "UTC")
    try:
        return ZoneInfo(name or default)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown timezone %r, falling back to %s", name, default)
        return ZoneInfo(default)


def rules_for(service: Service) -> ServiceRules:
    cfg = current_app.config

    def _or(value, default):
        return default if value is None else value

    return ServiceRules(
        duration_minutes=service.duration_minutes or cfg["DEFAULT_SERVICE_DURATION_MINUTES"],
        buffer_time_minutes=_or(service.buffer_time_minutes, 0),
        grace_period_minutes=_or(service.grace_period_minutes, cfg["DEFAULT_GRACE_PERIOD_MINUTES"]),
        min_advance_minutes=_or(service.min_advance_booking_minutes, cfg["DEFAULT_MIN_ADVANCE_MINUTES"]),
        max_advance_minutes=_or(service.max_advance_booking_minutes, cfg["DEFAULT_MAX_ADVANCE_MINUTES"]),
        max_concurrent_bookings=max(1, service.max_concurrent_bookings or 1),
        exclusive_staff_time=bool(_or(service.exclusive_staff_time, True)),
        auto_confirm_bookings=bool(_or(service.auto_confirm_bookings, True)),
        auto_complete_on_duration=bool(_or(service.auto_complete_on_duration, True)),
        allow_early_checkin=bool(service.allow_early_checkin),
        early_checkin_minutes=_or(service.early_checkin_minutes, cfg["DEFAULT_EARLY_CHECKIN_MINUTES"]),
        min_cancellation_hours=_or(service.min_cancellation_hours, 0),
        booking_enabled=bool(_or(service.booking_enabled, True)),
    )


def hours_for(service: Service, branch: Optional[Branch] = None) -> OperatingHours:
    store = service.store
    source = store
    # a branch with its own schedule governs; otherwise the store's applies
    if branch is not None and branch.opening_time and branch.closing_time:
        source = branch
    working_days = parse_working_days(source.working_days)
    if not working_days and source is not store:
        # branch keeps its own hours but inherits the store's days
        working_days = parse_working_days(store.working_days)
    return OperatingHours(
        opening_time=parse_clock_time(source.opening_time),
        closing_time=parse_clock_time(source.closing_time),
        working_days=working_days,
        tz=load_zone(store.timezone),
    )


def resolve_target(entity_id, kind: str = "offer", branch_id=None) -> BookingTarget:
    if kind not in BOOKING_KINDS:
        raise ValidationError(f"Unknown booking kind '{kind}'. Use one of: {', '.join(BOOKING_KINDS)}")

    entity_id = parse_id(entity_id, "offer_id" if kind == "offer" else "service_id")
    if entity_id is None:
        raise ValidationError("offer_id required" if kind == "offer" else "service_id required")
    branch_id = parse_id(branch_id, "branch_id")

    offer = None
    if kind == "offer":
        offer = db.session.get(Offer, entity_id)
        if offer is None:
            raise NotFoundError("Offer not found")
        service = offer.service
        if service is None:
            raise NotFoundError("Associated service not found")
    else:
        service = db.session.get(Service, entity_id)
        if service is None:
            raise NotFoundError("Service not found")

    if service.store is None or not service.store.is_active:
        raise NotFoundError("Store not found")

    branch = None
    if branch_id is not None:
        branch = db.session.get(Branch, branch_id)
        if branch is None or branch.store_id != service.store_id or branch.status != "active":
            raise NotFoundError("Branch not found")
    elif service.branch_id is not None:
        branch = service.branch

    return BookingTarget(
        kind=kind,
        service=service,
        rules=rules_for(service),
        hours=hours_for(service, branch),
        offer=offer,
        branch=branch,
    )
