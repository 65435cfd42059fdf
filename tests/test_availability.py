from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from conftest import MONDAY, make_service
from models import db
from models.branch import Branch
from services.availability import (
    REASON_CLOSED,
    REASON_FULL,
    REASON_NOT_A_SLOT,
    REASON_WINDOW,
    advance_window_violation,
    get_available_slots,
    is_slot_available,
    normalize_start_time,
)
from services.booking_service import create_booking
from services.errors import NotFoundError, SlotUnavailableError, ValidationError
from services.service_config import parse_working_days, resolve_target


def test_monday_has_sixteen_half_hour_slots(world):
    listing = get_available_slots(world.offer.id, MONDAY)
    starts = [s.to_dict()["startTime"] for s in listing.slots]

    assert len(starts) == 16
    assert starts[0] == "09:00"
    assert starts[-1] == "16:30"
    assert all(s.available for s in listing.slots)
    assert listing.to_dict()["accessFee"] == "3.00"
    assert listing.to_dict()["availableSlots"][0] == "9:00 AM"


def test_buffer_time_spaces_out_slots(world):
    service = make_service(world.store, name="Colour", duration_minutes=60, buffer_time_minutes=30)
    listing = get_available_slots(service.id, MONDAY, kind="service")
    starts = [s.to_dict()["startTime"] for s in listing.slots]
    # last start must still finish by 17:00
    assert starts == ["09:00", "10:30", "12:00", "13:30", "15:00"]


def test_weekend_is_closed(world):
    listing = get_available_slots(world.offer.id, "2026-10-24")
    assert listing.slots == []
    assert listing.closed_reason == REASON_CLOSED


def test_past_date_rejected(world):
    with pytest.raises(ValidationError):
        get_available_slots(world.offer.id, "2026-10-17")


def test_bad_date_rejected(world):
    with pytest.raises(ValidationError):
        get_available_slots(world.offer.id, "19-10-2026")


def test_unknown_offer(world):
    with pytest.raises(NotFoundError):
        get_available_slots(9999, MONDAY)


def test_listing_is_idempotent(world, book):
    book("2026-10-19T11:00:00")
    first = get_available_slots(world.offer.id, MONDAY).to_dict()
    second = get_available_slots(world.offer.id, MONDAY).to_dict()
    assert first == second


def test_booked_slot_shows_full(world, book):
    book("2026-10-19T10:00:00")
    listing = get_available_slots(world.offer.id, MONDAY)
    ten = next(s for s in listing.slots if s.to_dict()["startTime"] == "10:00")

    assert ten.remaining == 0
    assert ten.reason == REASON_FULL
    assert len(listing.to_dict()["availableSlots"]) == 15


def test_slots_inside_min_advance_are_marked(world, clock):
    clock.set(datetime(2026, 10, 19, 8, 45))
    listing = get_available_slots(world.offer.id, MONDAY)
    by_start = {s.to_dict()["startTime"]: s for s in listing.slots}

    assert by_start["09:00"].reason == REASON_WINDOW
    assert by_start["09:30"].available


def test_started_slots_are_left_out(world, clock):
    clock.set(datetime(2026, 10, 19, 12, 10))
    listing = get_available_slots(world.offer.id, MONDAY)
    assert listing.slots[0].to_dict()["startTime"] == "12:30"


def test_store_timezone_governs_hours(world):
    world.store.timezone = "Africa/Nairobi"
    db.session.commit()

    listing = get_available_slots(world.offer.id, MONDAY)
    first = listing.slots[0]
    assert first.to_dict()["startsAt"] == "2026-10-19T09:00:00+03:00"
    assert first.start_utc == datetime(2026, 10, 19, 6, 0)


def test_branch_hours_override_store(world):
    branch = Branch(store_id=world.store.id, name="Westlands", opening_time="12:00",
                    closing_time="14:00", working_days=["monday"])
    db.session.add(branch)
    db.session.commit()
    service = make_service(world.store, name="Shave", branch_id=branch.id)

    listing = get_available_slots(service.id, MONDAY, kind="service")
    assert [s.to_dict()["startTime"] for s in listing.slots] == ["12:00", "12:30", "13:00", "13:30"]


def test_branch_without_days_inherits_store_days(world):
    branch = Branch(store_id=world.store.id, name="Kilimani", opening_time="15:00", closing_time="16:00")
    db.session.add(branch)
    db.session.commit()
    service = make_service(world.store, name="Trim", branch_id=branch.id)

    monday = get_available_slots(service.id, MONDAY, kind="service")
    assert [s.to_dict()["startTime"] for s in monday.slots] == ["15:00", "15:30"]
    assert get_available_slots(service.id, "2026-10-24", kind="service").slots == []


def test_point_query(world, book):
    check = is_slot_available(world.offer.id, "2026-10-19T10:00:00")
    assert check.available and check.remaining_slots == 1 and check.total_slots == 1

    off_grid = is_slot_available(world.offer.id, "2026-10-19T10:15:00")
    assert not off_grid.available and off_grid.reason == REASON_NOT_A_SLOT

    book("2026-10-19T10:00:00")
    taken = is_slot_available(world.offer.id, "2026-10-19T10:00:00")
    assert not taken.available and taken.reason == REASON_FULL


def test_capacity_is_shared_up_to_max_concurrent(world):
    service = make_service(world.store, name="Massage", max_concurrent_bookings=2)
    start = "2026-10-19T14:00:00"

    first = create_booking(service.id, world.customer.id, start, kind="service")
    assert first.remaining_slots == 1 and first.total_slots == 2
    second = create_booking(service.id, world.other.id, start, kind="service")
    assert second.remaining_slots == 0

    with pytest.raises(SlotUnavailableError) as exc:
        create_booking(service.id, world.admin.id, start, kind="service")
    assert exc.value.reason == REASON_FULL


def test_exclusive_staff_time_uses_staff_scope(world, book):
    book("2026-10-19T10:00:00", staff_id=world.staff.id)

    with_staff = get_available_slots(world.offer.id, MONDAY, staff_id=world.staff.id)
    ten = next(s for s in with_staff.slots if s.to_dict()["startTime"] == "10:00")
    assert ten.reason == REASON_FULL

    # the shared service pool is untouched by the staff booking
    without_staff = get_available_slots(world.offer.id, MONDAY)
    ten = next(s for s in without_staff.slots if s.to_dict()["startTime"] == "10:00")
    assert ten.available


def test_inactive_staff_rejected(world):
    world.staff.status = "inactive"
    db.session.commit()
    with pytest.raises(NotFoundError):
        get_available_slots(world.offer.id, MONDAY, staff_id=world.staff.id)


def test_advance_window_predicate(world):
    rules = resolve_target(world.offer.id).rules
    now = datetime(2026, 10, 19, 8, 0)

    assert advance_window_violation(rules, datetime(2026, 10, 19, 8, 30), now) is None
    assert advance_window_violation(rules, datetime(2026, 10, 26, 8, 0), now) is None
    assert "30 minutes" in advance_window_violation(rules, datetime(2026, 10, 19, 8, 29), now)
    assert "7 days" in advance_window_violation(rules, datetime(2026, 10, 26, 8, 1), now)


def test_normalize_start_time_formats():
    tz = ZoneInfo("Africa/Nairobi")
    expected = datetime(2026, 10, 19, 10, 0, tzinfo=tz)

    assert normalize_start_time("2026-10-19T10:00:00", tz) == expected
    assert normalize_start_time("2026-10-19T10:00", tz) == expected
    assert normalize_start_time("2026-10-19 10:00", tz) == expected
    assert normalize_start_time("2026-10-19T07:00:00Z", tz) == expected
    assert normalize_start_time("2026-10-19T07:00:00+00:00", tz) == expected


def test_normalize_start_time_rejects_garbage():
    with pytest.raises(ValidationError) as exc:
        normalize_start_time("19/10/2026 10am", ZoneInfo("UTC"))
    assert "YYYY-MM-DDTHH:MM:SS" in exc.value.message
    assert exc.value.details["received"] == "19/10/2026 10am"

    with pytest.raises(ValidationError):
        normalize_start_time(None, ZoneInfo("UTC"))


def test_normalize_start_time_rejects_dst_ambiguity():
    tz = ZoneInfo("America/New_York")
    with pytest.raises(ValidationError):
        normalize_start_time("2026-11-01T01:30:00", tz)  # repeated hour
    with pytest.raises(ValidationError):
        normalize_start_time("2026-03-08T02:30:00", tz)  # skipped hour


def test_parse_working_days_variants():
    assert parse_working_days(["Monday", "tue"]) == ["monday", "tuesday"]
    assert parse_working_days('["friday"]') == ["friday"]
    assert parse_working_days("mon,wed") == ["monday", "wednesday"]
    assert parse_working_days(None) == []
