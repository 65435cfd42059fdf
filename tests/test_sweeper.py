from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from conftest import MONDAY, reload
from models import db
from models.audit_log import AuditLog
from services import lifecycle, sweeper
from services.availability import get_available_slots, is_slot_available
from services.errors import SlotUnavailableError, ValidationError
from services.sweeper import (
    SweeperService,
    is_auto_complete_eligible,
    is_no_show_eligible,
    no_show_statistics,
    run_sweep,
)

T = datetime(2026, 10, 19, 10, 0)


def test_no_show_eligibility_boundary():
    rules = SimpleNamespace(grace_period_minutes=10, duration_minutes=60)
    booking = SimpleNamespace(status="confirmed", checked_in_at=None, start_time=T)

    assert not is_no_show_eligible(booking, rules, T + timedelta(minutes=69))
    assert not is_no_show_eligible(booking, rules, T + timedelta(minutes=70))
    assert is_no_show_eligible(booking, rules, T + timedelta(minutes=71))

    booking.checked_in_at = T
    assert not is_no_show_eligible(booking, rules, T + timedelta(minutes=71))


def test_auto_complete_eligibility():
    rules = SimpleNamespace(auto_complete_on_duration=True)
    booking = SimpleNamespace(status="checked_in", service_end_time=T)

    assert not is_auto_complete_eligible(booking, rules, T)
    assert is_auto_complete_eligible(booking, rules, T + timedelta(seconds=1))
    rules.auto_complete_on_duration = False
    assert not is_auto_complete_eligible(booking, rules, T + timedelta(hours=1))


def test_end_to_end_offer_day(world, book, clock):
    listing = get_available_slots(world.offer.id, MONDAY)
    assert len(listing.slots) == 16
    assert listing.slots[0].to_dict()["startTime"] == "09:00"
    assert listing.slots[-1].to_dict()["startTime"] == "16:30"

    booking = book("2026-10-19T10:00:00")
    assert str(reload(booking).access_fee) == "3.00"

    with pytest.raises(SlotUnavailableError):
        book("2026-10-19T10:00:00", user=world.other)

    clock.set(datetime(2026, 10, 19, 10, 39))
    run_sweep()
    assert reload(booking).status == "confirmed"

    clock.set(datetime(2026, 10, 19, 10, 40, 1))
    summary = run_sweep()
    booking = reload(booking)
    assert summary.no_shows == 1
    assert summary.booking_ids["no_show"] == [booking.id]
    assert booking.status == "no_show"
    assert booking.no_show_marked_at == datetime(2026, 10, 19, 10, 40, 1)
    assert booking.no_show_details["autoProcessed"] is True
    assert booking.no_show_details["gracePeriodMinutes"] == 10
    assert booking.no_show_details["serviceDurationMinutes"] == 30
    assert "10 minutes grace" in booking.no_show_reason
    assert booking.seat_no is None


def test_sweep_is_idempotent(world, book, clock):
    book("2026-10-19T10:00:00")
    clock.set(datetime(2026, 10, 19, 12, 0))

    assert run_sweep().no_shows == 1
    again = run_sweep()
    assert again.changed == 0
    assert AuditLog.query.filter_by(action="BOOKING_NO_SHOW").count() == 1


def test_checked_in_booking_is_never_no_show(world, book, clock):
    booking = book("2026-10-19T10:00:00")
    clock.set(datetime(2026, 10, 19, 10, 5))
    lifecycle.check_in(booking.id, world.merchant)

    # candidate read before the check-in; the re-read sees it checked in
    assert sweeper._mark_no_show(booking.id, datetime(2026, 10, 19, 12, 0)) is False
    assert reload(booking).status == "checked_in"


def test_auto_completion(world, book, clock):
    booking = book("2026-10-19T10:00:00")
    clock.set(datetime(2026, 10, 19, 10, 5))
    lifecycle.check_in(booking.id, world.merchant)

    clock.set(datetime(2026, 10, 19, 10, 35))
    assert run_sweep().auto_completed == 0

    clock.set(datetime(2026, 10, 19, 10, 36))
    summary = run_sweep()
    booking = reload(booking)
    assert summary.auto_completed == 1
    assert booking.status == "completed"
    assert booking.completion_method == "automatic"
    assert booking.auto_completed is True
    assert booking.actual_duration == 30
    assert booking.completion_details["autoProcessed"] is True


def test_auto_completion_can_be_switched_off(world, book, clock):
    world.service.auto_complete_on_duration = False
    db.session.commit()
    booking = book("2026-10-19T10:00:00")
    lifecycle.check_in(booking.id, world.merchant)

    clock.set(datetime(2026, 10, 20, 9, 0))
    run_sweep()
    assert reload(booking).status == "checked_in"


def test_unpaid_pending_booking_expires(world, book, clock):
    booking = book("2026-10-19T10:00:00", paid=False)

    clock.set(datetime(2026, 10, 19, 10, 41))
    summary = run_sweep()
    booking = reload(booking)
    assert summary.expired == 1
    assert booking.status == "expired"
    assert booking.expired_at == datetime(2026, 10, 19, 10, 41)
    assert booking.seat_no is None


def test_released_capacity_after_no_show(world, book, clock):
    book("2026-10-19T16:00:00")
    # a no-show frees the seat even though the slot itself is long past
    clock.set(datetime(2026, 10, 19, 16, 41))
    run_sweep()
    clock.set(datetime(2026, 10, 19, 8, 0))
    assert is_slot_available(world.offer.id, "2026-10-19T16:00:00").available


def test_no_show_notifies(world, book, clock, notifier):
    book("2026-10-19T10:00:00")
    notifier.sent.clear()
    clock.set(datetime(2026, 10, 19, 11, 0))
    run_sweep()
    assert ("push", world.customer.id, "booking_no_show") in notifier.sent
    assert ("push", world.merchant.id, "booking_no_show") in notifier.sent


def test_one_bad_row_does_not_stop_the_sweep(world, book, clock, monkeypatch, caplog):
    first = book("2026-10-19T10:00:00")
    second = book("2026-10-19T10:30:00", user=world.other)
    real = sweeper._mark_no_show

    def _flaky(booking_id, now):
        if booking_id == first.id:
            raise RuntimeError("boom")
        return real(booking_id, now)

    monkeypatch.setattr(sweeper, "_mark_no_show", _flaky)
    clock.set(datetime(2026, 10, 19, 12, 0))
    summary = run_sweep()

    assert summary.errors == 1
    assert summary.no_shows == 1
    assert reload(second).status == "no_show"
    assert f"sweeper: booking {first.id} failed in _flaky" in caplog.text
    assert any(r.name == "services.sweeper" for r in caplog.records)


def test_no_show_statistics(world, book, clock):
    auto = book("2026-10-19T10:00:00")
    manual = book("2026-10-19T10:30:00", user=world.other)
    served = book("2026-10-19T11:00:00", user=world.admin)

    clock.set(datetime(2026, 10, 19, 10, 35))
    lifecycle.mark_no_show(manual.id, world.merchant)
    clock.set(datetime(2026, 10, 19, 11, 0))
    lifecycle.check_in(served.id, world.merchant)
    clock.set(datetime(2026, 10, 19, 11, 45))
    run_sweep()

    stats = no_show_statistics(store_id=world.store.id)
    assert stats["total_bookings"] == 3
    assert stats["no_shows"] == 2
    assert stats["auto_detected"] == 1
    assert stats["manual"] == 1
    assert stats["no_show_rate"] == 66.67
    assert stats["by_service"] == [
        {"service_id": world.service.id, "total": 3, "no_shows": 2, "no_show_rate": 66.67}
    ]
    assert reload(auto).status == "no_show"
    assert reload(served).status == "completed"

    with pytest.raises(ValidationError):
        no_show_statistics(period="2w")


def test_service_run_once_records_status(app, world, book, clock):
    book("2026-10-19T10:00:00")
    clock.set(datetime(2026, 10, 19, 12, 0))
    service = SweeperService(app, interval_minutes=5)

    summary = service.run_once()
    status = service.status()
    assert summary.no_shows == 1
    assert status["running"] is False
    assert status["runs"] == 1
    assert status["last_summary"]["no_shows"] == 1
    assert status["last_error"] is None


def test_service_schedules_one_interval_job(app):
    with patch("services.sweeper.BackgroundScheduler") as mock_scheduler_class:
        mock_scheduler = MagicMock()
        mock_scheduler.running = False
        mock_scheduler_class.return_value = mock_scheduler

        service = SweeperService(app, interval_minutes=5)
        service.start()

        mock_scheduler.add_job.assert_called_once()
        kwargs = mock_scheduler.add_job.call_args.kwargs
        assert kwargs["max_instances"] == 1
        assert kwargs["coalesce"] is True
        mock_scheduler.start.assert_called_once()

        service.stop()
        mock_scheduler.shutdown.assert_called_once_with(wait=False)
