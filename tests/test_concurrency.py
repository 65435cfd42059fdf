import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from app import create_app
from config import TestConfig
from conftest import NOW, FakeArtifacts, FakeGateway, RecordingNotifier, make_service, make_user
from models import db
from models.booking import Booking
from services.booking_service import create_booking
from services.errors import SlotUnavailableError
from utils.clock import FixedClock

ATTEMPTS = 6
START = "2026-10-19T10:00:00"


@pytest.fixture
def app(tmp_path):
    # threads need a database they can all reach, so no in-memory SQLite here
    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'race.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 30}}

    app = create_app(FileConfig)
    app.extensions["clock"] = FixedClock(NOW)
    app.extensions["payment_gateway"] = FakeGateway()
    app.extensions["notifier"] = RecordingNotifier()
    app.extensions["artifact_generator"] = FakeArtifacts()

    ctx = app.app_context()
    ctx.push()
    yield app
    db.session.remove()
    db.drop_all()
    db.engine.dispose()
    ctx.pop()


def test_concurrent_bookings_for_last_seat(app, world):
    offer_id = world.offer.id
    user_ids = [make_user(f"racer{i}@example.com", "CUSTOMER").id for i in range(ATTEMPTS)]
    barrier = threading.Barrier(ATTEMPTS)

    def _attempt(user_id):
        with app.app_context():
            barrier.wait()
            try:
                create_booking(offer_id, user_id, START, payment={"method": "pm_card_visa"})
            except SlotUnavailableError as exc:
                return exc.reason
            finally:
                db.session.remove()
            return "booked"

    with ThreadPoolExecutor(max_workers=ATTEMPTS) as pool:
        outcomes = list(pool.map(_attempt, user_ids))

    assert outcomes.count("booked") == 1
    assert outcomes.count("slot full") == ATTEMPTS - 1

    db.session.expire_all()
    live = Booking.query.filter(Booking.offer_id == offer_id, Booking.status == "confirmed").all()
    assert len(live) == 1
    assert live[0].seat_no == 1
    assert len(app.extensions["payment_gateway"].calls) == 1


def test_concurrent_bookings_never_overfill_shared_capacity(app, world):
    service = make_service(world.store, name="Massage", max_concurrent_bookings=2)
    service_id = service.id
    user_ids = [make_user(f"guest{i}@example.com", "CUSTOMER").id for i in range(ATTEMPTS)]
    barrier = threading.Barrier(ATTEMPTS)

    def _attempt(user_id):
        with app.app_context():
            barrier.wait()
            try:
                create_booking(service_id, user_id, START, kind="service")
            except SlotUnavailableError:
                return False
            finally:
                db.session.remove()
            return True

    with ThreadPoolExecutor(max_workers=ATTEMPTS) as pool:
        outcomes = list(pool.map(_attempt, user_ids))

    # two racers may collide on the same seat number, so one winner is possible
    assert 1 <= outcomes.count(True) <= 2
    db.session.expire_all()
    seats = [b.seat_no for b in Booking.query.filter_by(service_id=service_id).all()]
    assert len(seats) == outcomes.count(True)
    assert len(set(seats)) == len(seats)
    assert set(seats) <= {1, 2}
