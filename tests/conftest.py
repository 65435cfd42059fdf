from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app import create_app
from config import TestConfig
from models import db
from models.booking import Booking
from models.offer import Offer
from models.service import Service
from models.staff import Staff
from models.store import Store
from models.user import Role, User
from security.session import create_session
from services.payments import PaymentResult
from utils.clock import FixedClock

# Sunday; the next day (2026-10-19) is the Monday most tests book on
NOW = datetime(2026, 10, 18, 12, 0, 0)
MONDAY = "2026-10-19"


class FakeGateway:
    name = "FAKE"

    def __init__(self):
        self.calls = []
        self.fail_with = None

    def process_payment(self, amount, currency, method, reference):
        self.calls.append({"amount": amount, "currency": currency, "method": method, "reference": reference})
        if self.fail_with:
            return PaymentResult(False, error=self.fail_with)
        return PaymentResult(True, transaction_id=f"pi_test_{len(self.calls)}")


class RecordingNotifier:
    def __init__(self):
        self.sent = []
        self.fail = False

    def notify(self, channel, recipient_id, template_kind, context):
        if self.fail:
            raise RuntimeError("notification backend down")
        self.sent.append((channel, recipient_id, template_kind))
        return True

    def kinds(self):
        return [kind for _, _, kind in self.sent]


class FakeArtifacts:
    def __init__(self):
        self.fail = False

    def generate(self, booking_id, payload):
        if self.fail:
            raise RuntimeError("qr renderer crashed")
        return f"qr://booking/{booking_id}/{payload['code']}"


@pytest.fixture
def app():
    app = create_app(TestConfig)
    app.extensions["clock"] = FixedClock(NOW)
    app.extensions["payment_gateway"] = FakeGateway()
    app.extensions["notifier"] = RecordingNotifier()
    app.extensions["artifact_generator"] = FakeArtifacts()

    ctx = app.app_context()
    ctx.push()
    yield app
    db.session.remove()
    db.drop_all()
    ctx.pop()


@pytest.fixture
def clock(app):
    return app.extensions["clock"]


@pytest.fixture
def gateway(app):
    return app.extensions["payment_gateway"]


@pytest.fixture
def notifier(app):
    return app.extensions["notifier"]


@pytest.fixture
def artifacts(app):
    return app.extensions["artifact_generator"]


def make_user(email, *roles):
    user = User(email=email, full_name=email.split("@")[0].title())
    for name in roles:
        user.roles.append(Role.query.filter_by(name=name).one())
    db.session.add(user)
    db.session.commit()
    return user


def make_service(store, **overrides):
    values = dict(
        store_id=store.id,
        name="Haircut",
        price=Decimal("50.00"),
        duration_minutes=30,
        buffer_time_minutes=0,
        grace_period_minutes=10,
        max_concurrent_bookings=1,
        min_cancellation_hours=0,
    )
    values.update(overrides)
    service = Service(**values)
    db.session.add(service)
    db.session.commit()
    return service


def make_offer(service, **overrides):
    values = dict(service_id=service.id, title="30% off", discount_percentage=Decimal("30"))
    values.update(overrides)
    offer = Offer(**values)
    db.session.add(offer)
    db.session.commit()
    return offer


@pytest.fixture
def world(app):
    """Merchant-owned store open 09:00-17:00 Mon-Fri with one 30 minute service."""
    merchant = make_user("merchant@example.com", "MERCHANT")
    customer = make_user("customer@example.com", "CUSTOMER")
    other = make_user("other@example.com", "CUSTOMER")
    admin = make_user("admin@example.com", "ADMIN")

    store = Store(
        name="Fade Street Barbers",
        location="Nairobi CBD",
        owner_user_id=merchant.id,
        opening_time="09:00",
        closing_time="17:00",
        working_days=["monday", "tuesday", "wednesday", "thursday", "friday"],
        timezone="UTC",
    )
    db.session.add(store)
    db.session.commit()

    service = make_service(store)
    offer = make_offer(service)
    staff = Staff(store_id=store.id, name="Amani")
    db.session.add(staff)
    db.session.commit()

    return SimpleNamespace(
        merchant=merchant, customer=customer, other=other, admin=admin,
        store=store, service=service, offer=offer, staff=staff,
    )


@pytest.fixture
def book(world):
    """Create an offer booking for the customer; paid (confirmed) by default."""
    from services.booking_service import create_booking

    def _book(start="2026-10-19T10:00:00", user=None, paid=True, **kwargs):
        kwargs.setdefault("payment", {"method": "pm_card_visa"} if paid else None)
        user = user or world.customer
        return create_booking(world.offer.id, user.id, start, **kwargs).booking

    return _book


def reload(booking) -> Booking:
    db.session.expire_all()
    return db.session.get(Booking, booking.id)


class AuthClient:
    """Test client carrying a session cookie and the CSRF double-submit pair."""

    CSRF = "test-csrf-token"

    def __init__(self, app, user):
        self.client = app.test_client()
        token = create_session(user.id)
        self.client.set_cookie(app.config["AUTH_COOKIE_NAME"], token)
        self.client.set_cookie("csrf_token", self.CSRF)

    def get(self, url, **kwargs):
        return self.client.get(url, **kwargs)

    def post(self, url, json=None, csrf=True, **kwargs):
        headers = kwargs.pop("headers", {})
        if csrf:
            headers["X-CSRF-Token"] = self.CSRF
        return self.client.post(url, json=json or {}, headers=headers, **kwargs)


@pytest.fixture
def login(app):
    def _login(user):
        return AuthClient(app, user)
    return _login
