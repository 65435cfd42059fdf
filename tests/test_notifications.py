import base64

import pytest

from conftest import reload
from models.notification import Notification
from services.notifications import (
    Notifier,
    PostCommitHooks,
    QRArtifactGenerator,
    booking_context,
    render,
)


def test_render_fills_missing_values_with_blanks():
    subject, body = render("booking_cancelled", {"booking_id": 7, "service": "Haircut"})
    assert subject == "Booking cancelled"
    assert body.startswith("Booking #7 for Haircut on  was cancelled.")


def test_push_channel_stores_notification(world):
    Notifier().notify("push", world.customer.id, "booking_confirmed", {"booking_id": 3, "service": "Haircut"})
    row = Notification.query.one()
    assert row.recipient_user_id == world.customer.id
    assert row.title == "Booking confirmed"
    assert row.context_json["booking_id"] == 3


def test_email_without_smtp_is_skipped(app, world):
    app.config["SMTP_HOST"] = None
    assert Notifier().notify("email", world.customer.id, "booking_confirmed", {}) is False


def test_unknown_channel(world):
    with pytest.raises(ValueError):
        Notifier().notify("pigeon", world.customer.id, "booking_confirmed", {})


def test_hooks_isolate_failures(app, caplog):
    calls = []
    hooks = PostCommitHooks()

    def _broken():
        raise RuntimeError("down")

    hooks.add("first", _broken)
    hooks.add("second", calls.append, "ran")
    hooks.run()

    assert calls == ["ran"]
    assert "post-commit side effect first failed" in caplog.text
    assert len(hooks) == 0


def test_qr_artifact_is_png_data_url(app):
    app.config["QR_ARTIFACTS_ENABLED"] = True
    ref = QRArtifactGenerator().generate(12, {"code": "AB12CD"})
    assert ref.startswith("data:image/png;base64,")
    assert base64.b64decode(ref.split(",", 1)[1])[:8] == b"\x89PNG\r\n\x1a\n"


def test_qr_artifacts_can_be_disabled(app):
    assert QRArtifactGenerator().generate(12, {"code": "AB12CD"}) is None


def test_booking_context_uses_store_local_time(world, book):
    booking = reload(book("2026-10-19T10:00:00"))
    ctx = booking_context(booking, reason="x")
    assert ctx["when"] == "Oct 19, 2026 at 10:00 AM"
    assert ctx["store"] == "Fade Street Barbers"
    assert ctx["code"] == booking.verification_code
    assert ctx["reason"] == "x"
