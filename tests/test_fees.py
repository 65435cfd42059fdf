from decimal import Decimal

from services.fees import booking_fee, fee_breakdown, offer_fee, platform_fee
from services.service_config import resolve_target


def test_fee_is_twenty_percent_of_discount(app):
    assert platform_fee(100, 50) == Decimal("10.00")
    assert platform_fee("50.00", "30") == Decimal("3.00")


def test_small_discount_clamps_to_floor(app):
    assert platform_fee(10, 1) == Decimal("1.00")


def test_fee_rounds_half_up(app):
    # 333.33 * 12.5% * 0.20 = 8.33325
    assert platform_fee("333.33", "12.5") == Decimal("8.33")
    assert platform_fee("101", "25") == Decimal("5.05")


def test_invalid_inputs_fall_back(app, caplog):
    assert platform_fee(0, 50) == Decimal("5.99")
    assert platform_fee(100, 0) == Decimal("5.99")
    assert platform_fee(100, 100) == Decimal("5.99")
    assert platform_fee(None, 20) == Decimal("5.99")
    assert platform_fee("abc", 20) == Decimal("5.99")
    assert "fee fallback" in caplog.text


def test_fee_settings_come_from_config(app):
    app.config["PLATFORM_FEE_RATE"] = "0.10"
    app.config["PLATFORM_FEE_FLOOR"] = "2.00"
    assert platform_fee(100, 50) == Decimal("5.00")
    assert platform_fee(10, 10) == Decimal("2.00")


def test_offer_fee_and_breakdown(world):
    assert offer_fee(world.offer) == Decimal("3.00")
    breakdown = fee_breakdown(world.offer)
    assert breakdown["platformFee"] == "3.00"
    assert breakdown["discountAmount"] == "15.00"
    assert breakdown["minimumFee"] == "1.00"


def test_service_bookings_carry_no_fee(world):
    target = resolve_target(world.service.id, "service")
    assert booking_fee(target) == Decimal("0.00")
