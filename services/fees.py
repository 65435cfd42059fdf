"""
Platform access fee for discount offers.

fee = max(floor, round(price * discount% * rate, 2))

A broken price or discount never blocks a booking: the configured fallback
fee is charged instead and the offer is logged as a data-quality problem.
"""
import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from flask import current_app

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def _fee_settings():
    cfg = current_app.config
    return (
        Decimal(str(cfg.get("PLATFORM_FEE_RATE", "0.20"))),
        _money(cfg.get("PLATFORM_FEE_FLOOR", "1.00")),
        _money(cfg.get("PLATFORM_FEE_FALLBACK", "5.99")),
    )


def platform_fee(service_price, discount_percentage, offer_id=None) -> Decimal:
    rate, floor, fallback = _fee_settings()
    try:
        price = Decimal(str(service_price))
        discount = Decimal(str(discount_percentage))
    except (InvalidOperation, TypeError, ValueError):
        logger.warning("fee fallback: unreadable price=%r discount=%r offer=%s",
                       service_price, discount_percentage, offer_id)
        return fallback

    if price <= 0:
        logger.warning("fee fallback: invalid service price %s for offer %s", price, offer_id)
        return fallback
    if discount <= 0 or discount >= 100:
        logger.warning("fee fallback: discount %s%% out of range for offer %s", discount, offer_id)
        return fallback

    discount_amount = price * discount / Decimal(100)
    return max(floor, _money(discount_amount * rate))


def offer_fee(offer) -> Decimal:
    if offer is None:
        _, _, fallback = _fee_settings()
        logger.warning("fee fallback: no offer given")
        return fallback
    price = offer.service.price if offer.service is not None else None
    return platform_fee(price, offer.discount_percentage, offer_id=offer.id)


def booking_fee(target) -> Decimal:
    """Direct service bookings carry no access fee."""
    if target.kind != "offer":
        return _money(0)
    return offer_fee(target.offer)


def fee_breakdown(offer) -> dict:
    rate, floor, _ = _fee_settings()
    price = offer.service.price if offer.service is not None else None
    discount = offer.discount_percentage
    try:
        discount_amount = _money(Decimal(str(price)) * Decimal(str(discount)) / Decimal(100))
    except (InvalidOperation, TypeError, ValueError):
        discount_amount = None
    return {
        "offerId": offer.id,
        "servicePrice": str(price) if price is not None else None,
        "discountPercentage": str(discount) if discount is not None else None,
        "discountAmount": str(discount_amount) if discount_amount is not None else None,
        "feeRate": str(rate),
        "minimumFee": str(floor),
        "platformFee": str(offer_fee(offer)),
        "currency": current_app.config.get("CURRENCY", "KES"),
    }
