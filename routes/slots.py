from flask import Blueprint, request, jsonify

from models import db
from models.offer import Offer
from services.availability import get_available_slots, is_slot_available
from services.errors import NotFoundError, ValidationError
from services.fees import fee_breakdown
from utils.auth_context import login_required

offers_bp = Blueprint("offers", __name__, url_prefix="/offers")


def _kind():
    return (request.args.get("kind") or "offer").strip().lower()


# ---------- CUSTOMERS: day listing of bookable slots ----------
@offers_bp.get("/<int:entity_id>/slots")
@login_required
def list_slots(entity_id: int):
    day = request.args.get("date")
    if not day:
        raise ValidationError("date is required (YYYY-MM-DD)")

    listing = get_available_slots(
        entity_id,
        day,
        kind=_kind(),
        staff_id=request.args.get("staff_id", type=int),
        branch_id=request.args.get("branch_id", type=int),
    )
    return jsonify(listing.to_dict()), 200


# ---------- CUSTOMERS: point query for one start time ----------
@offers_bp.get("/<int:entity_id>/slots/check")
@login_required
def check_slot(entity_id: int):
    check = is_slot_available(
        entity_id,
        request.args.get("start_time"),
        kind=_kind(),
        staff_id=request.args.get("staff_id", type=int),
        branch_id=request.args.get("branch_id", type=int),
    )
    return jsonify(check.to_dict()), 200


@offers_bp.get("/<int:offer_id>/fee")
def offer_fee(offer_id: int):
    offer = db.session.get(Offer, offer_id)
    if not offer:
        raise NotFoundError("Offer not found")
    return jsonify(fee_breakdown(offer)), 200
