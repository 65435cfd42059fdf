from flask import Blueprint, request, jsonify, g

from services import booking_service, lifecycle
from services.booking_service import booking_to_dict
from services.errors import ValidationError
from utils.auth_context import login_required

booking_bp = Blueprint("booking", __name__, url_prefix="/bookings")


def _body():
    return request.get_json(silent=True) or {}


def _transition_response(result):
    # a lost race is a no-op: applied=false and the message say what happened
    return jsonify(result.to_dict()), 200


# ---------- CUSTOMERS: book a slot (capacity safe) ----------
@booking_bp.post("")
@login_required
def create_booking():
    data = _body()
    kind = (data.get("kind") or "offer").strip().lower()
    entity_id = data.get("offer_id") if kind == "offer" else data.get("service_id")
    if not entity_id:
        raise ValidationError("offer_id required" if kind == "offer" else "service_id required")

    result = booking_service.create_booking(
        entity_id,
        g.user.id,
        data.get("start_time"),
        kind=kind,
        store_id=data.get("store_id"),
        branch_id=data.get("branch_id"),
        staff_id=data.get("staff_id"),
        notes=data.get("notes"),
        payment=data.get("payment"),
    )
    return jsonify(result.to_dict()), 201


# ---------- CUSTOMERS: view my bookings ----------
@booking_bp.get("/me")
@login_required
def my_bookings():
    status = request.args.get("status")
    rows = booking_service.list_user_bookings(g.user.id, status=status)
    return jsonify([booking_to_dict(b) for b in rows]), 200


@booking_bp.get("/<int:booking_id>")
@login_required
def get_booking(booking_id: int):
    booking = booking_service.get_booking(booking_id, g.user)
    return jsonify(booking_to_dict(booking)), 200


@booking_bp.post("/<int:booking_id>/pay")
@login_required
def pay_booking(booking_id: int):
    data = _body()
    result = booking_service.pay_for_booking(booking_id, g.user, data.get("payment") or data)
    return jsonify(result.to_dict()), 200


# ---------- STORE: confirm / check in / complete ----------
@booking_bp.post("/<int:booking_id>/confirm")
@login_required
def confirm_booking(booking_id: int):
    return _transition_response(lifecycle.confirm_booking(booking_id, g.user))


@booking_bp.post("/<int:booking_id>/check-in")
@login_required
def check_in(booking_id: int):
    data = _body()
    return _transition_response(
        lifecycle.check_in(booking_id, g.user, verification_code=data.get("verification_code"))
    )


@booking_bp.post("/<int:booking_id>/complete")
@login_required
def complete_booking(booking_id: int):
    data = _body()
    return _transition_response(lifecycle.complete_booking(booking_id, g.user, notes=data.get("notes")))


# ---------- CUSTOMERS/STORE: cancel (policy window) ----------
@booking_bp.post("/<int:booking_id>/cancel")
@login_required
def cancel_booking(booking_id: int):
    data = _body()
    return _transition_response(lifecycle.cancel_booking(booking_id, g.user, reason=data.get("reason")))


@booking_bp.post("/<int:booking_id>/reschedule")
@login_required
def reschedule_booking(booking_id: int):
    data = _body()
    if not data.get("start_time"):
        raise ValidationError("start_time required")
    return _transition_response(lifecycle.reschedule_booking(
        booking_id,
        g.user,
        data.get("start_time"),
        reason=data.get("reason"),
        staff_id=data.get("staff_id"),
    ))


@booking_bp.post("/<int:booking_id>/no-show")
@login_required
def mark_no_show(booking_id: int):
    data = _body()
    return _transition_response(lifecycle.mark_no_show(booking_id, g.user, reason=data.get("reason")))
