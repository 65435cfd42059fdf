from flask import Blueprint, jsonify, g, request

from models.store import Store
from security.rbac import require_roles
from services.booking_service import booking_to_dict, list_store_bookings
from services.availability import parse_day
from services.errors import PermissionDenied
from services.sweeper import no_show_statistics
from utils.audit import log_event

merchant_bp = Blueprint("merchant", __name__, url_prefix="/merchant")


def _owned_store_id():
    store_id = request.args.get("store_id", type=int)
    if store_id is None or g.user.has_role("ADMIN"):
        return store_id
    store = Store.query.filter_by(id=store_id, owner_user_id=g.user.id).first()
    if not store:
        raise PermissionDenied("Not your store")
    return store_id


@merchant_bp.get("/bookings")
@require_roles("MERCHANT", "ADMIN")
def store_bookings():
    day = request.args.get("date")
    rows = list_store_bookings(
        g.user,
        store_id=_owned_store_id(),
        status=request.args.get("status"),
        day=parse_day(day) if day else None,
    )
    return jsonify([booking_to_dict(b) for b in rows]), 200


@merchant_bp.get("/no-show-stats")
@require_roles("MERCHANT", "ADMIN")
def no_show_stats():
    store_id = _owned_store_id()
    if store_id is None and not g.user.has_role("ADMIN"):
        store = Store.query.filter_by(owner_user_id=g.user.id).order_by(Store.id.asc()).first()
        if not store:
            return jsonify(error="No store registered"), 404
        store_id = store.id

    stats = no_show_statistics(store_id=store_id, period=request.args.get("period", "30d"))
    log_event("MERCHANT_NO_SHOW_STATS_VIEW", user_id=g.user.id, entity="store", entity_id=store_id)
    return jsonify(stats), 200
