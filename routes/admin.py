from flask import Blueprint, jsonify, g

from security.rbac import require_roles
from services.sweeper import get_sweeper
from utils.audit import log_event

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


@admin_bp.get("/sweeper/status")
@require_roles("ADMIN")
def sweeper_status():
    return jsonify(get_sweeper().status()), 200


@admin_bp.post("/sweeper/run")
@require_roles("ADMIN")
def sweeper_run():
    summary = get_sweeper().run_once()
    log_event("ADMIN_SWEEP_RUN", user_id=g.user.id, metadata={"changed": summary.changed})
    return jsonify(summary.to_dict()), 200
