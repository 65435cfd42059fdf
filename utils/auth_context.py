from functools import wraps
from flask import g, jsonify
from models import db
from models.user import User
from security.session import get_session_from_request

def load_current_user():
    sess = get_session_from_request()
    if not sess:
        g.user = None
        g.session = None
        return
    user = db.session.get(User, sess.user_id)
    # deactivated accounts keep their sessions but can no longer act
    g.session = sess
    g.user = user if user is not None and user.is_active else None

def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if getattr(g, "user", None) is None:
            return jsonify(error="Authentication required"), 401
        return fn(*args, **kwargs)
    return wrapper
