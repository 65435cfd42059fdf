import secrets
from flask import g, request, jsonify, current_app

CSRF_COOKIE = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"

# provider callbacks and probes never carry our cookies
CSRF_EXEMPT_PATHS = {
    "/health",
    "/webhooks/stripe",
}

def issue_csrf_token(resp):
    token = secrets.token_urlsafe(32)
    resp.set_cookie(
        CSRF_COOKIE,
        token,
        httponly=False,  # must be readable by client JS
        secure=current_app.config.get("SESSION_COOKIE_SECURE", False),
        samesite=current_app.config.get("SESSION_COOKIE_SAMESITE", "Lax"),
        path="/",
    )
    return resp

def require_csrf():
    cookie_token = request.cookies.get(CSRF_COOKIE)
    header_token = request.headers.get(CSRF_HEADER)
    if not cookie_token or not header_token or cookie_token != header_token:
        return jsonify(error="CSRF validation failed"), 403
    return None

def csrf_protect():
    """before_request hook: double-submit check for authenticated writes."""
    if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
        return None
    if request.path in CSRF_EXEMPT_PATHS:
        return None
    # Only enforce CSRF if user is already authenticated (cookie session)
    if getattr(g, "user", None) is None:
        return None
    return require_csrf()
