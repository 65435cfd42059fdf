import logging

import click
from flask import Flask, jsonify
from flask_migrate import Migrate

from config import Config
from routes import health_bp, offers_bp, booking_bp, merchant_bp, admin_bp, webhook_bp

from models import db
from models.user import User, Role
from security.csrf import csrf_protect
from services.errors import BookingError
from services.notifications import Notifier, QRArtifactGenerator
from services.payments import build_gateway
from services.sweeper import SweeperService, run_sweep
from utils.auth_context import load_current_user
from utils.clock import SystemClock
from utils.seed import seed_roles

logger = logging.getLogger(__name__)


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(offers_bp)
    app.register_blueprint(booking_bp)
    app.register_blueprint(merchant_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(webhook_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    # Collaborators the booking services look up at call time (tests swap these)
    app.extensions["clock"] = SystemClock()
    app.extensions["payment_gateway"] = build_gateway(app)
    app.extensions["notifier"] = Notifier()
    app.extensions["artifact_generator"] = QRArtifactGenerator()
    app.extensions["sweeper"] = SweeperService(app, app.config.get("SWEEPER_INTERVAL_MINUTES", 5))

    with app.app_context():
        if app.config.get("TESTING"):
            db.create_all()
        # Seed default roles at startup (safe & idempotent)
        seed_roles()

    @app.before_request
    def _load_user():
        load_current_user()

    @app.before_request
    def _csrf_protect():
        return csrf_protect()

    @app.errorhandler(BookingError)
    def _booking_error(exc):
        return jsonify(exc.to_dict()), exc.status_code

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_cli(app)

    if app.config.get("SWEEPER_ENABLED"):
        app.extensions["sweeper"].start()

    return app

#-------------------------

def register_cli(app):
    @app.cli.command("make-admin")
    @click.argument("email")
    def make_admin(email):
        """Promote a user to ADMIN by email (bootstrap)."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            click.echo("User not found")
            return

        admin_role = Role.query.filter_by(name="ADMIN").first()
        if not admin_role:
            admin_role = Role(name="ADMIN")
            db.session.add(admin_role)
            db.session.commit()

        if admin_role not in user.roles:
            user.roles.append(admin_role)
            db.session.commit()

        click.echo(f"{user.email} promoted to ADMIN")

    @app.cli.command("sweep")
    def sweep():
        """Run one no-show / auto-complete / expiry pass now."""
        summary = run_sweep()
        click.echo(
            f"no-show: {summary.no_shows}, completed: {summary.auto_completed}, "
            f"expired: {summary.expired}, errors: {summary.errors}"
        )

#-------------------------


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = create_app()
    # Run locally; the reloader would start a second sweeper
    app.run(host="127.0.0.1", port=5002, use_reloader=False)
