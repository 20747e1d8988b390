"""
Flask application factory for the Procurement Suite.

- JSON API only: every blueprint returns JSON, errors included ({"error": ...}).
- PostgreSQL-ready (SQLAlchemy + migrations) but SQLite is used for dev.
- Clients are never trusted; access control and validation are server-side.
"""

from __future__ import annotations

import logging

import click
from flask import Flask, jsonify
from flask_login import current_user
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException

from .extensions import csrf, db, login_manager, migrate
from .logging_setup import configure_logging
from .models import User
from .security import viewer_readonly_guard

logger = logging.getLogger(__name__)


def create_app(config_object: str | object = "config.Config") -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    configure_logging(app)

    # Extensions
    db.init_app(app)
    migrate.init_app(app, db)
    csrf.init_app(app)
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id: str) -> User | None:
        """Load user for Flask-Login."""
        try:
            user = db.session.get(User, int(user_id))
        except ValueError:
            return None
        if user is None or not user.is_active:
            return None
        return user

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "Authentication required."}), 401

    # ----------------------------------------------------------------------
    # GLOBAL SECURITY NET: Viewer read-only guard (server-side).
    # Each route still enforces its own permissions.
    # ----------------------------------------------------------------------
    @app.before_request
    def _viewer_guard_hook():
        return viewer_readonly_guard()

    # ----------------------------------------------------------------------
    # Blueprints
    # ----------------------------------------------------------------------
    from .blueprints.auth import auth_bp
    from .blueprints.budgets import budgets_bp
    from .blueprints.invoices import invoices_bp
    from .blueprints.master_data import master_data_bp
    from .blueprints.purchase_orders import purchase_orders_bp
    from .blueprints.requests import requests_bp
    from .blueprints.rfps import rfps_bp
    from .blueprints.settings import settings_bp
    from .blueprints.users import users_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(users_bp)
    app.register_blueprint(master_data_bp)
    app.register_blueprint(budgets_bp)
    app.register_blueprint(requests_bp)
    app.register_blueprint(purchase_orders_bp)
    app.register_blueprint(invoices_bp)
    app.register_blueprint(rfps_bp)
    app.register_blueprint(settings_bp)

    _register_error_handlers(app)
    _register_cli(app)

    @app.route("/")
    def index():
        return jsonify(
            {
                "app": app.config.get("APP_NAME"),
                "authenticated": bool(current_user.is_authenticated),
            }
        )

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"})

    return app


def _register_error_handlers(app: Flask) -> None:
    """Every error leaves the API as {"error": message} with the matching status code."""

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(exc: IntegrityError):
        db.session.rollback()
        message = str(exc.orig) if exc.orig is not None else str(exc)
        logger.warning("Integrity error: %s", message)
        return jsonify({"error": message}), 409

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        return jsonify({"error": exc.description or exc.name}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception):
        db.session.rollback()
        logger.exception("Unhandled error")
        return jsonify({"error": "Internal server error."}), 500


def _register_cli(app: Flask) -> None:
    @app.cli.command("seed-defaults")
    def seed_defaults_command():
        """Seed system email templates, PO settings and organization settings."""
        from .seed import seed_defaults

        seed_defaults()
        click.echo("Default settings seeded.")

    @app.cli.command("create-admin")
    @click.argument("username")
    @click.argument("password")
    def create_admin_command(username: str, password: str):
        """Create an admin user (fails if the username exists)."""
        if User.query.filter_by(username=username).first():
            raise click.ClickException(f"User '{username}' already exists.")

        user = User(username=username, is_admin=True, is_active=True, role="procurement_officer")
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        click.echo(f"Admin '{username}' created.")
