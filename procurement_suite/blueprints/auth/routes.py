"""
Authentication routes.

Provides:
- POST /auth/login
- POST /auth/logout
- GET  /auth/me
- GET  /auth/csrf-token (JSON clients send it back in X-CSRFToken)
- POST /auth/seed-admin (first system bootstrap, only while no user exists)
"""

import logging

from flask import Blueprint, jsonify
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf

from ...audit import log_action, serialize_model
from ...extensions import db
from ...forms import LoginForm
from ...models import User
from ...utils import json_error, json_formdata, validation_error

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _user_payload(user: User) -> dict:
    data = user.to_dict()
    data["department_name"] = user.department.name if user.department else None
    return data


# ============================================================
# LOGIN / LOGOUT
# ============================================================

@auth_bp.route("/login", methods=["POST"])
def login():
    """Only active users may log in; credentials are checked against the password hash."""
    form = LoginForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    username = form.username.data.strip()
    user = User.query.filter_by(username=username).first()

    if not user or not user.check_password(form.password.data):
        logger.warning("Failed login for %s", username)
        return json_error("Invalid username or password.", 401)

    if not user.is_active:
        return json_error("This account is inactive.", 403)

    login_user(user)
    logger.info("User %s logged in", user.username)
    return jsonify({"user": _user_payload(user)})


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"message": "Logged out."})


@auth_bp.route("/me")
@login_required
def me():
    return jsonify({"user": _user_payload(current_user)})


@auth_bp.route("/csrf-token")
def csrf_token():
    return jsonify({"csrf_token": generate_csrf()})


# ============================================================
# SEED FIRST ADMIN (BOOTSTRAP)
# ============================================================

@auth_bp.route("/seed-admin", methods=["POST"])
def seed_admin():
    """Bootstrap the FIRST admin. Blocked as soon as any user exists."""
    if User.query.count() > 0:
        return json_error("A user already exists.", 409)

    form = LoginForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    user = User(
        username=form.username.data.strip(),
        full_name="System Administrator",
        role="procurement_officer",
        is_admin=True,
        is_active=True,
    )
    user.set_password(form.password.data)

    db.session.add(user)
    db.session.flush()
    log_action(user, "CREATE", after=serialize_model(user))
    db.session.commit()

    return jsonify({"user": _user_payload(user)}), 201
