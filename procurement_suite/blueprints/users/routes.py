"""
User management (admin only).

Rules enforced server-side:
- usernames are unique
- a password is required on create and optional on update (blank keeps the current one)
- an admin cannot deactivate or demote their own account

Audit:
- CREATE / UPDATE logged
"""

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from ...audit import log_action, serialize_model
from ...extensions import db
from ...forms import UserForm
from ...models import Department, User
from ...security import admin_required
from ...utils import json_error, json_formdata, parse_bool_arg, validation_error

users_bp = Blueprint("users", __name__, url_prefix="/users")


def _department_or_none(department_id: int | None):
    if department_id is None:
        return None
    return db.session.get(Department, department_id)


# ---------------------------------------------------------------------
# LIST USERS
# ---------------------------------------------------------------------

@users_bp.route("/")
@login_required
@admin_required
def list_users():
    query = User.query

    role = (request.args.get("role") or "").strip()
    if role:
        query = query.filter(User.role == role)

    active = parse_bool_arg(request.args.get("is_active"))
    if active is not None:
        query = query.filter(User.is_active.is_(active))

    users = query.order_by(User.username.asc()).all()
    return jsonify({"users": [u.to_dict() for u in users]})


@users_bp.route("/<int:user_id>")
@login_required
@admin_required
def get_user(user_id: int):
    return jsonify({"user": User.query.get_or_404(user_id).to_dict()})


# ---------------------------------------------------------------------
# CREATE USER
# ---------------------------------------------------------------------

@users_bp.route("/", methods=["POST"])
@login_required
@admin_required
def create_user():
    form = UserForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    username = form.username.data.strip()
    if not form.password.data:
        return json_error("Validation failed", 400, fields={"password": ["Password is required."]})

    if User.query.filter_by(username=username).first():
        return json_error("Username already exists.", 409)

    if form.department_id.data and _department_or_none(form.department_id.data) is None:
        return json_error("Department not found.", 400)

    user = User(
        username=username,
        full_name=form.full_name.data or None,
        email=form.email.data or None,
        role=form.role.data,
        is_admin=bool(form.is_admin.data),
        is_active=bool(form.is_active.data),
        department_id=form.department_id.data,
    )
    user.set_password(form.password.data)

    db.session.add(user)
    db.session.flush()
    log_action(user, "CREATE", after=serialize_model(user))
    db.session.commit()

    return jsonify({"user": user.to_dict()}), 201


# ---------------------------------------------------------------------
# UPDATE USER
# ---------------------------------------------------------------------

@users_bp.route("/<int:user_id>", methods=["PUT"])
@login_required
@admin_required
def update_user(user_id: int):
    user = User.query.get_or_404(user_id)
    form = UserForm(formdata=json_formdata(), obj=user)
    if not form.validate():
        return validation_error(form)

    if user.id == current_user.id and (not form.is_admin.data or not form.is_active.data):
        return json_error("You cannot deactivate or demote your own account.", 400)

    username = form.username.data.strip()
    clash = User.query.filter(User.username == username, User.id != user.id).first()
    if clash:
        return json_error("Username already exists.", 409)

    if form.department_id.data and _department_or_none(form.department_id.data) is None:
        return json_error("Department not found.", 400)

    before_snapshot = serialize_model(user)

    user.username = username
    user.full_name = form.full_name.data or None
    user.email = form.email.data or None
    user.role = form.role.data
    user.is_admin = bool(form.is_admin.data)
    user.is_active = bool(form.is_active.data)
    user.department_id = form.department_id.data

    if form.password.data:
        user.set_password(form.password.data)

    db.session.flush()
    log_action(user, "UPDATE", before=before_snapshot, after=serialize_model(user))
    db.session.commit()

    return jsonify({"user": user.to_dict()})
