"""
Procurement request (requisition) routes.

Lifecycle:
    draft -> submitted -> in_review -> approved / rejected
    approved -> completed
    draft / submitted / in_review / approved -> canceled

- Requesters work inside their own department; admins see everything.
- Items can be changed only while the request is a draft; estimated_value follows the items.
- An admin submitting a request approves it in the same step.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy import func
from sqlalchemy.orm import joinedload

from ...audit import log_action, serialize_model
from ...extensions import db
from ...forms import ProcurementRequestForm, ReasonForm, RequestItemForm
from ...models import Department, ProcurementRequest, ProcurementRequestItem
from ...numbering import next_request_number
from ...security import ensure_department_access, is_admin, roles_required, scope_to_department
from ...utils import (
    json_error,
    json_formdata,
    parse_date_arg,
    parse_optional_int,
    transition_error,
    validation_error,
)

requests_bp = Blueprint("requests", __name__, url_prefix="/requests")

REVIEWERS = ("procurement_officer",)


def _load_request(request_id: int) -> ProcurementRequest:
    req = ProcurementRequest.query.get_or_404(request_id)
    ensure_department_access(req.department_id, *REVIEWERS)
    return req


def _require_draft(req: ProcurementRequest):
    if req.status != "draft":
        return json_error("Only draft requests can be changed.", 400)
    return None


# ---------------------------------------------------------------------
# List / detail
# ---------------------------------------------------------------------
@requests_bp.route("/")
@login_required
def list_requests():
    q = ProcurementRequest.query.options(
        joinedload(ProcurementRequest.department),
        joinedload(ProcurementRequest.requester),
    )
    q = scope_to_department(q, ProcurementRequest.department_id, *REVIEWERS)

    status = (request.args.get("status") or "").strip()
    if status:
        q = q.filter(ProcurementRequest.status == status)

    priority = (request.args.get("priority") or "").strip()
    if priority:
        q = q.filter(ProcurementRequest.priority == priority)

    department_id = parse_optional_int(request.args.get("department_id"))
    if department_id is not None:
        q = q.filter(ProcurementRequest.department_id == department_id)

    needed_before = parse_date_arg(request.args.get("needed_before"))
    if needed_before:
        q = q.filter(ProcurementRequest.date_needed <= needed_before)

    search = (request.args.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(
            ProcurementRequest.title.ilike(like)
            | ProcurementRequest.request_number.ilike(like)
            | func.coalesce(ProcurementRequest.description, "").ilike(like)
        )

    rows = q.order_by(ProcurementRequest.created_at.desc(), ProcurementRequest.id.desc()).all()
    return jsonify({"requests": [r.to_dict() for r in rows]})


@requests_bp.route("/<int:request_id>")
@login_required
def get_request(request_id: int):
    return jsonify({"request": _load_request(request_id).to_dict(with_items=True)})


# ---------------------------------------------------------------------
# Create / update / delete
# ---------------------------------------------------------------------
def _resolve_department(form: ProcurementRequestForm):
    department_id = form.department_id.data
    if department_id is None and not is_admin():
        department_id = current_user.department_id
    if department_id is not None and db.session.get(Department, department_id) is None:
        return None, json_error("Department not found.", 400)
    ensure_department_access(department_id)
    return department_id, None


@requests_bp.route("/", methods=["POST"])
@login_required
def create_request():
    form = ProcurementRequestForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    department_id, error = _resolve_department(form)
    if error:
        return error

    req = ProcurementRequest(
        request_number=next_request_number(),
        title=form.title.data.strip(),
        description=(form.description.data or "").strip() or None,
        department_id=department_id,
        requester_id=current_user.id,
        date_needed=form.date_needed.data,
        priority=form.priority.data,
        status="draft",
    )
    db.session.add(req)
    db.session.flush()

    log_action(req, "CREATE", after=serialize_model(req))
    db.session.commit()
    return jsonify({"request": req.to_dict(with_items=True)}), 201


@requests_bp.route("/<int:request_id>", methods=["PUT"])
@login_required
def update_request(request_id: int):
    req = _load_request(request_id)
    error = _require_draft(req)
    if error:
        return error

    form = ProcurementRequestForm(formdata=json_formdata(), obj=req)
    if not form.validate():
        return validation_error(form)

    department_id, error = _resolve_department(form)
    if error:
        return error

    before = serialize_model(req)
    req.title = form.title.data.strip()
    req.description = (form.description.data or "").strip() or None
    req.department_id = department_id
    req.date_needed = form.date_needed.data
    req.priority = form.priority.data

    db.session.flush()
    log_action(req, "UPDATE", before=before, after=serialize_model(req))
    db.session.commit()
    return jsonify({"request": req.to_dict(with_items=True)})


@requests_bp.route("/<int:request_id>", methods=["DELETE"])
@login_required
def delete_request(request_id: int):
    req = _load_request(request_id)
    error = _require_draft(req)
    if error:
        return error

    before = serialize_model(req)
    db.session.delete(req)
    db.session.flush()
    log_action(req, "DELETE", before=before)
    db.session.commit()
    return jsonify({"message": "Request deleted."})


# ---------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------
@requests_bp.route("/<int:request_id>/items", methods=["POST"])
@login_required
def add_item(request_id: int):
    req = _load_request(request_id)
    error = _require_draft(req)
    if error:
        return error

    form = RequestItemForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    item = ProcurementRequestItem(
        description=form.description.data.strip(),
        quantity=form.quantity.data,
        estimated_price=form.estimated_price.data,
    )
    req.items.append(item)
    req.recalc_totals()
    db.session.flush()

    log_action(item, "CREATE", after=serialize_model(item))
    db.session.commit()
    return jsonify({"request": req.to_dict(with_items=True)}), 201


@requests_bp.route("/<int:request_id>/items/<int:item_id>", methods=["PUT"])
@login_required
def update_item(request_id: int, item_id: int):
    req = _load_request(request_id)
    error = _require_draft(req)
    if error:
        return error

    item = ProcurementRequestItem.query.filter_by(id=item_id, request_id=req.id).first_or_404()
    form = RequestItemForm(formdata=json_formdata(), obj=item)
    if not form.validate():
        return validation_error(form)

    before = serialize_model(item)
    item.description = form.description.data.strip()
    item.quantity = form.quantity.data
    item.estimated_price = form.estimated_price.data
    req.recalc_totals()

    db.session.flush()
    log_action(item, "UPDATE", before=before, after=serialize_model(item))
    db.session.commit()
    return jsonify({"request": req.to_dict(with_items=True)})


@requests_bp.route("/<int:request_id>/items/<int:item_id>", methods=["DELETE"])
@login_required
def delete_item(request_id: int, item_id: int):
    req = _load_request(request_id)
    error = _require_draft(req)
    if error:
        return error

    item = ProcurementRequestItem.query.filter_by(id=item_id, request_id=req.id).first_or_404()
    before = serialize_model(item)

    req.items.remove(item)
    req.recalc_totals()
    db.session.flush()

    log_action(item, "DELETE", before=before)
    db.session.commit()
    return jsonify({"request": req.to_dict(with_items=True)})


# ---------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------
def _change_status(req: ProcurementRequest, new_status: str):
    error = transition_error(req, new_status, "request")
    if error:
        return error

    before = serialize_model(req)
    req.status = new_status
    db.session.flush()
    log_action(req, "STATUS", before=before, after=serialize_model(req))
    db.session.commit()
    return jsonify({"request": req.to_dict(with_items=True)})


@requests_bp.route("/<int:request_id>/submit", methods=["POST"])
@login_required
def submit_request(request_id: int):
    req = _load_request(request_id)
    if not req.items:
        return json_error("Add at least one item before submitting.", 400)

    error = transition_error(req, "submitted", "request")
    if error:
        return error

    before = serialize_model(req)
    # Admin submissions skip the review queue
    req.status = "approved" if is_admin() else "submitted"
    db.session.flush()
    log_action(req, "STATUS", before=before, after=serialize_model(req))
    db.session.commit()
    return jsonify({"request": req.to_dict(with_items=True)})


@requests_bp.route("/<int:request_id>/review", methods=["POST"])
@login_required
@roles_required(*REVIEWERS)
def review_request(request_id: int):
    return _change_status(ProcurementRequest.query.get_or_404(request_id), "in_review")


@requests_bp.route("/<int:request_id>/approve", methods=["POST"])
@login_required
@roles_required(*REVIEWERS)
def approve_request(request_id: int):
    return _change_status(ProcurementRequest.query.get_or_404(request_id), "approved")


@requests_bp.route("/<int:request_id>/reject", methods=["POST"])
@login_required
@roles_required(*REVIEWERS)
def reject_request(request_id: int):
    req = ProcurementRequest.query.get_or_404(request_id)
    form = ReasonForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    error = transition_error(req, "rejected", "request")
    if error:
        return error

    before = serialize_model(req)
    req.status = "rejected"
    req.rejection_reason = form.reason.data.strip()
    db.session.flush()
    log_action(req, "STATUS", before=before, after=serialize_model(req))
    db.session.commit()
    return jsonify({"request": req.to_dict(with_items=True)})


@requests_bp.route("/<int:request_id>/complete", methods=["POST"])
@login_required
@roles_required(*REVIEWERS)
def complete_request(request_id: int):
    return _change_status(ProcurementRequest.query.get_or_404(request_id), "completed")


@requests_bp.route("/<int:request_id>/cancel", methods=["POST"])
@login_required
def cancel_request(request_id: int):
    req = _load_request(request_id)
    if not (is_admin() or current_user.has_role(*REVIEWERS) or req.requester_id == current_user.id):
        return json_error("Only the requester or a procurement officer can cancel this request.", 403)
    return _change_status(req, "canceled")
