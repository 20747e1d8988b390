"""
Budget routes: cycles, heads (income / expenditure, with sub-heads), department allocations
and the fiscal-year overview.

Workflow:
- Allocations are created only inside an open cycle and edited only while draft.
- draft -> submitted -> under_review -> approved / rejected (submitted may be decided directly).
- Approval defaults approved_amount to allocated_amount.
- Rejected allocations can be reopened to draft by their department.

Heads:
- display_order is unique per type. The pre-check below gives a friendly message; the
  (type, display_order) unique constraint is what actually guards concurrent writers.
"""

from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy.orm import joinedload

from ...audit import log_action, serialize_model
from ...extensions import db
from ...forms import (
    AllocationReviewForm,
    BudgetAllocationForm,
    BudgetCycleForm,
    BudgetHeadForm,
    ReasonForm,
)
from ...models import BudgetAllocation, BudgetCycle, BudgetHead, Department
from ...numbering import next_display_order, next_head_code
from ...reporting import budget_overview, head_rollup
from ...security import (
    ensure_department_access,
    is_admin,
    roles_required,
    scope_to_department,
)
from ...utils import (
    json_error,
    json_formdata,
    json_payload,
    parse_bool_arg,
    parse_optional_int,
    transition_error,
    validation_error,
)

budgets_bp = Blueprint("budgets", __name__, url_prefix="/budgets")

BUDGET_MANAGERS = ("finance_officer",)
BUDGET_SUBMITTERS = ("requester", "finance_officer", "procurement_officer")


# ---------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------
def _allocations_query():
    q = BudgetAllocation.query.options(
        joinedload(BudgetAllocation.head),
        joinedload(BudgetAllocation.department),
        joinedload(BudgetAllocation.cycle),
    )
    return scope_to_department(q, BudgetAllocation.department_id, *BUDGET_MANAGERS)


def _filter_by_fiscal_year(q, fiscal_year: int | None):
    if fiscal_year is None:
        return q
    return q.join(BudgetCycle, BudgetCycle.id == BudgetAllocation.cycle_id).filter(
        BudgetCycle.fiscal_year == fiscal_year
    )


def _load_allocation(allocation_id: int) -> BudgetAllocation:
    allocation = BudgetAllocation.query.get_or_404(allocation_id)
    ensure_department_access(allocation.department_id, *BUDGET_MANAGERS)
    return allocation


def _duplicate_order_message(head_type: str, order: int) -> str:
    return f"Display order {order} is already used for {head_type} type. Please choose a different order."


# =====================================================================
# CYCLES
# =====================================================================
@budgets_bp.route("/cycles")
@login_required
def cycles_list():
    q = BudgetCycle.query

    fiscal_year = parse_optional_int(request.args.get("fiscal_year"))
    if fiscal_year is not None:
        q = q.filter(BudgetCycle.fiscal_year == fiscal_year)

    status = (request.args.get("status") or "").strip()
    if status:
        q = q.filter(BudgetCycle.status == status)

    cycles = q.order_by(BudgetCycle.fiscal_year.desc(), BudgetCycle.start_date.desc()).all()
    return jsonify({"cycles": [c.to_dict() for c in cycles]})


@budgets_bp.route("/cycles", methods=["POST"])
@login_required
@roles_required(*BUDGET_MANAGERS)
def cycle_create():
    form = BudgetCycleForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    cycle = BudgetCycle(
        name=form.name.data.strip(),
        fiscal_year=form.fiscal_year.data,
        start_date=form.start_date.data,
        end_date=form.end_date.data,
        period_type=form.period_type.data,
        status="draft",
        created_by=current_user.id,
    )
    db.session.add(cycle)
    db.session.flush()

    log_action(cycle, "CREATE", after=serialize_model(cycle))
    db.session.commit()
    return jsonify({"cycle": cycle.to_dict()}), 201


@budgets_bp.route("/cycles/<int:cycle_id>", methods=["PUT"])
@login_required
@roles_required(*BUDGET_MANAGERS)
def cycle_update(cycle_id: int):
    cycle = BudgetCycle.query.get_or_404(cycle_id)
    form = BudgetCycleForm(formdata=json_formdata(), obj=cycle)
    if not form.validate():
        return validation_error(form)

    if cycle.status in ("closed", "archived"):
        return json_error("Closed or archived cycles cannot be edited.", 400)

    if form.period_type.data != cycle.period_type and cycle.allocations:
        return json_error("Cannot change the period type of a cycle that has allocations.", 400)

    before = serialize_model(cycle)
    cycle.name = form.name.data.strip()
    cycle.fiscal_year = form.fiscal_year.data
    cycle.start_date = form.start_date.data
    cycle.end_date = form.end_date.data
    cycle.period_type = form.period_type.data

    db.session.flush()
    log_action(cycle, "UPDATE", before=before, after=serialize_model(cycle))
    db.session.commit()
    return jsonify({"cycle": cycle.to_dict()})


@budgets_bp.route("/cycles/<int:cycle_id>/status", methods=["POST"])
@login_required
@roles_required(*BUDGET_MANAGERS)
def cycle_set_status(cycle_id: int):
    cycle = BudgetCycle.query.get_or_404(cycle_id)
    new_status = (json_payload().get("status") or "").strip()

    error = transition_error(cycle, new_status, "cycle")
    if error:
        return error

    before = serialize_model(cycle)
    cycle.status = new_status
    db.session.flush()
    log_action(cycle, "STATUS", before=before, after=serialize_model(cycle))
    db.session.commit()
    return jsonify({"cycle": cycle.to_dict()})


@budgets_bp.route("/cycles/<int:cycle_id>", methods=["DELETE"])
@login_required
@roles_required(*BUDGET_MANAGERS)
def cycle_delete(cycle_id: int):
    cycle = BudgetCycle.query.get_or_404(cycle_id)
    if cycle.status != "draft" or cycle.allocations:
        return json_error("Only empty draft cycles can be deleted.", 400)

    before = serialize_model(cycle)
    db.session.delete(cycle)
    db.session.flush()
    log_action(cycle, "DELETE", before=before)
    db.session.commit()
    return jsonify({"message": "Cycle deleted."})


# =====================================================================
# HEADS
# =====================================================================
@budgets_bp.route("/heads")
@login_required
def heads_list():
    q = BudgetHead.query

    head_type = (request.args.get("type") or "").strip()
    if head_type:
        q = q.filter(BudgetHead.type == head_type)

    active = parse_bool_arg(request.args.get("is_active"))
    if active is not None:
        q = q.filter(BudgetHead.is_active.is_(active))

    parent_id = parse_optional_int(request.args.get("parent_id"))
    if parent_id is not None:
        q = q.filter(BudgetHead.parent_id == parent_id)

    heads = q.order_by(BudgetHead.type.asc(), BudgetHead.display_order.asc(), BudgetHead.id.asc()).all()
    return jsonify({"heads": [h.to_dict() for h in heads]})


@budgets_bp.route("/heads/next-code")
@login_required
def heads_next_code():
    head_type = (request.args.get("type") or "expenditure").strip()
    if head_type not in BudgetHead.TYPES:
        return json_error("Type must be income or expenditure.", 400)
    return jsonify({"code": next_head_code(head_type), "display_order": next_display_order(head_type)})


@budgets_bp.route("/heads/rollup")
@login_required
def heads_rollup():
    q = _filter_by_fiscal_year(_allocations_query(), parse_optional_int(request.args.get("fiscal_year")))
    return jsonify({"heads": head_rollup(q.all())})


def _validate_head(form: BudgetHeadForm, head: BudgetHead | None):
    """Business checks shared by create / update. Returns an error response or None."""
    head_type = form.type.data

    if form.is_subhead.data:
        parent = db.session.get(BudgetHead, form.parent_id.data)
        if parent is None:
            return json_error("Parent head not found.", 400)
        if head is not None and parent.id == head.id:
            return json_error("A head cannot be its own parent.", 400)
        if parent.is_subhead:
            return json_error("The parent must be a main head.", 400)
        if parent.type != head_type:
            return json_error("A sub-head must have the same type as its parent.", 400)
        if head is not None and head.children:
            return json_error("A head with sub-heads cannot become a sub-head.", 400)

    if form.display_order.data is not None:
        clash = BudgetHead.query.filter(
            BudgetHead.type == head_type,
            BudgetHead.display_order == form.display_order.data,
        )
        if head is not None:
            clash = clash.filter(BudgetHead.id != head.id)
        if clash.first():
            return json_error(_duplicate_order_message(head_type, form.display_order.data), 409)

    code = (form.code.data or "").strip()
    if code:
        clash = BudgetHead.query.filter(BudgetHead.code == code)
        if head is not None:
            clash = clash.filter(BudgetHead.id != head.id)
        if clash.first():
            return json_error(f"Code {code} is already in use.", 409)

    return None


def _apply_head_form(head: BudgetHead, form: BudgetHeadForm) -> None:
    head.name = form.name.data.strip()
    head.description = (form.description.data or "").strip() or None
    head.type = form.type.data
    head.is_subhead = bool(form.is_subhead.data)
    head.parent_id = form.parent_id.data if head.is_subhead else None
    head.is_active = bool(form.is_active.data)
    head.allow_department_subitems = bool(form.allow_department_subitems.data)


@budgets_bp.route("/heads", methods=["POST"])
@login_required
@roles_required(*BUDGET_MANAGERS)
def head_create():
    form = BudgetHeadForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    error = _validate_head(form, None)
    if error:
        return error

    head = BudgetHead(created_by=current_user.id)
    _apply_head_form(head, form)
    head.code = (form.code.data or "").strip() or next_head_code(head.type)
    head.display_order = form.display_order.data or next_display_order(head.type)

    db.session.add(head)
    db.session.flush()

    log_action(head, "CREATE", after=serialize_model(head))
    db.session.commit()
    return jsonify({"head": head.to_dict()}), 201


@budgets_bp.route("/heads/<int:head_id>", methods=["PUT"])
@login_required
@roles_required(*BUDGET_MANAGERS)
def head_update(head_id: int):
    head = BudgetHead.query.get_or_404(head_id)
    form = BudgetHeadForm(formdata=json_formdata(), obj=head)
    if not form.validate():
        return validation_error(form)

    if form.type.data != head.type and head.children:
        return json_error("Cannot change the type of a head that has sub-heads.", 400)

    error = _validate_head(form, head)
    if error:
        return error

    before = serialize_model(head)
    _apply_head_form(head, form)
    head.code = (form.code.data or "").strip() or head.code
    head.display_order = form.display_order.data or head.display_order

    db.session.flush()
    log_action(head, "UPDATE", before=before, after=serialize_model(head))
    db.session.commit()
    return jsonify({"head": head.to_dict()})


@budgets_bp.route("/heads/<int:head_id>", methods=["DELETE"])
@login_required
@roles_required(*BUDGET_MANAGERS)
def head_delete(head_id: int):
    head = BudgetHead.query.get_or_404(head_id)

    if head.children:
        return json_error("Delete or move the sub-heads first.", 409)
    if BudgetAllocation.query.filter_by(head_id=head.id).first():
        return json_error("Head has allocations; deactivate it instead.", 409)

    before = serialize_model(head)
    db.session.delete(head)
    db.session.flush()
    log_action(head, "DELETE", before=before)
    db.session.commit()
    return jsonify({"message": "Budget head deleted."})


# =====================================================================
# ALLOCATIONS
# =====================================================================
@budgets_bp.route("/allocations")
@login_required
def allocations_list():
    q = _filter_by_fiscal_year(_allocations_query(), parse_optional_int(request.args.get("fiscal_year")))

    for arg, column in (
        ("cycle_id", BudgetAllocation.cycle_id),
        ("head_id", BudgetAllocation.head_id),
        ("department_id", BudgetAllocation.department_id),
        ("period_number", BudgetAllocation.period_number),
    ):
        value = parse_optional_int(request.args.get(arg))
        if value is not None:
            q = q.filter(column == value)

    status = (request.args.get("status") or "").strip()
    if status:
        q = q.filter(BudgetAllocation.status == status)

    allocations = q.order_by(BudgetAllocation.period_number.asc(), BudgetAllocation.id.asc()).all()
    return jsonify({"allocations": [a.to_dict() for a in allocations]})


@budgets_bp.route("/allocations/<int:allocation_id>")
@login_required
def allocation_detail(allocation_id: int):
    return jsonify({"allocation": _load_allocation(allocation_id).to_dict()})


def _validate_allocation(form: BudgetAllocationForm):
    """Returns (cycle, head, error_response)."""
    cycle = db.session.get(BudgetCycle, form.cycle_id.data)
    if cycle is None:
        return None, None, json_error("Budget cycle not found.", 400)
    if cycle.status != "open":
        return cycle, None, json_error("Allocations can only be changed in an open budget cycle.", 400)
    if form.period_number.data > cycle.max_period:
        return cycle, None, json_error(
            f"Period must be between 1 and {cycle.max_period} for a {cycle.period_type} cycle.", 400
        )

    head = db.session.get(BudgetHead, form.head_id.data)
    if head is None or not head.is_active:
        return cycle, None, json_error("Budget head not found or inactive.", 400)

    if form.department_id.data is not None and db.session.get(Department, form.department_id.data) is None:
        return cycle, head, json_error("Department not found.", 400)

    return cycle, head, None


@budgets_bp.route("/allocations", methods=["POST"])
@login_required
@roles_required(*BUDGET_SUBMITTERS)
def allocation_create():
    form = BudgetAllocationForm(formdata=json_formdata())
    if form.department_id.data is None and not is_admin():
        form.department_id.data = current_user.department_id
    if not form.validate():
        return validation_error(form)

    ensure_department_access(form.department_id.data, *BUDGET_MANAGERS)
    _, _, error = _validate_allocation(form)
    if error:
        return error

    allocation = BudgetAllocation(
        cycle_id=form.cycle_id.data,
        head_id=form.head_id.data,
        department_id=form.department_id.data,
        period_number=form.period_number.data,
        allocated_amount=form.allocated_amount.data,
        notes=(form.notes.data or "").strip() or None,
        status="draft",
    )
    db.session.add(allocation)
    db.session.flush()

    log_action(allocation, "CREATE", after=serialize_model(allocation))
    db.session.commit()
    return jsonify({"allocation": allocation.to_dict()}), 201


@budgets_bp.route("/allocations/<int:allocation_id>", methods=["PUT"])
@login_required
@roles_required(*BUDGET_SUBMITTERS)
def allocation_update(allocation_id: int):
    allocation = _load_allocation(allocation_id)
    if allocation.status != "draft":
        return json_error("Only draft allocations can be edited.", 400)

    form = BudgetAllocationForm(formdata=json_formdata(), obj=allocation)
    if not form.validate():
        return validation_error(form)

    ensure_department_access(form.department_id.data, *BUDGET_MANAGERS)
    _, _, error = _validate_allocation(form)
    if error:
        return error

    before = serialize_model(allocation)
    allocation.cycle_id = form.cycle_id.data
    allocation.head_id = form.head_id.data
    allocation.department_id = form.department_id.data
    allocation.period_number = form.period_number.data
    allocation.allocated_amount = form.allocated_amount.data
    allocation.notes = (form.notes.data or "").strip() or None

    db.session.flush()
    log_action(allocation, "UPDATE", before=before, after=serialize_model(allocation))
    db.session.commit()
    return jsonify({"allocation": allocation.to_dict()})


@budgets_bp.route("/allocations/<int:allocation_id>", methods=["DELETE"])
@login_required
@roles_required(*BUDGET_SUBMITTERS)
def allocation_delete(allocation_id: int):
    allocation = _load_allocation(allocation_id)
    if allocation.status != "draft":
        return json_error("Only draft allocations can be deleted.", 400)

    before = serialize_model(allocation)
    db.session.delete(allocation)
    db.session.flush()
    log_action(allocation, "DELETE", before=before)
    db.session.commit()
    return jsonify({"message": "Allocation deleted."})


def _move(allocation: BudgetAllocation, new_status: str):
    error = transition_error(allocation, new_status, "allocation")
    if error:
        return error, None
    before = serialize_model(allocation)
    allocation.status = new_status
    return None, before


def _finish(allocation: BudgetAllocation, before: dict):
    db.session.flush()
    log_action(allocation, "STATUS", before=before, after=serialize_model(allocation))
    db.session.commit()
    return jsonify({"allocation": allocation.to_dict()})


@budgets_bp.route("/allocations/<int:allocation_id>/submit", methods=["POST"])
@login_required
@roles_required(*BUDGET_SUBMITTERS)
def allocation_submit(allocation_id: int):
    allocation = _load_allocation(allocation_id)
    error, before = _move(allocation, "submitted")
    if error:
        return error
    allocation.submitted_by = current_user.id
    allocation.submitted_at = datetime.utcnow()
    return _finish(allocation, before)


@budgets_bp.route("/allocations/<int:allocation_id>/review", methods=["POST"])
@login_required
@roles_required(*BUDGET_MANAGERS)
def allocation_review(allocation_id: int):
    allocation = BudgetAllocation.query.get_or_404(allocation_id)
    error, before = _move(allocation, "under_review")
    if error:
        return error
    allocation.reviewed_by = current_user.id
    allocation.reviewed_at = datetime.utcnow()
    return _finish(allocation, before)


@budgets_bp.route("/allocations/<int:allocation_id>/approve", methods=["POST"])
@login_required
@roles_required(*BUDGET_MANAGERS)
def allocation_approve(allocation_id: int):
    allocation = BudgetAllocation.query.get_or_404(allocation_id)
    form = AllocationReviewForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    error, before = _move(allocation, "approved")
    if error:
        return error

    if form.approved_amount.data is not None:
        allocation.approved_amount = form.approved_amount.data
    else:
        allocation.approved_amount = allocation.allocated_amount
    if form.notes.data:
        allocation.notes = form.notes.data.strip()
    allocation.reviewed_by = current_user.id
    allocation.reviewed_at = datetime.utcnow()
    return _finish(allocation, before)


@budgets_bp.route("/allocations/<int:allocation_id>/reject", methods=["POST"])
@login_required
@roles_required(*BUDGET_MANAGERS)
def allocation_reject(allocation_id: int):
    allocation = BudgetAllocation.query.get_or_404(allocation_id)
    form = ReasonForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    error, before = _move(allocation, "rejected")
    if error:
        return error

    allocation.approved_amount = None
    allocation.notes = form.reason.data.strip()
    allocation.reviewed_by = current_user.id
    allocation.reviewed_at = datetime.utcnow()
    return _finish(allocation, before)


@budgets_bp.route("/allocations/<int:allocation_id>/reopen", methods=["POST"])
@login_required
@roles_required(*BUDGET_SUBMITTERS)
def allocation_reopen(allocation_id: int):
    allocation = _load_allocation(allocation_id)
    error, before = _move(allocation, "draft")
    if error:
        return error
    allocation.submitted_by = None
    allocation.submitted_at = None
    return _finish(allocation, before)


# =====================================================================
# OVERVIEW
# =====================================================================
@budgets_bp.route("/overview")
@login_required
def overview():
    """
    Fiscal-year summary. Non-admins are limited to their own department; admins may pass
    department_id to narrow the view.
    """
    fiscal_year = parse_optional_int(request.args.get("fiscal_year")) or datetime.utcnow().year
    q = _filter_by_fiscal_year(_allocations_query(), fiscal_year)

    department_id = parse_optional_int(request.args.get("department_id"))
    if is_admin() and department_id is not None:
        q = q.filter(BudgetAllocation.department_id == department_id)
        departments = Department.query.filter_by(id=department_id).all()
    elif is_admin():
        departments = Department.query.filter_by(is_active=True).order_by(Department.name.asc()).all()
    else:
        departments = Department.query.filter_by(id=current_user.department_id).all()

    summary = budget_overview(q.all(), departments)
    summary["fiscal_year"] = fiscal_year
    return jsonify(summary)
