"""
Master data: departments and vendors.

- Everyone logged in can read (dropdowns, filters).
- Departments: admin only.
- Vendors: admin and procurement officers.
- Rows referenced by documents are never deleted; deactivate them instead.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request
from flask_login import login_required
from sqlalchemy import func

from ...audit import log_action, serialize_model
from ...extensions import db
from ...forms import DepartmentForm, VendorForm
from ...models import (
    BudgetAllocation,
    Department,
    Invoice,
    ProcurementRequest,
    PurchaseOrder,
    RfpResponse,
    User,
    Vendor,
)
from ...security import admin_required, roles_required
from ...utils import json_error, json_formdata, parse_bool_arg, validation_error

master_data_bp = Blueprint("master_data", __name__, url_prefix="/master-data")


def _clean(value):
    value = (value or "").strip()
    return value or None


# ----------------------------------------------------------------------
# DEPARTMENTS
# ----------------------------------------------------------------------
@master_data_bp.route("/departments")
@login_required
def departments_list():
    query = Department.query
    active = parse_bool_arg(request.args.get("is_active"))
    if active is not None:
        query = query.filter(Department.is_active.is_(active))
    departments = query.order_by(Department.name.asc()).all()
    return jsonify({"departments": [d.to_dict() for d in departments]})


@master_data_bp.route("/departments", methods=["POST"])
@login_required
@admin_required
def department_create():
    form = DepartmentForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    name = form.name.data.strip()
    if Department.query.filter(func.lower(Department.name) == name.lower()).first():
        return json_error("A department with this name already exists.", 409)

    department = Department(name=name, code=_clean(form.code.data), is_active=bool(form.is_active.data))
    db.session.add(department)
    db.session.flush()

    log_action(department, "CREATE", after=serialize_model(department))
    db.session.commit()
    return jsonify({"department": department.to_dict()}), 201


@master_data_bp.route("/departments/<int:department_id>", methods=["PUT"])
@login_required
@admin_required
def department_update(department_id: int):
    department = Department.query.get_or_404(department_id)
    form = DepartmentForm(formdata=json_formdata(), obj=department)
    if not form.validate():
        return validation_error(form)

    name = form.name.data.strip()
    clash = Department.query.filter(
        func.lower(Department.name) == name.lower(), Department.id != department.id
    ).first()
    if clash:
        return json_error("A department with this name already exists.", 409)

    before = serialize_model(department)
    department.name = name
    department.code = _clean(form.code.data)
    department.is_active = bool(form.is_active.data)

    db.session.flush()
    log_action(department, "UPDATE", before=before, after=serialize_model(department))
    db.session.commit()
    return jsonify({"department": department.to_dict()})


@master_data_bp.route("/departments/<int:department_id>", methods=["DELETE"])
@login_required
@admin_required
def department_delete(department_id: int):
    department = Department.query.get_or_404(department_id)

    in_use = (
        User.query.filter_by(department_id=department.id).first()
        or BudgetAllocation.query.filter_by(department_id=department.id).first()
        or ProcurementRequest.query.filter_by(department_id=department.id).first()
    )
    if in_use:
        return json_error("Department is in use; deactivate it instead.", 409)

    before = serialize_model(department)
    db.session.delete(department)
    db.session.flush()

    log_action(department, "DELETE", before=before)
    db.session.commit()
    return jsonify({"message": "Department deleted."})


# ----------------------------------------------------------------------
# VENDORS
# ----------------------------------------------------------------------
@master_data_bp.route("/vendors")
@login_required
def vendors_list():
    query = Vendor.query

    active = parse_bool_arg(request.args.get("is_active"))
    if active is not None:
        query = query.filter(Vendor.is_active.is_(active))

    search = (request.args.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        query = query.filter(
            func.coalesce(Vendor.company_name, "").ilike(like)
            | func.coalesce(Vendor.tax_id, "").ilike(like)
            | func.coalesce(Vendor.primary_email, "").ilike(like)
        )

    vendors = query.order_by(Vendor.company_name.asc()).all()
    return jsonify({"vendors": [v.to_dict() for v in vendors]})


@master_data_bp.route("/vendors/<int:vendor_id>")
@login_required
def vendor_detail(vendor_id: int):
    return jsonify({"vendor": Vendor.query.get_or_404(vendor_id).to_dict()})


def _apply_vendor_form(vendor: Vendor, form: VendorForm) -> None:
    vendor.company_name = form.company_name.data.strip()
    vendor.tax_id = _clean(form.tax_id.data)
    vendor.primary_email = _clean(form.primary_email.data)
    vendor.primary_phone = _clean(form.primary_phone.data)
    vendor.address = _clean(form.address.data)
    vendor.is_active = bool(form.is_active.data)


@master_data_bp.route("/vendors", methods=["POST"])
@login_required
@roles_required("procurement_officer")
def vendor_create():
    form = VendorForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    tax_id = _clean(form.tax_id.data)
    if tax_id and Vendor.query.filter_by(tax_id=tax_id).first():
        return json_error("A vendor with this tax ID already exists.", 409)

    vendor = Vendor()
    _apply_vendor_form(vendor, form)
    db.session.add(vendor)
    db.session.flush()

    log_action(vendor, "CREATE", after=serialize_model(vendor))
    db.session.commit()
    return jsonify({"vendor": vendor.to_dict()}), 201


@master_data_bp.route("/vendors/<int:vendor_id>", methods=["PUT"])
@login_required
@roles_required("procurement_officer")
def vendor_update(vendor_id: int):
    vendor = Vendor.query.get_or_404(vendor_id)
    form = VendorForm(formdata=json_formdata(), obj=vendor)
    if not form.validate():
        return validation_error(form)

    tax_id = _clean(form.tax_id.data)
    if tax_id and Vendor.query.filter(Vendor.tax_id == tax_id, Vendor.id != vendor.id).first():
        return json_error("A vendor with this tax ID already exists.", 409)

    before = serialize_model(vendor)
    _apply_vendor_form(vendor, form)

    db.session.flush()
    log_action(vendor, "UPDATE", before=before, after=serialize_model(vendor))
    db.session.commit()
    return jsonify({"vendor": vendor.to_dict()})


@master_data_bp.route("/vendors/<int:vendor_id>", methods=["DELETE"])
@login_required
@roles_required("procurement_officer")
def vendor_delete(vendor_id: int):
    vendor = Vendor.query.get_or_404(vendor_id)

    in_use = (
        PurchaseOrder.query.filter_by(vendor_id=vendor.id).first()
        or Invoice.query.filter_by(vendor_id=vendor.id).first()
        or RfpResponse.query.filter_by(vendor_id=vendor.id).first()
    )
    if in_use:
        return json_error("Vendor is referenced by documents; deactivate it instead.", 409)

    before = serialize_model(vendor)
    db.session.delete(vendor)
    db.session.flush()

    log_action(vendor, "DELETE", before=before)
    db.session.commit()
    return jsonify({"message": "Vendor deleted."})
