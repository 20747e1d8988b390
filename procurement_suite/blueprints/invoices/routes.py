"""
Invoice routes: the one invoice listing, stats, item maintenance and the approval workflow.

Lifecycle:
    submitted -> under_approval -> approved -> paid
    submitted / under_approval -> disputed | rejected   (reason required)
    disputed -> submitted                                (resubmitted after correction)

- Items are editable while the invoice is submitted or disputed.
- Header totals are always recomputed from the items (see Invoice.recalc_totals).
- An invoice references an approved purchase order unless it is flagged non-PO with a
  justification.
"""

from __future__ import annotations

from datetime import datetime

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy import func
from sqlalchemy.orm import joinedload

from ...audit import log_action, serialize_model
from ...extensions import db
from ...forms import InvoiceForm, InvoiceItemForm, PaymentForm, ReasonForm
from ...models import Invoice, InvoiceItem, PurchaseOrder, PurchaseOrderItem, Vendor
from ...numbering import next_invoice_number
from ...reporting import invoice_stats
from ...security import roles_required
from ...seed import base_currency
from ...utils import (
    json_error,
    json_formdata,
    json_payload,
    parse_bool_arg,
    parse_date_arg,
    parse_optional_int,
    transition_error,
    validation_error,
)

invoices_bp = Blueprint("invoices", __name__, url_prefix="/invoices")

INVOICE_CLERKS = ("procurement_officer", "finance_officer")
APPROVERS = ("finance_officer",)
INVOICEABLE_PO_STATUSES = ("approved", "sent", "completed")


# ---------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------
def _filtered_query():
    q = Invoice.query.options(joinedload(Invoice.vendor), joinedload(Invoice.purchase_order))

    status = (request.args.get("status") or "").strip()
    if status:
        q = q.filter(Invoice.status == status)

    vendor_id = parse_optional_int(request.args.get("vendor_id"))
    if vendor_id is not None:
        q = q.filter(Invoice.vendor_id == vendor_id)

    po_id = parse_optional_int(request.args.get("purchase_order_id"))
    if po_id is not None:
        q = q.filter(Invoice.purchase_order_id == po_id)

    non_po = parse_bool_arg(request.args.get("is_non_po_invoice"))
    if non_po is not None:
        q = q.filter(Invoice.is_non_po_invoice.is_(non_po))

    date_from = parse_date_arg(request.args.get("date_from"))
    if date_from:
        q = q.filter(Invoice.invoice_date >= date_from)
    date_to = parse_date_arg(request.args.get("date_to"))
    if date_to:
        q = q.filter(Invoice.invoice_date <= date_to)

    search = (request.args.get("search") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.join(Vendor, Vendor.id == Invoice.vendor_id).filter(
            Invoice.invoice_number.ilike(like)
            | Vendor.company_name.ilike(like)
            | func.coalesce(Invoice.notes, "").ilike(like)
        )
    return q


def _invoice_response(invoice: Invoice, status: int = 200):
    return jsonify({"invoice": invoice.to_dict(with_items=True)}), status


def _require_editable(invoice: Invoice):
    if invoice.status not in Invoice.EDITABLE_STATUSES:
        return json_error("Only submitted or disputed invoices can be changed.", 400)
    return None


# ---------------------------------------------------------------------
# List / stats / detail
# ---------------------------------------------------------------------
@invoices_bp.route("/")
@login_required
def list_invoices():
    rows = _filtered_query().order_by(Invoice.invoice_date.desc(), Invoice.id.desc()).all()
    return jsonify({"invoices": [inv.to_dict() for inv in rows]})


@invoices_bp.route("/stats")
@login_required
def stats():
    return jsonify(invoice_stats(_filtered_query().all(), base_currency()))


@invoices_bp.route("/<int:invoice_id>")
@login_required
def get_invoice(invoice_id: int):
    return _invoice_response(Invoice.query.get_or_404(invoice_id))


# ---------------------------------------------------------------------
# Create / update / delete
# ---------------------------------------------------------------------
def _resolve_purchase_order(form: InvoiceForm):
    """Returns (purchase_order_or_None, error_response_or_None)."""
    if form.purchase_order_id.data is None:
        if not form.is_non_po_invoice.data:
            return None, json_error("Link a purchase order or mark the invoice as non-PO.", 400)
        return None, None

    po = db.session.get(PurchaseOrder, form.purchase_order_id.data)
    if po is None:
        return None, json_error("Purchase order not found.", 400)
    if po.status not in INVOICEABLE_PO_STATUSES:
        return None, json_error("Invoices can only be recorded against approved purchase orders.", 400)
    if po.vendor_id != form.vendor_id.data:
        return None, json_error("The invoice vendor must match the purchase order vendor.", 400)
    return po, None


def _apply_item_form(item: InvoiceItem, form: InvoiceItemForm) -> None:
    item.description = form.description.data.strip()
    item.po_item_id = form.po_item_id.data
    item.quantity = form.quantity.data
    item.unit_price = form.unit_price.data
    item.tax_rate = form.tax_rate.data or 0
    item.discount_rate = form.discount_rate.data or 0
    item.notes = (form.notes.data or "").strip() or None


def _check_po_item(invoice: Invoice, form: InvoiceItemForm):
    if form.po_item_id.data is None:
        return None
    po_item = db.session.get(PurchaseOrderItem, form.po_item_id.data)
    if po_item is None or po_item.purchase_order_id != invoice.purchase_order_id:
        return json_error("The PO item does not belong to the invoice's purchase order.", 400)
    return None


@invoices_bp.route("/", methods=["POST"])
@login_required
@roles_required(*INVOICE_CLERKS)
def create_invoice():
    form = InvoiceForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    vendor = db.session.get(Vendor, form.vendor_id.data)
    if vendor is None:
        return json_error("Vendor not found.", 400)

    po, error = _resolve_purchase_order(form)
    if error:
        return error

    invoice_number = (form.invoice_number.data or "").strip() or next_invoice_number()
    if Invoice.query.filter_by(invoice_number=invoice_number).first():
        return json_error(f"Invoice number {invoice_number} already exists.", 409)

    currency = form.currency.data or (po.currency if po else None) or base_currency()
    invoice = Invoice(
        invoice_number=invoice_number,
        purchase_order_id=po.id if po else None,
        vendor_id=vendor.id,
        invoice_date=form.invoice_date.data,
        due_date=form.due_date.data,
        currency=currency.upper(),
        is_non_po_invoice=po is None,
        non_po_justification=(form.non_po_justification.data or "").strip() or None if po is None else None,
        notes=(form.notes.data or "").strip() or None,
        status="submitted",
        created_by=current_user.id,
    )
    db.session.add(invoice)

    # Optional inline items: {"items": [{...}, ...]}
    raw_items = json_payload().get("items") or []
    item_errors = {}
    for index, raw in enumerate(raw_items):
        item_form = InvoiceItemForm(formdata=json_formdata(raw if isinstance(raw, dict) else {}))
        if not item_form.validate():
            item_errors[str(index)] = item_form.errors
            continue
        error = _check_po_item(invoice, item_form)
        if error:
            db.session.rollback()
            return error
        item = InvoiceItem()
        _apply_item_form(item, item_form)
        invoice.items.append(item)

    if item_errors:
        db.session.rollback()
        return json_error("Validation failed", 400, fields={"items": item_errors})

    invoice.recalc_totals()
    db.session.flush()

    log_action(invoice, "CREATE", after=serialize_model(invoice))
    db.session.commit()
    return _invoice_response(invoice, 201)


@invoices_bp.route("/<int:invoice_id>", methods=["PUT"])
@login_required
@roles_required(*INVOICE_CLERKS)
def update_invoice(invoice_id: int):
    invoice = Invoice.query.get_or_404(invoice_id)
    error = _require_editable(invoice)
    if error:
        return error

    form = InvoiceForm(formdata=json_formdata(), obj=invoice)
    if not form.validate():
        return validation_error(form)

    if db.session.get(Vendor, form.vendor_id.data) is None:
        return json_error("Vendor not found.", 400)

    po, error = _resolve_purchase_order(form)
    if error:
        return error

    invoice_number = (form.invoice_number.data or "").strip() or invoice.invoice_number
    clash = Invoice.query.filter(Invoice.invoice_number == invoice_number, Invoice.id != invoice.id).first()
    if clash:
        return json_error(f"Invoice number {invoice_number} already exists.", 409)

    before = serialize_model(invoice)
    invoice.invoice_number = invoice_number
    invoice.purchase_order_id = po.id if po else None
    invoice.vendor_id = form.vendor_id.data
    invoice.invoice_date = form.invoice_date.data
    invoice.due_date = form.due_date.data
    invoice.currency = (form.currency.data or invoice.currency or base_currency()).upper()
    invoice.is_non_po_invoice = po is None
    invoice.non_po_justification = (form.non_po_justification.data or "").strip() or None if po is None else None
    invoice.notes = (form.notes.data or "").strip() or None

    db.session.flush()
    log_action(invoice, "UPDATE", before=before, after=serialize_model(invoice))
    db.session.commit()
    return _invoice_response(invoice)


@invoices_bp.route("/<int:invoice_id>", methods=["DELETE"])
@login_required
@roles_required(*INVOICE_CLERKS)
def delete_invoice(invoice_id: int):
    invoice = Invoice.query.get_or_404(invoice_id)
    if invoice.status != "submitted":
        return json_error("Only submitted invoices can be deleted.", 400)

    before = serialize_model(invoice)
    db.session.delete(invoice)
    db.session.flush()
    log_action(invoice, "DELETE", before=before)
    db.session.commit()
    return jsonify({"message": "Invoice deleted."})


# ---------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------
@invoices_bp.route("/<int:invoice_id>/items", methods=["POST"])
@login_required
@roles_required(*INVOICE_CLERKS)
def add_item(invoice_id: int):
    invoice = Invoice.query.get_or_404(invoice_id)
    error = _require_editable(invoice)
    if error:
        return error

    form = InvoiceItemForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)
    error = _check_po_item(invoice, form)
    if error:
        return error

    item = InvoiceItem()
    _apply_item_form(item, form)
    invoice.items.append(item)
    invoice.recalc_totals()
    db.session.flush()

    log_action(item, "CREATE", after=serialize_model(item))
    db.session.commit()
    return _invoice_response(invoice, 201)


@invoices_bp.route("/<int:invoice_id>/items/<int:item_id>", methods=["PUT"])
@login_required
@roles_required(*INVOICE_CLERKS)
def update_item(invoice_id: int, item_id: int):
    invoice = Invoice.query.get_or_404(invoice_id)
    error = _require_editable(invoice)
    if error:
        return error

    item = InvoiceItem.query.filter_by(id=item_id, invoice_id=invoice.id).first_or_404()
    form = InvoiceItemForm(formdata=json_formdata(), obj=item)
    if not form.validate():
        return validation_error(form)
    error = _check_po_item(invoice, form)
    if error:
        return error

    before = serialize_model(item)
    _apply_item_form(item, form)
    invoice.recalc_totals()
    db.session.flush()

    log_action(item, "UPDATE", before=before, after=serialize_model(item))
    db.session.commit()
    return _invoice_response(invoice)


@invoices_bp.route("/<int:invoice_id>/items/<int:item_id>", methods=["DELETE"])
@login_required
@roles_required(*INVOICE_CLERKS)
def delete_item(invoice_id: int, item_id: int):
    invoice = Invoice.query.get_or_404(invoice_id)
    error = _require_editable(invoice)
    if error:
        return error

    item = InvoiceItem.query.filter_by(id=item_id, invoice_id=invoice.id).first_or_404()
    before = serialize_model(item)

    invoice.items.remove(item)
    invoice.recalc_totals()
    db.session.flush()

    log_action(item, "DELETE", before=before)
    db.session.commit()
    return _invoice_response(invoice)


# ---------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------
def _commit_status(invoice: Invoice, before: dict):
    db.session.flush()
    log_action(invoice, "STATUS", before=before, after=serialize_model(invoice))
    db.session.commit()
    return _invoice_response(invoice)


def _begin(invoice: Invoice, new_status: str):
    """Validate the move and snapshot. Returns (error_response, before_snapshot)."""
    error = transition_error(invoice, new_status, "invoice")
    if error:
        return error, None
    before = serialize_model(invoice)
    invoice.status = new_status
    return None, before


@invoices_bp.route("/<int:invoice_id>/start-approval", methods=["POST"])
@login_required
@roles_required(*APPROVERS)
def start_approval(invoice_id: int):
    invoice = Invoice.query.get_or_404(invoice_id)
    if not invoice.items:
        return json_error("An invoice without items cannot be sent for approval.", 400)
    error, before = _begin(invoice, "under_approval")
    if error:
        return error
    return _commit_status(invoice, before)


@invoices_bp.route("/<int:invoice_id>/approve", methods=["POST"])
@login_required
@roles_required(*APPROVERS)
def approve_invoice(invoice_id: int):
    invoice = Invoice.query.get_or_404(invoice_id)
    if not invoice.items:
        return json_error("An invoice without items cannot be approved.", 400)
    error, before = _begin(invoice, "approved")
    if error:
        return error
    invoice.approved_by = current_user.id
    invoice.approved_at = datetime.utcnow()
    return _commit_status(invoice, before)


@invoices_bp.route("/<int:invoice_id>/dispute", methods=["POST"])
@login_required
@roles_required(*APPROVERS)
def dispute_invoice(invoice_id: int):
    invoice = Invoice.query.get_or_404(invoice_id)
    form = ReasonForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    error, before = _begin(invoice, "disputed")
    if error:
        return error
    invoice.disputed_reason = form.reason.data.strip()
    invoice.disputed_by = current_user.id
    invoice.disputed_at = datetime.utcnow()
    return _commit_status(invoice, before)


@invoices_bp.route("/<int:invoice_id>/reject", methods=["POST"])
@login_required
@roles_required(*APPROVERS)
def reject_invoice(invoice_id: int):
    invoice = Invoice.query.get_or_404(invoice_id)
    form = ReasonForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    error, before = _begin(invoice, "rejected")
    if error:
        return error
    invoice.rejected_reason = form.reason.data.strip()
    invoice.rejected_by = current_user.id
    invoice.rejected_at = datetime.utcnow()
    return _commit_status(invoice, before)


@invoices_bp.route("/<int:invoice_id>/resubmit", methods=["POST"])
@login_required
@roles_required(*INVOICE_CLERKS)
def resubmit_invoice(invoice_id: int):
    invoice = Invoice.query.get_or_404(invoice_id)
    error, before = _begin(invoice, "submitted")
    if error:
        return error
    return _commit_status(invoice, before)


@invoices_bp.route("/<int:invoice_id>/pay", methods=["POST"])
@login_required
@roles_required(*APPROVERS)
def pay_invoice(invoice_id: int):
    invoice = Invoice.query.get_or_404(invoice_id)
    form = PaymentForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    error, before = _begin(invoice, "paid")
    if error:
        return error
    invoice.payment_date = form.payment_date.data
    invoice.payment_reference = (form.payment_reference.data or "").strip() or None
    invoice.payment_method = (form.payment_method.data or "").strip() or None
    invoice.payment_notes = (form.payment_notes.data or "").strip() or None
    invoice.paid_by = current_user.id
    return _commit_status(invoice, before)
