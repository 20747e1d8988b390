"""
Purchase order routes.

Lifecycle:
    draft -> pending_approval -> approved -> sent -> completed
    pending_approval -> draft (sent back)
    any status except completed -> canceled

- Items can be changed only while the PO is a draft; totals are recomputed on every change.
- New POs inherit the standard terms / instructions and the organization's base currency.
- Emailing a PO renders the standard PO template, records a po_email_logs row either way and
  moves an approved PO to sent.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required
from sqlalchemy.orm import joinedload

from ...audit import log_action, serialize_model
from ...extensions import db
from ...forms import PurchaseOrderForm, PurchaseOrderItemForm, SendPurchaseOrderForm
from ...mailer import MailerNotConfigured, TemplateRenderError, render_email, send_email
from ...models import (
    PoEmailLog,
    ProcurementRequest,
    PurchaseOrder,
    PurchaseOrderItem,
    Vendor,
)
from ...numbering import next_po_number
from ...security import roles_required
from ...seed import base_currency, get_po_settings
from ...utils import (
    json_error,
    json_formdata,
    parse_date_arg,
    parse_optional_int,
    transition_error,
    validation_error,
)

logger = logging.getLogger(__name__)

purchase_orders_bp = Blueprint("purchase_orders", __name__, url_prefix="/purchase-orders")

BUYERS = ("procurement_officer",)


def _require_draft(po: PurchaseOrder):
    if po.status != "draft":
        return json_error("Only draft purchase orders can be changed.", 400)
    return None


def _po_response(po: PurchaseOrder, status: int = 200):
    return jsonify({"purchase_order": po.to_dict(with_items=True)}), status


# ---------------------------------------------------------------------
# List / detail
# ---------------------------------------------------------------------
@purchase_orders_bp.route("/")
@login_required
def list_purchase_orders():
    q = PurchaseOrder.query.options(joinedload(PurchaseOrder.vendor))

    status = (request.args.get("status") or "").strip()
    if status:
        q = q.filter(PurchaseOrder.status == status)

    vendor_id = parse_optional_int(request.args.get("vendor_id"))
    if vendor_id is not None:
        q = q.filter(PurchaseOrder.vendor_id == vendor_id)

    date_from = parse_date_arg(request.args.get("date_from"))
    if date_from:
        q = q.filter(PurchaseOrder.order_date >= date_from)
    date_to = parse_date_arg(request.args.get("date_to"))
    if date_to:
        q = q.filter(PurchaseOrder.order_date <= date_to)

    search = (request.args.get("search") or "").strip()
    if search:
        q = q.join(Vendor, Vendor.id == PurchaseOrder.vendor_id).filter(
            PurchaseOrder.po_number.ilike(f"%{search}%") | Vendor.company_name.ilike(f"%{search}%")
        )

    rows = q.order_by(PurchaseOrder.order_date.desc(), PurchaseOrder.id.desc()).all()
    return jsonify({"purchase_orders": [po.to_dict() for po in rows]})


@purchase_orders_bp.route("/<int:po_id>")
@login_required
def get_purchase_order(po_id: int):
    po = PurchaseOrder.query.get_or_404(po_id)
    data = po.to_dict(with_items=True)
    data["email_logs"] = [log.to_dict() for log in po.email_logs]
    return jsonify({"purchase_order": data})


# ---------------------------------------------------------------------
# Create / update / delete
# ---------------------------------------------------------------------
def _check_references(form: PurchaseOrderForm):
    vendor = db.session.get(Vendor, form.vendor_id.data)
    if vendor is None or not vendor.is_active:
        return json_error("Vendor not found or inactive.", 400)

    if form.procurement_request_id.data is not None:
        req = db.session.get(ProcurementRequest, form.procurement_request_id.data)
        if req is None:
            return json_error("Procurement request not found.", 400)
        if req.status not in ("approved", "completed"):
            return json_error("Purchase orders can only be raised from approved requests.", 400)
    return None


@purchase_orders_bp.route("/", methods=["POST"])
@login_required
@roles_required(*BUYERS)
def create_purchase_order():
    form = PurchaseOrderForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    error = _check_references(form)
    if error:
        return error

    settings = get_po_settings()
    po = PurchaseOrder(
        po_number=next_po_number(),
        vendor_id=form.vendor_id.data,
        procurement_request_id=form.procurement_request_id.data,
        status="draft",
        expected_delivery_date=form.expected_delivery_date.data,
        currency=(form.currency.data or base_currency()).upper(),
        terms_and_conditions=form.terms_and_conditions.data or settings.standard_terms_and_conditions,
        specific_instructions=form.specific_instructions.data or settings.standard_specific_instructions,
        created_by=current_user.id,
    )
    if form.order_date.data:
        po.order_date = form.order_date.data

    db.session.add(po)
    db.session.flush()

    log_action(po, "CREATE", after=serialize_model(po))
    db.session.commit()
    return _po_response(po, 201)


@purchase_orders_bp.route("/<int:po_id>", methods=["PUT"])
@login_required
@roles_required(*BUYERS)
def update_purchase_order(po_id: int):
    po = PurchaseOrder.query.get_or_404(po_id)
    error = _require_draft(po)
    if error:
        return error

    form = PurchaseOrderForm(formdata=json_formdata(), obj=po)
    if not form.validate():
        return validation_error(form)

    error = _check_references(form)
    if error:
        return error

    before = serialize_model(po)
    po.vendor_id = form.vendor_id.data
    po.procurement_request_id = form.procurement_request_id.data
    po.order_date = form.order_date.data or po.order_date
    po.expected_delivery_date = form.expected_delivery_date.data
    po.currency = (form.currency.data or po.currency).upper()
    po.terms_and_conditions = form.terms_and_conditions.data or None
    po.specific_instructions = form.specific_instructions.data or None

    db.session.flush()
    log_action(po, "UPDATE", before=before, after=serialize_model(po))
    db.session.commit()
    return _po_response(po)


@purchase_orders_bp.route("/<int:po_id>", methods=["DELETE"])
@login_required
@roles_required(*BUYERS)
def delete_purchase_order(po_id: int):
    po = PurchaseOrder.query.get_or_404(po_id)
    error = _require_draft(po)
    if error:
        return error

    before = serialize_model(po)
    db.session.delete(po)
    db.session.flush()
    log_action(po, "DELETE", before=before)
    db.session.commit()
    return jsonify({"message": "Purchase order deleted."})


# ---------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------
def _apply_item_form(item: PurchaseOrderItem, form: PurchaseOrderItemForm) -> None:
    item.description = form.description.data.strip()
    item.quantity = form.quantity.data
    item.unit_price = form.unit_price.data
    item.tax_rate = form.tax_rate.data or 0


@purchase_orders_bp.route("/<int:po_id>/items", methods=["POST"])
@login_required
@roles_required(*BUYERS)
def add_item(po_id: int):
    po = PurchaseOrder.query.get_or_404(po_id)
    error = _require_draft(po)
    if error:
        return error

    form = PurchaseOrderItemForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    item = PurchaseOrderItem()
    _apply_item_form(item, form)
    po.items.append(item)
    po.recalc_totals()
    db.session.flush()

    log_action(item, "CREATE", after=serialize_model(item))
    db.session.commit()
    return _po_response(po, 201)


@purchase_orders_bp.route("/<int:po_id>/items/<int:item_id>", methods=["PUT"])
@login_required
@roles_required(*BUYERS)
def update_item(po_id: int, item_id: int):
    po = PurchaseOrder.query.get_or_404(po_id)
    error = _require_draft(po)
    if error:
        return error

    item = PurchaseOrderItem.query.filter_by(id=item_id, purchase_order_id=po.id).first_or_404()
    form = PurchaseOrderItemForm(formdata=json_formdata(), obj=item)
    if not form.validate():
        return validation_error(form)

    before = serialize_model(item)
    _apply_item_form(item, form)
    po.recalc_totals()
    db.session.flush()

    log_action(item, "UPDATE", before=before, after=serialize_model(item))
    db.session.commit()
    return _po_response(po)


@purchase_orders_bp.route("/<int:po_id>/items/<int:item_id>", methods=["DELETE"])
@login_required
@roles_required(*BUYERS)
def delete_item(po_id: int, item_id: int):
    po = PurchaseOrder.query.get_or_404(po_id)
    error = _require_draft(po)
    if error:
        return error

    item = PurchaseOrderItem.query.filter_by(id=item_id, purchase_order_id=po.id).first_or_404()
    before = serialize_model(item)

    po.items.remove(item)
    po.recalc_totals()
    db.session.flush()

    log_action(item, "DELETE", before=before)
    db.session.commit()
    return _po_response(po)


# ---------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------
def _change_status(po: PurchaseOrder, new_status: str):
    error = transition_error(po, new_status, "purchase order")
    if error:
        return error

    before = serialize_model(po)
    po.status = new_status
    db.session.flush()
    log_action(po, "STATUS", before=before, after=serialize_model(po))
    db.session.commit()
    return _po_response(po)


@purchase_orders_bp.route("/<int:po_id>/submit", methods=["POST"])
@login_required
@roles_required(*BUYERS)
def submit_purchase_order(po_id: int):
    po = PurchaseOrder.query.get_or_404(po_id)
    if not po.items:
        return json_error("Add at least one item before submitting.", 400)
    return _change_status(po, "pending_approval")


@purchase_orders_bp.route("/<int:po_id>/approve", methods=["POST"])
@login_required
@roles_required("finance_officer")
def approve_purchase_order(po_id: int):
    return _change_status(PurchaseOrder.query.get_or_404(po_id), "approved")


@purchase_orders_bp.route("/<int:po_id>/return", methods=["POST"])
@login_required
@roles_required("finance_officer")
def return_purchase_order(po_id: int):
    return _change_status(PurchaseOrder.query.get_or_404(po_id), "draft")


@purchase_orders_bp.route("/<int:po_id>/complete", methods=["POST"])
@login_required
@roles_required(*BUYERS)
def complete_purchase_order(po_id: int):
    return _change_status(PurchaseOrder.query.get_or_404(po_id), "completed")


@purchase_orders_bp.route("/<int:po_id>/cancel", methods=["POST"])
@login_required
@roles_required(*BUYERS)
def cancel_purchase_order(po_id: int):
    return _change_status(PurchaseOrder.query.get_or_404(po_id), "canceled")


# ---------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------
def _email_variables(po: PurchaseOrder) -> dict:
    return {
        "po_number": po.po_number,
        "vendor_name": po.vendor.company_name if po.vendor else "",
        "total_amount": f"{po.total_amount:,.2f}" if po.total_amount is not None else "0.00",
        "currency": po.currency,
        "expected_delivery": po.expected_delivery_date.isoformat() if po.expected_delivery_date else "To be confirmed",
        "sender_name": current_user.display_name(),
    }


def _render_po_email(po: PurchaseOrder) -> tuple[str, str]:
    settings = get_po_settings()
    return render_email(settings.email_template_subject, settings.email_template_body, _email_variables(po))


@purchase_orders_bp.route("/<int:po_id>/email-preview")
@login_required
def preview_email(po_id: int):
    po = PurchaseOrder.query.get_or_404(po_id)
    try:
        subject, body = _render_po_email(po)
    except TemplateRenderError as exc:
        return json_error(str(exc), 400)
    return jsonify({"recipient_email": po.vendor.primary_email if po.vendor else None, "subject": subject, "body": body})


@purchase_orders_bp.route("/<int:po_id>/send", methods=["POST"])
@login_required
@roles_required(*BUYERS)
def send_purchase_order(po_id: int):
    po = PurchaseOrder.query.get_or_404(po_id)
    if po.status not in ("approved", "sent"):
        return json_error("Only approved purchase orders can be emailed.", 400)

    form = SendPurchaseOrderForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    recipient = (form.recipient_email.data or "").strip() or (po.vendor.primary_email if po.vendor else None)
    if not recipient:
        return json_error("The vendor has no email address; provide recipient_email.", 400)

    try:
        subject, body = _render_po_email(po)
        result = send_email(recipient, subject, body)
    except TemplateRenderError as exc:
        return json_error(str(exc), 400)
    except MailerNotConfigured as exc:
        return json_error(str(exc), 400)

    email_log = PoEmailLog(
        recipient_email=recipient,
        subject=subject,
        status="sent" if result["success"] else "failed",
        error_message=None if result["success"] else result["message"],
        sent_by=current_user.id,
    )
    po.email_logs.append(email_log)

    before = serialize_model(po)
    if result["success"] and po.status == "approved":
        po.status = "sent"

    db.session.flush()
    log_action(po, "SEND", before=before, after=serialize_model(po))
    db.session.commit()

    if not result["success"]:
        logger.warning("PO %s email to %s failed", po.po_number, recipient)
        return json_error(f"Email could not be sent: {result['message']}", 502, log=email_log.to_dict())

    return jsonify({"message": result["message"], "log": email_log.to_dict(), "purchase_order": po.to_dict()})
