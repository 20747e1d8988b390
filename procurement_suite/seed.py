"""
Seed default settings rows.

Rules:
- Safe to run multiple times (idempotent).
- System email templates are matched by template_key; their subject/body are only written on
  first insert so admin edits survive re-seeding.
- Exactly one standard_po_settings row and one organization_settings row exist afterwards.
"""

from __future__ import annotations

import logging

from flask import current_app

from .extensions import db
from .models import (
    DEFAULT_PO_EMAIL_BODY,
    DEFAULT_PO_EMAIL_SUBJECT,
    EmailTemplate,
    OrganizationSettings,
    StandardPoSettings,
)

logger = logging.getLogger(__name__)


def _vars(*pairs: tuple[str, str]) -> list[dict]:
    return [{"name": name, "description": description} for name, description in pairs]


# Variables offered by default for a new template of each category
CATEGORY_VARIABLES = {
    "general": _vars(
        ("organization_name", "Organization name"),
        ("sender_name", "Name of person sending the email"),
        ("sender_email", "Email address of sender"),
        ("date", "Current date"),
    ),
    "purchase_orders": _vars(
        ("po_number", "Purchase Order number"),
        ("vendor_name", "Vendor/supplier name"),
        ("vendor_email", "Vendor email address"),
        ("po_date", "Purchase Order date"),
        ("total_amount", "Total PO amount with currency"),
        ("delivery_date", "Expected delivery date"),
        ("payment_terms", "Payment terms"),
        ("created_by", "User who created the PO"),
        ("organization_name", "Organization name"),
    ),
    "invoices": _vars(
        ("invoice_number", "Invoice number"),
        ("vendor_name", "Vendor name"),
        ("invoice_date", "Invoice date"),
        ("due_date", "Payment due date"),
        ("total_amount", "Total invoice amount with currency"),
        ("po_number", "Related Purchase Order number"),
        ("created_by", "User who created the invoice"),
        ("organization_name", "Organization name"),
    ),
    "rfp": _vars(
        ("rfp_title", "RFP title"),
        ("rfp_number", "RFP reference number"),
        ("vendor_name", "Vendor name"),
        ("submission_deadline", "Submission deadline"),
        ("created_by", "User who created the RFP"),
        ("organization_name", "Organization name"),
    ),
    "users": _vars(
        ("user_name", "User's full name"),
        ("user_email", "User's email address"),
        ("username", "Username for login"),
        ("role", "User's role"),
        ("department", "User's department"),
        ("organization_name", "Organization name"),
    ),
}


DEFAULT_EMAIL_TEMPLATES = [
    {
        "name": "Purchase Order Email",
        "description": "Email sent to vendors when a purchase order is created",
        "template_key": "purchase_order",
        "category": "purchase_orders",
        "subject_template": DEFAULT_PO_EMAIL_SUBJECT,
        "body_template": DEFAULT_PO_EMAIL_BODY,
        "available_variables": _vars(
            ("po_number", "Purchase Order Number"),
            ("vendor_name", "Vendor Company Name"),
            ("total_amount", "Total PO Amount"),
            ("currency", "Currency Code"),
            ("expected_delivery", "Expected Delivery Date"),
            ("sender_name", "Name of Person Sending Email"),
        ),
    },
    {
        "name": "Invoice Submission",
        "description": "Email sent when an invoice is submitted for approval",
        "template_key": "invoice_submitted",
        "category": "invoices",
        "subject_template": "Invoice {{invoice_number}} Submitted for Approval",
        "body_template": """Dear {{approver_name}},

Invoice {{invoice_number}} has been submitted for your approval.

Invoice Details:
- Invoice Number: {{invoice_number}}
- Vendor: {{vendor_name}}
- Amount: {{total_amount}} {{currency}}
- Due Date: {{due_date}}

Please review and approve at your earliest convenience.

Best regards,
{{sender_name}}""",
        "available_variables": _vars(
            ("invoice_number", "Invoice Number"),
            ("approver_name", "Approver Name"),
            ("vendor_name", "Vendor Name"),
            ("total_amount", "Invoice Total"),
            ("currency", "Currency"),
            ("due_date", "Payment Due Date"),
            ("sender_name", "Sender Name"),
        ),
    },
    {
        "name": "RFP Published",
        "description": "Email sent to vendors when an RFP is published",
        "template_key": "rfp_published",
        "category": "rfp",
        "subject_template": "New RFP Published - {{rfp_number}}",
        "body_template": """Dear {{vendor_name}},

A new Request for Proposal has been published and is now available for your review.

RFP Details:
- RFP Number: {{rfp_number}}
- Title: {{rfp_title}}
- Submission Deadline: {{submission_deadline}}

Please log in to the vendor portal to view the complete RFP details and submit your response.

Best regards,
{{organization_name}}""",
        "available_variables": _vars(
            ("rfp_number", "RFP Number"),
            ("vendor_name", "Vendor Name"),
            ("rfp_title", "RFP Title"),
            ("submission_deadline", "Submission Deadline"),
            ("organization_name", "Your Organization Name"),
        ),
    },
    {
        "name": "Welcome Email",
        "description": "Welcome email for new users",
        "template_key": "user_welcome",
        "category": "users",
        "subject_template": "Welcome to {{organization_name}}",
        "body_template": """Dear {{user_name}},

Welcome to {{organization_name}}'s procurement system!

Your account has been successfully created. You can now log in and start using the platform.

Login Details:
- Email: {{user_email}}
- Portal: {{portal_url}}

If you have any questions, please contact our support team.

Best regards,
{{organization_name}} Team""",
        "available_variables": _vars(
            ("user_name", "User Full Name"),
            ("user_email", "User Email"),
            ("organization_name", "Organization Name"),
            ("portal_url", "Portal URL"),
        ),
    },
]


def seed_email_templates() -> int:
    """Insert missing system templates. Returns how many were created."""
    created = 0
    for spec in DEFAULT_EMAIL_TEMPLATES:
        existing = EmailTemplate.query.filter_by(template_key=spec["template_key"]).first()
        if existing:
            # keep the system flag; content stays as edited
            existing.is_system = True
            continue
        db.session.add(EmailTemplate(is_system=True, is_active=True, **spec))
        created += 1
    db.session.flush()
    return created


def get_po_settings(create: bool = True) -> StandardPoSettings | None:
    row = StandardPoSettings.query.order_by(StandardPoSettings.id.asc()).first()
    if row is None and create:
        row = StandardPoSettings(
            email_template_subject=DEFAULT_PO_EMAIL_SUBJECT,
            email_template_body=DEFAULT_PO_EMAIL_BODY,
        )
        db.session.add(row)
        db.session.flush()
    return row


def get_organization_settings(create: bool = True) -> OrganizationSettings | None:
    row = OrganizationSettings.query.order_by(OrganizationSettings.id.asc()).first()
    if row is None and create:
        row = OrganizationSettings(
            organization_name=current_app.config.get("APP_NAME", "Procurement Suite"),
            base_currency=current_app.config.get("DEFAULT_CURRENCY", "USD"),
        )
        db.session.add(row)
        db.session.flush()
    return row


def base_currency() -> str:
    row = get_organization_settings(create=False)
    if row is not None and row.base_currency:
        return row.base_currency
    return current_app.config.get("DEFAULT_CURRENCY", "USD")


def seed_defaults() -> None:
    created = seed_email_templates()
    get_po_settings()
    get_organization_settings()
    db.session.commit()
    logger.info("Seeded defaults (%d new email templates)", created)
