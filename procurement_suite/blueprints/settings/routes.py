"""
Settings routes.

Scope:
- Email templates CRUD, duplicate and render preview (admin writes; any logged-in user reads)
- Email provider settings, connection test and test send (admin-only)
- Standard PO settings (admin + procurement officer)
- Organization settings (admin-only)

SECURITY:
- Provider passwords are never serialized; responses carry has_password instead.
- System templates cannot be deleted and keep their template_key.

AUDIT:
- CREATE/UPDATE/DELETE on settings rows is audited via audit.log_action.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from ...audit import log_action, serialize_model
from ...extensions import db
from ...forms import (
    EmailProviderForm,
    EmailTemplateForm,
    OrganizationSettingsForm,
    PoSettingsForm,
    SendTestEmailForm,
)
from ...mailer import (
    MailerNotConfigured,
    TemplateRenderError,
    active_provider,
    check_connection,
    render_email,
    send_test_email,
)
from ...models import EmailProviderSettings, EmailTemplate
from ...security import admin_required, roles_required
from ...seed import CATEGORY_VARIABLES, get_organization_settings, get_po_settings
from ...utils import json_error, json_formdata, json_payload, parse_bool_arg, validation_error

logger = logging.getLogger(__name__)

settings_bp = Blueprint("settings", __name__, url_prefix="/settings")

PO_SETTINGS_EDITORS = ("procurement_officer",)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------
def _available_variables(category: str):
    """Variables from the JSON body when given, else the category defaults."""
    raw = json_payload().get("available_variables")
    if isinstance(raw, list):
        cleaned = []
        for entry in raw:
            if isinstance(entry, dict) and entry.get("name"):
                cleaned.append({"name": str(entry["name"]), "description": str(entry.get("description") or "")})
            elif isinstance(entry, str) and entry.strip():
                cleaned.append({"name": entry.strip(), "description": ""})
        return cleaned
    return list(CATEGORY_VARIABLES.get(category, CATEGORY_VARIABLES["general"]))


def _template_key_taken(key: str, exclude_id: int | None = None) -> bool:
    q = EmailTemplate.query.filter(EmailTemplate.template_key == key)
    if exclude_id is not None:
        q = q.filter(EmailTemplate.id != exclude_id)
    return db.session.query(q.exists()).scalar()


# ----------------------------------------------------------------------
# Email templates
# ----------------------------------------------------------------------
@settings_bp.route("/templates")
@login_required
def list_templates():
    q = EmailTemplate.query

    category = (request.args.get("category") or "").strip()
    if category:
        q = q.filter(EmailTemplate.category == category)

    is_active = parse_bool_arg(request.args.get("is_active"))
    if is_active is not None:
        q = q.filter(EmailTemplate.is_active.is_(is_active))

    templates = q.order_by(EmailTemplate.category.asc(), EmailTemplate.name.asc()).all()
    return jsonify({"templates": [t.to_dict() for t in templates]})


@settings_bp.route("/templates/variables")
@login_required
def template_variables():
    return jsonify({"variables": CATEGORY_VARIABLES})


@settings_bp.route("/templates/<int:template_id>")
@login_required
def get_template(template_id: int):
    return jsonify({"template": EmailTemplate.query.get_or_404(template_id).to_dict()})


@settings_bp.route("/templates", methods=["POST"])
@login_required
@admin_required
def create_template():
    form = EmailTemplateForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    key = form.template_key.data.strip()
    if _template_key_taken(key):
        return json_error(f"Template key '{key}' is already in use.", 409)

    category = (form.category.data or "general").strip()
    template = EmailTemplate(
        name=form.name.data.strip(),
        description=(form.description.data or "").strip() or None,
        template_key=key,
        category=category,
        subject_template=form.subject_template.data,
        body_template=form.body_template.data,
        available_variables=_available_variables(category),
        is_active=bool(form.is_active.data),
        is_system=False,
        created_by=current_user.id,
    )
    db.session.add(template)
    db.session.flush()

    log_action(template, "CREATE", after=serialize_model(template))
    db.session.commit()
    return jsonify({"template": template.to_dict()}), 201


@settings_bp.route("/templates/<int:template_id>", methods=["PUT"])
@login_required
@admin_required
def update_template(template_id: int):
    template = EmailTemplate.query.get_or_404(template_id)
    form = EmailTemplateForm(formdata=json_formdata(), obj=template)
    if not form.validate():
        return validation_error(form)

    key = form.template_key.data.strip()
    if template.is_system and key != template.template_key:
        return json_error("The key of a system template cannot be changed.", 400)
    if _template_key_taken(key, exclude_id=template.id):
        return json_error(f"Template key '{key}' is already in use.", 409)

    before = serialize_model(template)
    template.name = form.name.data.strip()
    template.description = (form.description.data or "").strip() or None
    template.template_key = key
    template.category = (form.category.data or template.category or "general").strip()
    template.subject_template = form.subject_template.data
    template.body_template = form.body_template.data
    template.is_active = bool(form.is_active.data)
    if "available_variables" in json_payload():
        template.available_variables = _available_variables(template.category)

    db.session.flush()
    log_action(template, "UPDATE", before=before, after=serialize_model(template))
    db.session.commit()
    return jsonify({"template": template.to_dict()})


@settings_bp.route("/templates/<int:template_id>", methods=["DELETE"])
@login_required
@admin_required
def delete_template(template_id: int):
    template = EmailTemplate.query.get_or_404(template_id)
    if template.is_system:
        return json_error("System templates cannot be deleted.", 400)

    before = serialize_model(template)
    db.session.delete(template)
    db.session.flush()
    log_action(template, "DELETE", before=before)
    db.session.commit()
    return jsonify({"message": "Template deleted."})


@settings_bp.route("/templates/<int:template_id>/duplicate", methods=["POST"])
@login_required
@admin_required
def duplicate_template(template_id: int):
    source = EmailTemplate.query.get_or_404(template_id)

    key = f"{source.template_key}_copy"
    suffix = 2
    while _template_key_taken(key):
        key = f"{source.template_key}_copy_{suffix}"
        suffix += 1

    copy = EmailTemplate(
        name=f"{source.name} (Copy)",
        description=source.description,
        template_key=key,
        category=source.category,
        subject_template=source.subject_template,
        body_template=source.body_template,
        available_variables=list(source.available_variables or []),
        is_active=source.is_active,
        is_system=False,
        created_by=current_user.id,
    )
    db.session.add(copy)
    db.session.flush()

    log_action(copy, "CREATE", after=serialize_model(copy))
    db.session.commit()
    return jsonify({"template": copy.to_dict()}), 201


@settings_bp.route("/templates/<int:template_id>/render", methods=["POST"])
@login_required
def render_template_preview(template_id: int):
    template = EmailTemplate.query.get_or_404(template_id)
    variables = json_payload().get("variables") or {}
    if not isinstance(variables, dict):
        return json_error("variables must be an object.", 400)

    try:
        subject, body = render_email(template.subject_template, template.body_template, variables)
    except TemplateRenderError as exc:
        return json_error(str(exc), 400)
    return jsonify({"subject": subject, "body": body})


# ----------------------------------------------------------------------
# Email provider
# ----------------------------------------------------------------------
@settings_bp.route("/email-providers")
@login_required
@admin_required
def list_email_providers():
    rows = EmailProviderSettings.query.order_by(EmailProviderSettings.id.asc()).all()
    return jsonify({"providers": [row.to_dict() for row in rows]})


@settings_bp.route("/email-provider")
@login_required
@admin_required
def get_active_email_provider():
    provider = active_provider()
    return jsonify({"provider": provider.to_dict() if provider else None})


def _apply_provider_form(provider: EmailProviderSettings, form: EmailProviderForm) -> None:
    provider.provider = form.provider.data
    provider.from_email = form.from_email.data.strip()
    provider.from_name = (form.from_name.data or "").strip() or None
    provider.smtp_host = (form.smtp_host.data or "").strip() or None
    provider.smtp_port = form.smtp_port.data
    provider.smtp_secure = bool(form.smtp_secure.data)
    provider.username = (form.username.data or "").strip() or None
    # blank password keeps the stored one
    if form.password.data:
        provider.password = form.password.data
    provider.is_active = bool(form.is_active.data)
    provider.apply_preset()


def _deactivate_others(provider: EmailProviderSettings) -> None:
    if not provider.is_active:
        return
    (
        EmailProviderSettings.query.filter(
            EmailProviderSettings.id != provider.id,
            EmailProviderSettings.is_active.is_(True),
        ).update({"is_active": False}, synchronize_session=False)
    )


@settings_bp.route("/email-providers", methods=["POST"])
@login_required
@admin_required
def create_email_provider():
    form = EmailProviderForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    provider = EmailProviderSettings()
    _apply_provider_form(provider, form)
    db.session.add(provider)
    db.session.flush()
    _deactivate_others(provider)

    log_action(provider, "CREATE", after=serialize_model(provider))
    db.session.commit()
    return jsonify({"provider": provider.to_dict()}), 201


@settings_bp.route("/email-providers/<int:provider_id>", methods=["PUT"])
@login_required
@admin_required
def update_email_provider(provider_id: int):
    provider = EmailProviderSettings.query.get_or_404(provider_id)
    form = EmailProviderForm(formdata=json_formdata(), obj=provider)
    if not form.validate():
        return validation_error(form)

    before = serialize_model(provider)
    _apply_provider_form(provider, form)
    db.session.flush()
    _deactivate_others(provider)

    log_action(provider, "UPDATE", before=before, after=serialize_model(provider))
    db.session.commit()
    return jsonify({"provider": provider.to_dict()})


@settings_bp.route("/email-providers/<int:provider_id>", methods=["DELETE"])
@login_required
@admin_required
def delete_email_provider(provider_id: int):
    provider = EmailProviderSettings.query.get_or_404(provider_id)
    before = serialize_model(provider)
    db.session.delete(provider)
    db.session.flush()
    log_action(provider, "DELETE", before=before)
    db.session.commit()
    return jsonify({"message": "Email provider deleted."})


@settings_bp.route("/email-providers/<int:provider_id>/test", methods=["POST"])
@login_required
@admin_required
def check_email_provider(provider_id: int):
    provider = EmailProviderSettings.query.get_or_404(provider_id)
    result = check_connection(provider)
    logger.info("SMTP connection test for provider %s: %s", provider.id, result["message"])
    return jsonify(result)


@settings_bp.route("/email-providers/<int:provider_id>/test-send", methods=["POST"])
@login_required
@admin_required
def send_provider_test_email(provider_id: int):
    provider = EmailProviderSettings.query.get_or_404(provider_id)
    form = SendTestEmailForm(formdata=json_formdata())
    if not form.validate():
        return validation_error(form)

    try:
        result = send_test_email(provider, form.to_email.data.strip())
    except MailerNotConfigured as exc:
        return json_error(str(exc), 400)
    return jsonify(result), (200 if result["success"] else 502)


# ----------------------------------------------------------------------
# Standard PO settings
# ----------------------------------------------------------------------
@settings_bp.route("/po")
@login_required
def get_po_settings_route():
    row = get_po_settings()
    db.session.commit()
    return jsonify({"po_settings": row.to_dict()})


@settings_bp.route("/po", methods=["PUT"])
@login_required
@roles_required(*PO_SETTINGS_EDITORS)
def update_po_settings():
    row = get_po_settings()
    form = PoSettingsForm(formdata=json_formdata(), obj=row)
    if not form.validate():
        return validation_error(form)

    try:
        render_email(form.email_template_subject.data, form.email_template_body.data)
    except TemplateRenderError as exc:
        return json_error(str(exc), 400)

    before = serialize_model(row)
    row.standard_terms_and_conditions = (form.standard_terms_and_conditions.data or "").strip() or None
    row.standard_specific_instructions = (form.standard_specific_instructions.data or "").strip() or None
    row.email_template_subject = form.email_template_subject.data
    row.email_template_body = form.email_template_body.data
    if row.created_by is None:
        row.created_by = current_user.id
    db.session.flush()

    log_action(row, "UPDATE", before=before, after=serialize_model(row))
    db.session.commit()
    return jsonify({"po_settings": row.to_dict()})


# ----------------------------------------------------------------------
# Organization settings
# ----------------------------------------------------------------------
@settings_bp.route("/organization")
@login_required
def get_organization():
    row = get_organization_settings()
    db.session.commit()
    return jsonify({"organization": row.to_dict()})


@settings_bp.route("/organization", methods=["PUT"])
@login_required
@admin_required
def update_organization():
    row = get_organization_settings()
    form = OrganizationSettingsForm(formdata=json_formdata(), obj=row)
    if not form.validate():
        return validation_error(form)

    before = serialize_model(row)
    row.organization_name = form.organization_name.data.strip()
    row.base_currency = form.base_currency.data.strip().upper()
    row.date_format = (form.date_format.data or "YYYY-MM-DD").strip()
    row.fiscal_year_start = (form.fiscal_year_start.data or "01-01").strip()
    row.time_zone = (form.time_zone.data or "UTC").strip()
    row.logo_url = (form.logo_url.data or "").strip() or None
    db.session.flush()

    log_action(row, "UPDATE", before=before, after=serialize_model(row))
    db.session.commit()
    return jsonify({"organization": row.to_dict()})
