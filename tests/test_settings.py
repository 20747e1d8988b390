"""
Integration tests for /settings: email templates, email providers, PO settings, organization.
"""
import pytest

from procurement_suite.extensions import db
from procurement_suite.models import EmailProviderSettings, EmailTemplate
from procurement_suite.seed import seed_defaults


@pytest.fixture
def po_template(app):
    with app.app_context():
        seed_defaults()
        return EmailTemplate.query.filter_by(template_key="purchase_order").one().id


def _template_payload(**overrides):
    payload = {
        "name": "Payment reminder",
        "template_key": "payment_reminder",
        "category": "general",
        "subject_template": "Reminder from {{organization_name}}",
        "body_template": "Hello {{sender_name}}",
    }
    payload.update(overrides)
    return payload


def _provider_payload(**overrides):
    payload = {
        "provider": "custom_smtp",
        "from_email": "noreply@example.test",
        "from_name": "Procurement",
        "smtp_host": "smtp.example.test",
        "smtp_port": 2525,
        "smtp_secure": True,
        "username": "mailer",
        "password": "s3cret",
        "is_active": True,
    }
    payload.update(overrides)
    return payload


# ═══════════════════════════════════════════════════════════════════════════════
# TEMPLATES
# ═══════════════════════════════════════════════════════════════════════════════

class TestTemplates:

    def test_seeded_templates_are_system(self, requester_client, po_template):
        rows = requester_client.get("/settings/templates").get_json()["templates"]
        keys = {row["template_key"] for row in rows}
        assert {"purchase_order", "invoice_submitted", "rfp_published", "user_welcome"} <= keys
        assert all(row["is_system"] for row in rows)

        rows = requester_client.get("/settings/templates?category=invoices").get_json()["templates"]
        assert [row["template_key"] for row in rows] == ["invoice_submitted"]

    def test_seeding_twice_adds_nothing(self, app, po_template):
        with app.app_context():
            before = EmailTemplate.query.count()
            seed_defaults()
            assert EmailTemplate.query.count() == before

    def test_create_uses_category_variables(self, admin_client):
        r = admin_client.post("/settings/templates", json=_template_payload())
        assert r.status_code == 201
        data = r.get_json()["template"]
        assert data["is_system"] is False
        assert "organization_name" in [v["name"] for v in data["available_variables"]]

    def test_duplicate_key_conflicts(self, admin_client, po_template):
        r = admin_client.post("/settings/templates", json=_template_payload(template_key="purchase_order"))
        assert r.status_code == 409

    def test_key_format(self, admin_client):
        r = admin_client.post("/settings/templates", json=_template_payload(template_key="Bad Key"))
        assert r.status_code == 400
        assert "template_key" in r.get_json()["fields"]

    def test_only_admin_writes(self, procurement_client):
        assert procurement_client.post("/settings/templates", json=_template_payload()).status_code == 403

    def test_system_template_is_protected(self, admin_client, po_template):
        assert admin_client.delete(f"/settings/templates/{po_template}").status_code == 400

        r = admin_client.put(
            f"/settings/templates/{po_template}",
            json=_template_payload(name="Purchase Order", template_key="po_renamed"),
        )
        assert r.status_code == 400

        r = admin_client.put(
            f"/settings/templates/{po_template}",
            json=_template_payload(name="Purchase Order v2", template_key="purchase_order"),
        )
        assert r.status_code == 200
        assert r.get_json()["template"]["name"] == "Purchase Order v2"

    def test_custom_template_can_be_deleted(self, admin_client):
        template_id = admin_client.post("/settings/templates", json=_template_payload()).get_json()["template"]["id"]
        assert admin_client.delete(f"/settings/templates/{template_id}").status_code == 200
        assert admin_client.get(f"/settings/templates/{template_id}").status_code == 404

    def test_duplicate_gets_unique_key(self, admin_client, po_template):
        first = admin_client.post(f"/settings/templates/{po_template}/duplicate").get_json()["template"]
        second = admin_client.post(f"/settings/templates/{po_template}/duplicate").get_json()["template"]
        assert first["template_key"] == "purchase_order_copy"
        assert second["template_key"] == "purchase_order_copy_2"
        assert first["name"].endswith("(Copy)")
        assert first["is_system"] is False

    def test_render_preview(self, requester_client, po_template):
        r = requester_client.post(
            f"/settings/templates/{po_template}/render",
            json={"variables": {"po_number": "PO-2025-0042", "vendor_name": "Acme"}},
        )
        data = r.get_json()
        assert data["subject"] == "Purchase Order - PO-2025-0042"
        assert "Dear Acme," in data["body"]


# ═══════════════════════════════════════════════════════════════════════════════
# EMAIL PROVIDERS
# ═══════════════════════════════════════════════════════════════════════════════

class TestEmailProviders:

    def test_preset_fills_smtp_settings(self, admin_client):
        r = admin_client.post(
            "/settings/email-providers",
            json=_provider_payload(provider="gmail", smtp_host=None, smtp_port=None),
        )
        assert r.status_code == 201
        data = r.get_json()["provider"]
        assert (data["smtp_host"], data["smtp_port"], data["smtp_secure"]) == ("smtp.gmail.com", 587, True)

    def test_password_never_serialized(self, admin_client):
        data = admin_client.post("/settings/email-providers", json=_provider_payload()).get_json()["provider"]
        assert "password" not in data
        assert data["has_password"] is True

    def test_custom_smtp_needs_host_and_port(self, admin_client):
        r = admin_client.post("/settings/email-providers", json=_provider_payload(smtp_host=""))
        assert r.status_code == 400
        assert "provider" in r.get_json()["fields"]

    def test_single_active_provider(self, app, admin_client, smtp_provider):
        new_id = admin_client.post("/settings/email-providers", json=_provider_payload()).get_json()["provider"]["id"]
        with app.app_context():
            active = EmailProviderSettings.query.filter_by(is_active=True).all()
            assert [p.id for p in active] == [new_id]
        assert admin_client.get("/settings/email-provider").get_json()["provider"]["id"] == new_id

    def test_blank_password_keeps_stored_one(self, app, admin_client, smtp_provider):
        r = admin_client.put(
            f"/settings/email-providers/{smtp_provider}",
            json=_provider_payload(password="", smtp_port=587),
        )
        assert r.status_code == 200
        with app.app_context():
            assert db.session.get(EmailProviderSettings, smtp_provider).password == "pw"

    def test_admin_only(self, procurement_client):
        assert procurement_client.get("/settings/email-providers").status_code == 403

    def test_connection_check(self, admin_client, smtp_provider, fake_smtp):
        r = admin_client.post(f"/settings/email-providers/{smtp_provider}/test")
        data = r.get_json()
        assert data["success"] is True
        assert fake_smtp.instances[-1].logged_in_as == "mailer"

    def test_test_send(self, admin_client, smtp_provider, fake_smtp):
        r = admin_client.post(f"/settings/email-providers/{smtp_provider}/test-send", json={"to_email": "me@example.test"})
        assert r.status_code == 200
        assert fake_smtp.instances[-1].sent[0][1] == ["me@example.test"]

    def test_test_send_failure(self, admin_client, smtp_provider, fake_smtp):
        fake_smtp.fail_with = OSError("timed out")
        r = admin_client.post(f"/settings/email-providers/{smtp_provider}/test-send", json={"to_email": "me@example.test"})
        assert r.status_code == 502
        assert r.get_json()["success"] is False

    def test_test_send_validates_address(self, admin_client, smtp_provider):
        r = admin_client.post(f"/settings/email-providers/{smtp_provider}/test-send", json={"to_email": "nope"})
        assert r.status_code == 400


# ═══════════════════════════════════════════════════════════════════════════════
# PO & ORGANIZATION SETTINGS
# ═══════════════════════════════════════════════════════════════════════════════

class TestPoSettings:

    def test_defaults_are_created_on_read(self, requester_client):
        data = requester_client.get("/settings/po").get_json()["po_settings"]
        assert data["email_template_subject"] == "Purchase Order - {{po_number}}"

    def test_procurement_officer_updates(self, procurement_client):
        r = procurement_client.put(
            "/settings/po",
            json={
                "standard_terms_and_conditions": "Net 30",
                "email_template_subject": "PO {{po_number}}",
                "email_template_body": "Hi {{vendor_name}}",
            },
        )
        assert r.status_code == 200
        assert r.get_json()["po_settings"]["standard_terms_and_conditions"] == "Net 30"

    def test_broken_template_rejected(self, procurement_client):
        r = procurement_client.put(
            "/settings/po", json={"email_template_subject": "PO {{po_number", "email_template_body": "x"}
        )
        assert r.status_code == 400

    def test_requester_cannot_update(self, requester_client):
        r = requester_client.put("/settings/po", json={"email_template_subject": "x", "email_template_body": "y"})
        assert r.status_code == 403


class TestOrganization:

    def test_update_normalizes_currency(self, admin_client):
        r = admin_client.put(
            "/settings/organization",
            json={"organization_name": "Acme Corp", "base_currency": "eur", "fiscal_year_start": "04-01"},
        )
        assert r.status_code == 200
        data = r.get_json()["organization"]
        assert data["base_currency"] == "EUR"
        assert data["fiscal_year_start"] == "04-01"

    def test_invalid_fiscal_year_start(self, admin_client):
        r = admin_client.put(
            "/settings/organization",
            json={"organization_name": "Acme Corp", "base_currency": "EUR", "fiscal_year_start": "13-01"},
        )
        assert r.status_code == 400

    def test_admin_only(self, finance_client):
        assert finance_client.get("/settings/organization").status_code == 200
        r = finance_client.put("/settings/organization", json={"organization_name": "X", "base_currency": "USD"})
        assert r.status_code == 403
