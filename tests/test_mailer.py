"""
Unit tests for procurement_suite.mailer: template rendering, connection checks and delivery.
"""
import smtplib

import pytest

from procurement_suite.mailer import (
    MailerNotConfigured,
    TemplateRenderError,
    check_connection,
    render_email,
    render_template_text,
    send_email,
)
from procurement_suite.models import EmailProviderSettings


def _provider(**overrides):
    values = dict(
        provider="custom_smtp",
        from_email="noreply@example.test",
        from_name="Procurement",
        smtp_host="smtp.example.test",
        smtp_port=587,
        smtp_secure=True,
        username="mailer",
        password="pw",
        is_active=True,
    )
    values.update(overrides)
    return EmailProviderSettings(**values)


class TestRendering:

    def test_variables_are_substituted(self):
        assert render_template_text("PO {{po_number}} for {{vendor_name}}", {
            "po_number": "PO-2025-0001", "vendor_name": "Acme",
        }) == "PO PO-2025-0001 for Acme"

    def test_unknown_variables_render_empty(self):
        assert render_template_text("Hello {{missing}}!") == "Hello !"

    def test_syntax_error_raises(self):
        with pytest.raises(TemplateRenderError):
            render_template_text("Hello {{ name ")

    def test_subject_is_stripped(self):
        subject, body = render_email("  Order {{n}}\n", "Body {{n}}\n", {"n": 7})
        assert subject == "Order 7"
        assert body == "Body 7\n"

    def test_sandbox_blocks_internals(self):
        with pytest.raises(Exception):
            render_template_text("{{ ''.__class__.__mro__[1].__subclasses__() }}")


class TestCheckConnection:

    def test_starttls_and_login_on_587(self, app, fake_smtp):
        with app.app_context():
            result = check_connection(_provider())
        assert result["success"] is True
        conn = fake_smtp.instances[-1]
        assert (conn.host, conn.port) == ("smtp.example.test", 587)
        assert conn.started_tls
        assert conn.logged_in_as == "mailer"
        assert conn.closed
        assert "STARTTLS negotiated" in result["steps"]

    def test_ssl_on_465(self, app, fake_smtp):
        with app.app_context():
            result = check_connection(_provider(smtp_port=465))
        assert result["success"] is True
        assert not fake_smtp.instances[-1].started_tls
        assert "over SSL" in result["steps"][1]

    def test_no_login_without_username(self, app, fake_smtp):
        with app.app_context():
            check_connection(_provider(username=None, smtp_secure=False))
        conn = fake_smtp.instances[-1]
        assert conn.logged_in_as is None
        assert not conn.started_tls

    def test_missing_host(self, app, fake_smtp):
        with app.app_context():
            result = check_connection(_provider(smtp_host=None))
        assert result["success"] is False
        assert fake_smtp.instances == []

    def test_authentication_failure(self, app, fake_smtp):
        fake_smtp.fail_with = smtplib.SMTPAuthenticationError(535, b"bad credentials")
        with app.app_context():
            result = check_connection(_provider())
        assert result["success"] is False
        assert "Authentication failed" in result["message"]

    def test_rejected_login_closes_connection(self, app, fake_smtp):
        fake_smtp.login_fails_with = smtplib.SMTPAuthenticationError(535, b"bad credentials")
        with app.app_context():
            result = check_connection(_provider())
        assert result["success"] is False
        assert "Authentication failed" in result["message"]
        conn = fake_smtp.instances[-1]
        assert conn.started_tls
        assert conn.closed

    def test_connection_refused(self, app, fake_smtp):
        fake_smtp.fail_with = ConnectionRefusedError("refused")
        with app.app_context():
            result = check_connection(_provider())
        assert result["success"] is False
        assert result["message"].startswith("Connection failed")


class TestSendEmail:

    def test_no_active_provider(self, app):
        with app.app_context():
            with pytest.raises(MailerNotConfigured):
                send_email("to@example.test", "Subject", "Body")

    def test_uses_active_provider(self, app, smtp_provider, fake_smtp):
        with app.app_context():
            result = send_email("to@example.test", "Subject", "Body text")
        assert result["success"] is True

        from_addr, to_addrs, message = fake_smtp.instances[-1].sent[0]
        assert from_addr == "noreply@example.test"
        assert to_addrs == ["to@example.test"]
        assert "Subject: Subject" in message

    def test_failure_is_returned_not_raised(self, app, fake_smtp):
        fake_smtp.fail_with = OSError("network down")
        with app.app_context():
            result = send_email("to@example.test", "S", "B", settings=_provider())
        assert result == {"success": False, "message": "network down"}

    def test_rejected_login_closes_connection(self, app, fake_smtp):
        fake_smtp.login_fails_with = smtplib.SMTPAuthenticationError(535, b"bad credentials")
        with app.app_context():
            result = send_email("to@example.test", "S", "B", settings=_provider())
        assert result["success"] is False
        conn = fake_smtp.instances[-1]
        assert conn.sent == []
        assert conn.closed
