"""
Outbound email: template rendering and SMTP delivery through the active provider.

Templates use {{variable}} placeholders rendered by a sandboxed Jinja2 environment, so stored
templates cannot reach Python internals. Unknown variables render as empty strings.

SMTP failures never raise out of this module: callers get a result dict and decide what to
record. Nothing is retried.
"""

from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr

from flask import current_app
from jinja2 import TemplateSyntaxError
from jinja2.sandbox import SandboxedEnvironment

from .models import EmailProviderSettings

logger = logging.getLogger(__name__)

_env = SandboxedEnvironment(autoescape=False, keep_trailing_newline=True)


class TemplateRenderError(ValueError):
    pass


class MailerNotConfigured(RuntimeError):
    pass


def render_template_text(template: str, variables: dict | None = None) -> str:
    try:
        return _env.from_string(template or "").render(**(variables or {}))
    except TemplateSyntaxError as exc:
        raise TemplateRenderError(f"Template syntax error on line {exc.lineno}: {exc.message}") from exc


def render_email(subject_template: str, body_template: str, variables: dict | None = None) -> tuple[str, str]:
    return (
        render_template_text(subject_template, variables).strip(),
        render_template_text(body_template, variables),
    )


def active_provider() -> EmailProviderSettings | None:
    return (
        EmailProviderSettings.query.filter_by(is_active=True)
        .order_by(EmailProviderSettings.updated_at.desc(), EmailProviderSettings.id.desc())
        .first()
    )


def _timeout() -> int:
    return int(current_app.config.get("SMTP_TIMEOUT", 15))


def _open_connection(settings: EmailProviderSettings, steps: list[str]) -> smtplib.SMTP:
    host = settings.smtp_host
    port = int(settings.smtp_port)

    if port == 465:
        server = smtplib.SMTP_SSL(host, port, timeout=_timeout())
        steps.append(f"Connected to {host}:{port} over SSL")
    else:
        server = smtplib.SMTP(host, port, timeout=_timeout())
        steps.append(f"Connected to {host}:{port}")

    try:
        if port != 465 and settings.smtp_secure:
            server.starttls()
            steps.append("STARTTLS negotiated")
        if settings.username:
            server.login(settings.username, settings.password or "")
            steps.append(f"Authenticated as {settings.username}")
    except (smtplib.SMTPException, OSError):
        server.close()
        raise
    return server


def check_connection(settings: EmailProviderSettings) -> dict:
    """Connect (and log in when a username is set) without sending anything."""
    steps: list[str] = []

    if not settings.smtp_host or not settings.smtp_port:
        return {"success": False, "message": "SMTP host and port are required.", "steps": steps}
    steps.append("Configuration present")

    try:
        server = _open_connection(settings, steps)
        server.quit()
    except smtplib.SMTPAuthenticationError as exc:
        logger.warning("SMTP authentication failed for %s: %s", settings.smtp_host, exc)
        return {"success": False, "message": "Authentication failed. Check the username and password.", "steps": steps}
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("SMTP connection to %s failed: %s", settings.smtp_host, exc)
        return {"success": False, "message": f"Connection failed: {exc}", "steps": steps}

    steps.append("Connection closed")
    return {"success": True, "message": "Connection successful.", "steps": steps}


def _build_message(settings: EmailProviderSettings, to_email: str, subject: str, body: str) -> MIMEMultipart:
    msg = MIMEMultipart()
    msg["Subject"] = subject
    msg["From"] = formataddr((settings.from_name or "", settings.from_email))
    msg["To"] = to_email
    msg.attach(MIMEText(body, "plain", "utf-8"))
    return msg


def send_email(to_email: str, subject: str, body: str, settings: EmailProviderSettings | None = None) -> dict:
    """Deliver one plain-text message. Returns {"success": bool, "message": str}."""
    settings = settings or active_provider()
    if settings is None:
        raise MailerNotConfigured("No active email provider is configured.")
    if not settings.smtp_host or not settings.smtp_port:
        raise MailerNotConfigured("The active email provider has no SMTP host/port.")

    msg = _build_message(settings, to_email, subject, body)
    steps: list[str] = []
    try:
        server = _open_connection(settings, steps)
        try:
            server.sendmail(settings.from_email, [to_email], msg.as_string())
        finally:
            server.quit()
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Sending email to %s failed: %s", to_email, exc)
        return {"success": False, "message": str(exc)}

    logger.info("Email sent to %s: %s", to_email, subject)
    return {"success": True, "message": f"Email sent to {to_email}."}


def send_test_email(settings: EmailProviderSettings, to_email: str) -> dict:
    app_name = current_app.config.get("APP_NAME", "Procurement Suite")
    subject = f"{app_name}: test email"
    body = (
        "This is a test email.\n\n"
        f"Your email provider ({settings.provider}) is configured correctly.\n"
    )
    return send_email(to_email, subject, body, settings=settings)
