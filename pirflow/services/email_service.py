"""
PIR Workflow Service
Email Service.

Sends workflow emails from named templates.
When SMTP is not configured, emails are logged but not sent (dev/test mode).

Uses:
    - Flask-Mail compatible config (MAIL_SERVER, MAIL_PORT, etc.)
    - Falls back to logging-only mode when SMTP is not configured
    - All emails are recorded in EmailLog for audit

Configuration (env vars):
    MAIL_SERVER     SMTP host (default: None → log-only mode)
    MAIL_PORT       SMTP port (default: 587)
    MAIL_USE_TLS    Use TLS (default: true)
    MAIL_USERNAME   SMTP username
    MAIL_PASSWORD   SMTP password
    MAIL_DEFAULT_SENDER  Default from address
"""

from __future__ import annotations

import logging
import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any

from flask import current_app

from pirflow.models import db
from pirflow.models.notification import EmailLog

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Email Templates
# ═══════════════════════════════════════════════════════════════════════════

_LAYOUT = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
    <div style="background: #1e293b; color: white; padding: 16px 24px;">
        <h2 style="margin: 0; font-size: 18px;">Product Information Requests</h2>
    </div>
    <div style="background: #f8fafc; padding: 24px; border: 1px solid #e2e8f0; border-top: none;">
        {body}
        <p><a href="{pir_url}">Open PIR</a></p>
    </div>
</div>
"""

_TEMPLATES: dict[str, dict[str, str]] = {
    "pir_status_update": {
        "subject": "{headline}: {title}",
        "html": _LAYOUT.replace("{body}", """
        <h3 style="margin: 0 0 8px; color: #1e293b;">{headline}</h3>
        <p><strong>{title}</strong> ({product_name})</p>
        <p>Status changed from <strong>{from_status}</strong> to <strong>{to_status}</strong>
           by {actor_name}.</p>
        """),
    },
    "new_question": {
        "subject": "New question on PIR: {title}",
        "html": _LAYOUT.replace("{body}", """
        <h3 style="margin: 0 0 8px; color: #1e293b;">New question</h3>
        <p>{actor_name} asked a question on <strong>{title}</strong>:</p>
        <blockquote style="color: #475569;">{text}</blockquote>
        """),
    },
    "new_answer": {
        "subject": "New answer on PIR: {title}",
        "html": _LAYOUT.replace("{body}", """
        <h3 style="margin: 0 0 8px; color: #1e293b;">New answer</h3>
        <p>{actor_name} answered a question on <strong>{title}</strong>:</p>
        <blockquote style="color: #475569;">{text}</blockquote>
        """),
    },
}


class EmailService:
    """
    Email sending service with template support.

    In development/test mode (no MAIL_SERVER configured), emails are
    logged to the database but not actually sent via SMTP.
    """

    @staticmethod
    def is_configured() -> bool:
        return bool(current_app.config.get("MAIL_SERVER"))

    @staticmethod
    def get_template(template_name: str) -> dict[str, str] | None:
        return _TEMPLATES.get(template_name)

    @staticmethod
    def render_subject(template_name: str, context: dict[str, Any]) -> str | None:
        template = _TEMPLATES.get(template_name)
        if not template:
            return None
        return template["subject"].format_map(_SafeDict(context))

    @classmethod
    def send(
        cls,
        *,
        to_email: str,
        subject: str,
        html_body: str,
        template_name: str | None = None,
        notification_id: int | None = None,
        pir_id: str | None = None,
    ) -> EmailLog:
        """
        Send an email and log it. The caller commits the session.

        Returns:
            The EmailLog record for this email.
        """
        log = EmailLog(
            recipient_email=to_email,
            subject=subject,
            template_name=template_name,
            status="queued",
            notification_id=notification_id,
            pir_id=pir_id,
        )
        db.session.add(log)
        db.session.flush()

        if not cls.is_configured():
            # Dev/test mode - log only
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info(
                "Email (dev mode): to=%s subject='%s' template=%s",
                to_email, subject, template_name,
            )
            return log

        try:
            cls._send_smtp(to_email=to_email, subject=subject, html_body=html_body)
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            logger.info("Email sent: to=%s subject='%s'", to_email, subject)
        except (smtplib.SMTPException, OSError) as exc:
            log.status = "failed"
            log.error_message = str(exc)[:1000]
            logger.error("Email failed: to=%s error=%s", to_email, exc)

        return log

    @classmethod
    def send_from_template(
        cls,
        *,
        to_email: str,
        template_name: str,
        context: dict[str, Any],
        notification_id: int | None = None,
        pir_id: str | None = None,
    ) -> EmailLog | None:
        """
        Send an email using a named template.

        Template variables are interpolated from the context dict.
        """
        template = cls.get_template(template_name)
        if not template:
            logger.warning("Email template not found: %s", template_name)
            return None

        subject = template["subject"].format_map(_SafeDict(context))
        html_body = template["html"].format_map(_SafeDict(context))

        return cls.send(
            to_email=to_email,
            subject=subject,
            html_body=html_body,
            template_name=template_name,
            notification_id=notification_id,
            pir_id=pir_id,
        )

    @staticmethod
    def _send_smtp(*, to_email: str, subject: str, html_body: str) -> None:
        cfg = current_app.config
        server = cfg.get("MAIL_SERVER")
        port = cfg.get("MAIL_PORT", 587)
        use_tls = cfg.get("MAIL_USE_TLS", True)
        username = cfg.get("MAIL_USERNAME")
        password = cfg.get("MAIL_PASSWORD")
        sender = cfg.get("MAIL_DEFAULT_SENDER") or f"noreply@{server}"

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = to_email
        msg.attach(MIMEText(html_body, "html"))

        with smtplib.SMTP(server, port, timeout=30) as smtp:
            if use_tls:
                smtp.starttls()
            if username and password:
                smtp.login(username, password)
            smtp.send_message(msg)


class _SafeDict(dict):
    """Dict that returns {key} for missing keys instead of raising."""

    def __missing__(self, key):
        return f"{{{key}}}"
