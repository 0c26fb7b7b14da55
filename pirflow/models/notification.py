"""
PIR Workflow Service
Notification domain model.

Models:
    - Notification: in-app notification record with read tracking
    - EmailLog: outbound email audit log
"""

from datetime import datetime, timezone

from pirflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_KINDS = {"pir_status_update", "new_question", "new_answer"}
EMAIL_STATUSES = {"queued", "sent", "failed"}


def _utcnow():
    return datetime.now(timezone.utc)


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event. ``recipient`` is the user's email.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient = db.Column(db.String(255), nullable=False, index=True, comment="Recipient email")
    kind = db.Column(db.String(30), nullable=False, default="pir_status_update")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")

    # Link to source entity
    pir_id = db.Column(db.String(36), nullable=True, index=True)
    entity_type = db.Column(db.String(30), default="pir", comment="pir/question/answer")
    entity_id = db.Column(db.String(36), nullable=True)

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def mark_read(self):
        self.is_read = True
        self.read_at = _utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "recipient": self.recipient,
            "kind": self.kind,
            "title": self.title,
            "message": self.message,
            "pir_id": self.pir_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"


class EmailLog(db.Model):
    """
    Outbound email audit log.

    Every email the dispatcher sends is recorded here, including log-only
    sends when no SMTP server is configured.
    """

    __tablename__ = "email_logs"

    id = db.Column(db.Integer, primary_key=True)
    recipient_email = db.Column(db.String(255), nullable=False, index=True)
    subject = db.Column(db.String(500), nullable=False)
    template_name = db.Column(db.String(100), nullable=True, comment="Email template used")
    status = db.Column(db.String(20), default="queued", comment="queued, sent, failed")
    error_message = db.Column(db.Text, nullable=True)

    notification_id = db.Column(db.Integer, nullable=True,
                                comment="Related notification ID if applicable")
    pir_id = db.Column(db.String(36), nullable=True, index=True)

    sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_email": self.recipient_email,
            "subject": self.subject,
            "template_name": self.template_name,
            "status": self.status,
            "error_message": self.error_message,
            "notification_id": self.notification_id,
            "pir_id": self.pir_id,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<EmailLog {self.id}: {self.recipient_email} [{self.status}]>"
