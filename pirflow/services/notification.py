"""
PIR Workflow Service
Notification Service.

NotificationDispatcher is the send side: one in-app Notification plus one
email per recipient. NotificationService is the query side used by the
notification API.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from pirflow.core.exceptions import NotFoundError, PermissionDenied
from pirflow.models import db
from pirflow.models.notification import NOTIFICATION_KINDS, Notification
from pirflow.services.email_service import EmailService

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """send(recipients, template_kind, payload). Raises on failure; callers
    decide whether to swallow."""

    def send(self, recipients, template_kind, payload) -> int:
        if template_kind not in NOTIFICATION_KINDS:
            raise ValueError(f"Unknown notification kind: {template_kind}")

        title = EmailService.render_subject(template_kind, payload) or template_kind
        sent = 0
        try:
            for email in dict.fromkeys(r for r in recipients if r):
                notif = Notification(
                    recipient=email,
                    kind=template_kind,
                    title=title[:300],
                    message=payload.get("message", ""),
                    pir_id=payload.get("pir_id"),
                    entity_type=payload.get("entity_type", "pir"),
                    entity_id=payload.get("entity_id") or payload.get("pir_id"),
                )
                db.session.add(notif)
                db.session.flush()
                EmailService.send_from_template(
                    to_email=email,
                    template_name=template_kind,
                    context=payload,
                    notification_id=notif.id,
                    pir_id=payload.get("pir_id"),
                )
                sent += 1
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        logger.info("Dispatched %s to %d recipient(s) for PIR %s",
                    template_kind, sent, payload.get("pir_id"))
        return sent


class NotificationService:
    """Stateless service class for notification queries."""

    @staticmethod
    def list_for_recipient(recipient, unread_only=False, limit=50, offset=0):
        """Retrieve notifications for a recipient, newest first."""
        q = Notification.query.filter_by(recipient=recipient)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = q.order_by(Notification.created_at.desc()).offset(offset).limit(limit).all()
        return items, total

    @staticmethod
    def unread_count(recipient):
        return Notification.query.filter_by(recipient=recipient, is_read=False).count()

    @staticmethod
    def mark_read(notification_id, recipient):
        """Mark a single notification as read."""
        notif = db.session.get(Notification, notification_id)
        if notif is None:
            raise NotFoundError(resource="Notification", resource_id=notification_id)
        if notif.recipient != recipient:
            raise PermissionDenied(recipient, "mark_read")
        if not notif.is_read:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient):
        """Mark all notifications for a recipient as read."""
        q = Notification.query.filter_by(recipient=recipient, is_read=False)
        now = datetime.now(timezone.utc)
        count = q.update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        db.session.commit()
        return count
