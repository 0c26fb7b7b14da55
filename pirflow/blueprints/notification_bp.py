"""
PIR Workflow Service
Notification Blueprint.

In-app notifications addressed to the caller's email.

Endpoints:
    GET  /api/v1/notifications               - ?unread_only=1&limit=&offset=
    GET  /api/v1/notifications/unread-count
    POST /api/v1/notifications/<id>/read
    POST /api/v1/notifications/read-all
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from pirflow.middleware.identity import current_user
from pirflow.services.notification import NotificationService
from pirflow.utils.helpers import parse_bool, parse_int

logger = logging.getLogger(__name__)

notification_bp = Blueprint("notification", __name__, url_prefix="/api/v1/notifications")


@notification_bp.route("", methods=["GET"])
def list_notifications():
    user = current_user()
    items, total = NotificationService.list_for_recipient(
        user.email,
        unread_only=parse_bool(request.args.get("unread_only")),
        limit=parse_int(request.args.get("limit"), 50, minimum=1, maximum=200),
        offset=parse_int(request.args.get("offset"), 0),
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@notification_bp.route("/unread-count", methods=["GET"])
def unread_count():
    user = current_user()
    return jsonify({"unread_count": NotificationService.unread_count(user.email)})


@notification_bp.route("/<int:notification_id>/read", methods=["POST"])
def mark_read(notification_id):
    user = current_user()
    notif = NotificationService.mark_read(notification_id, user.email)
    return jsonify(notif.to_dict())


@notification_bp.route("/read-all", methods=["POST"])
def mark_all_read():
    user = current_user()
    count = NotificationService.mark_all_read(user.email)
    logger.info("Marked %d notification(s) read for %s", count, user.id)
    return jsonify({"marked_read": count})
