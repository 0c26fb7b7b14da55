"""
PIR Service - creation, editing, responder assignment, tags and listings.

Status changes are not made here; they go through PIRLifecycleEngine.
"""

import logging

from pirflow.core.exceptions import ConflictError, PermissionDenied, ValidationError
from pirflow.models.auth import ROLE_ADMIN, ROLE_REQUESTER, ROLE_RESPONDER, ROLE_REVIEWER
from pirflow.services.permission import (
    ACTION_EDIT,
    check_permission,
    permission_flags,
    resolve_actions,
)
from pirflow.utils.helpers import parse_datetime

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("title", "description", "product_name", "product_category")
EDITABLE_FIELDS = frozenset({
    "title", "description", "product_name", "product_category",
    "comments", "completion_deadline",
})
ASSIGNABLE_STATUSES = ("draft", "requested")
CREATOR_ROLES = (ROLE_REQUESTER, ROLE_ADMIN)


def _clean_tags(tags):
    if tags is None:
        return []
    if not isinstance(tags, (list, tuple)):
        raise ValidationError("tags must be a list", details={"tags": "invalid"})
    cleaned = []
    for tag in tags:
        name = tag.strip() if isinstance(tag, str) else ""
        if not name:
            raise ValidationError("tags must be non-empty strings", details={"tags": "invalid"})
        if name not in cleaned:
            cleaned.append(name)
    return cleaned


def _deadline(value):
    try:
        return parse_datetime(value)
    except ValueError as exc:
        raise ValidationError(str(exc), details={"completion_deadline": "invalid"}) from exc


def _validate_required(data, fields):
    """Trim required text fields; collect every missing one."""
    cleaned, errors = {}, {}
    for field in fields:
        value = data.get(field)
        text = value.strip() if isinstance(value, str) else ""
        if not text:
            errors[field] = "required"
        else:
            cleaned[field] = text
    if errors:
        raise ValidationError(
            f"Missing required field(s): {', '.join(errors)}", details=errors,
        )
    return cleaned


class PIRService:
    def __init__(self, store, engine, aggregate):
        self.store = store
        self.engine = engine
        self.aggregate = aggregate

    # ── Create / read ────────────────────────────────────────────────────

    def create_pir(self, actor, data):
        """Create a Draft PIR with ``actor`` as requester."""
        if actor.role not in CREATOR_ROLES:
            raise PermissionDenied(actor.id, "create_pir")
        fields = _validate_required(data, REQUIRED_FIELDS)

        record = dict(
            fields,
            status="draft",
            requester_id=actor.id,
            requester_name=actor.display_name,
            tags=_clean_tags(data.get("tags")),
            question_ids=[],
            attachment_ids=[],
            comments=data.get("comments"),
            completion_deadline=_deadline(data.get("completion_deadline")),
        )
        pir_id = self.store.create("pirs", record)
        logger.info("PIR %s created by %s", pir_id, actor.id)
        return self.store.get("pirs", pir_id)

    def get_pir(self, pir_id):
        return self.store.get_or_404("pirs", pir_id)

    def update_pir(self, pir_id, actor, patch, *, expected_version=None):
        """Edit descriptive fields. Requires the Edit action."""
        pir = self.store.get_or_404("pirs", pir_id)
        check_permission(actor, pir, ACTION_EDIT)

        illegal = sorted(set(patch) - EDITABLE_FIELDS)
        if illegal:
            raise ValidationError(
                f"Fields not editable: {', '.join(illegal)}",
                details={field: "not editable" for field in illegal},
            )
        if not patch:
            raise ValidationError("Nothing to update")

        values = dict(patch)
        required_present = [f for f in REQUIRED_FIELDS if f in patch]
        values.update(_validate_required(patch, required_present))
        if "completion_deadline" in patch:
            values["completion_deadline"] = _deadline(patch["completion_deadline"])

        expected = {"version": expected_version} if expected_version is not None else None
        updated = self.store.update("pirs", pir.id, values, expected=expected)
        logger.info("PIR %s updated by %s: %s", pir_id, actor.id, sorted(values))
        return updated

    # ── Assignment ───────────────────────────────────────────────────────

    def assign_responder(self, pir_id, actor, responder_id):
        pir = self.store.get_or_404("pirs", pir_id)
        check_permission(actor, pir, ACTION_EDIT)
        if pir.status not in ASSIGNABLE_STATUSES:
            raise ConflictError("PIR", "status", pir.status)

        responder = self.store.get_or_404("users", responder_id, label="Responder")
        if responder.role != ROLE_RESPONDER:
            raise ValidationError(
                f"User {responder_id} is not a responder",
                details={"responder_id": "must have the responder role"},
            )

        updated = self.store.update(
            "pirs", pir.id,
            {"assigned_responder_id": responder.id,
             "assigned_responder_name": responder.display_name},
            expected={"status": pir.status},
        )
        logger.info("PIR %s: responder %s assigned by %s", pir_id, responder.id, actor.id)
        return updated

    # ── Tags ─────────────────────────────────────────────────────────────

    def add_tag(self, pir_id, actor, tag):
        pir = self.store.get_or_404("pirs", pir_id)
        check_permission(actor, pir, ACTION_EDIT)
        name = _clean_tags([tag])[0]
        self.store.array_union("pirs", pir.id, "tags", name)
        return self.store.get("pirs", pir.id)

    def remove_tag(self, pir_id, actor, tag):
        pir = self.store.get_or_404("pirs", pir_id)
        check_permission(actor, pir, ACTION_EDIT)
        name = _clean_tags([tag])[0]
        self.store.array_remove("pirs", pir.id, "tags", name)
        return self.store.get("pirs", pir.id)

    # ── Listings ─────────────────────────────────────────────────────────

    def list_pirs(self, *, status=None, requester_id=None, responder_id=None, reviewer_id=None):
        """Newest first."""
        filters = {}
        if status:
            filters["status"] = status
        if requester_id:
            filters["requester_id"] = requester_id
        if responder_id:
            filters["assigned_responder_id"] = responder_id
        if reviewer_id:
            filters["reviewer_id"] = reviewer_id
        return self.store.query("pirs", filters, order_by="created_at", descending=True)

    def list_visible_pirs(self, user, *, status=None):
        """
        PIRs a user works on:
            admin     → all
            requester → own
            responder → assigned
            reviewer  → submitted, or reviewed by them
        """
        if user.role == ROLE_ADMIN:
            return self.list_pirs(status=status)
        if user.role == ROLE_REQUESTER:
            return self.list_pirs(status=status, requester_id=user.id)
        if user.role == ROLE_RESPONDER:
            return self.list_pirs(status=status, responder_id=user.id)
        if user.role == ROLE_REVIEWER:
            merged = {p.id: p for p in self.list_pirs(status="submitted")}
            merged.update({p.id: p for p in self.list_pirs(reviewer_id=user.id)})
            pirs = [p for p in merged.values() if not status or p.status == status]
            return sorted(pirs, key=lambda p: p.created_at, reverse=True)
        return []

    def get_pir_detail(self, pir_id, user):
        """PIR with permitted actions, questions (each with answers) and attachments."""
        pir = self.store.get_or_404("pirs", pir_id)
        questions = []
        for question in self.aggregate.resolve_questions(pir):
            item = question.to_dict()
            item["answers"] = [
                a.to_dict() for a in self.aggregate.list_answers_for_question(question.id)
            ]
            item["attachments"] = [
                a.to_dict() for a in self.aggregate.resolve_attachments(question)
            ]
            questions.append(item)

        return {
            "pir": pir.to_dict(),
            "actions": sorted(resolve_actions(user, pir)),
            "permissions": permission_flags(user, pir),
            "available_transitions": self.engine.available_transitions(user, pir),
            "questions": questions,
            "attachments": [a.to_dict() for a in self.aggregate.resolve_attachments(pir)],
        }
