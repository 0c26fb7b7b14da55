"""
PIR Aggregate Consistency Manager

Keeps the PIR ↔ Question ↔ Answer ↔ Attachment containment in step:

  - every child creation links the child id into the parent's id-list
    (``question_ids`` / ``attachment_ids``) with set-union semantics
  - children can be fetched by parent-reference query or by resolving the
    parent's id-list in batches; both views agree, and dangling ids are
    filtered at read time
  - attachment upload writes the blob before the metadata record and
    aborts when the blob write fails
  - attachment delete attempts the blob delete, always removes the record,
    then unlinks it from the parent

Creating the child and linking it are two store operations. A failed link
is logged, the child stays, and ``reconcile_pir`` repairs the list later.
"""

import logging
import uuid

from sqlalchemy.exc import SQLAlchemyError
from werkzeug.utils import secure_filename

from pirflow.core.exceptions import (
    ConflictError,
    DependencyFailure,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from pirflow.models.pir import ATTACHMENT_PARENT_TYPES, Answer, Question
from pirflow.services.blob_store import BlobStoreError
from pirflow.services.events import ChildCreated
from pirflow.services.permission import (
    ACTION_EDIT,
    can_answer_questions,
    check_permission,
)

logger = logging.getLogger(__name__)

PARENT_COLLECTIONS = {
    "pir": "pirs",
    "question": "questions",
    "answer": "answers",
}


def _required_text(value, field):
    text = value.strip() if isinstance(value, str) else ""
    if not text:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return text


def _edit_patch(model, patch):
    """Validate a client patch against the model's editable, non-list fields."""
    if not isinstance(patch, dict) or not patch:
        raise ValidationError("No fields to update")
    allowed = model.MUTABLE_FIELDS - model.LIST_FIELDS
    illegal = sorted(set(patch) - allowed)
    if illegal:
        raise ValidationError(
            f"Fields not editable on {model.__name__}: {', '.join(illegal)}",
            details={field: "not editable" for field in illegal},
        )
    return dict(patch)


def _version_check(expected_version):
    return None if expected_version is None else {"version": expected_version}


def _ordered_by_ids(entities, ids):
    """Order resolved entities by their position in ``ids``."""
    position = {entity_id: idx for idx, entity_id in enumerate(ids)}
    return sorted(entities, key=lambda e: position.get(e.id, len(position)))


class AggregateManager:
    """Child creation, linkage and child resolution for PIR aggregates."""

    def __init__(self, store, blobs, events):
        self.store = store
        self.blobs = blobs
        self.events = events

    # ── Linkage ──────────────────────────────────────────────────────────

    def _link(self, collection, parent_id, field, child_id) -> bool:
        try:
            return self.store.array_union(collection, parent_id, field, child_id)
        except (SQLAlchemyError, NotFoundError, ConflictError):
            logger.warning(
                "Linking %s into %s/%s.%s failed; child kept, reconcile later",
                child_id, collection, parent_id, field, exc_info=True,
            )
            return False

    def _unlink(self, collection, parent_id, field, child_id) -> bool:
        try:
            return self.store.array_remove(collection, parent_id, field, child_id)
        except (SQLAlchemyError, NotFoundError, ConflictError):
            logger.warning(
                "Unlinking %s from %s/%s.%s failed; readers filter dangling ids",
                child_id, collection, parent_id, field, exc_info=True,
            )
            return False

    # ── Questions ────────────────────────────────────────────────────────

    @staticmethod
    def _question_fields(data):
        return {
            "text": _required_text(data.get("text"), "text"),
            "category": _required_text(data.get("category"), "category"),
            "required": bool(data.get("required", False)),
        }

    def create_question(self, pir_id, actor, *, text, category, required=False, question_id=None):
        """
        Create a question on a PIR and link it into ``question_ids``.

        Passing the ``question_id`` of an earlier attempt makes the call a
        retry: the existing question is re-linked (a no-op if already
        linked) and returned.
        """
        pir = self.store.get_or_404("pirs", pir_id)
        check_permission(actor, pir, ACTION_EDIT)
        fields = self._question_fields({"text": text, "category": category, "required": required})
        return self._create_question(pir, actor, fields, question_id)

    def create_questions(self, pir_id, actor, items):
        """Bulk question creation. Every item is validated before any write."""
        pir = self.store.get_or_404("pirs", pir_id)
        check_permission(actor, pir, ACTION_EDIT)
        if not items:
            raise ValidationError("questions must be a non-empty list", details={"questions": "required"})
        prepared = []
        for idx, item in enumerate(items):
            if not isinstance(item, dict):
                raise ValidationError(f"Question #{idx + 1} must be an object")
            try:
                prepared.append((self._question_fields(item), item.get("id")))
            except ValidationError as exc:
                raise ValidationError(
                    f"Question #{idx + 1}: {exc}",
                    details={str(idx): exc.details},
                ) from exc
        return [self._create_question(pir, actor, fields, qid) for fields, qid in prepared]

    def _create_question(self, pir, actor, fields, question_id=None):
        if question_id:
            existing = self.store.get("questions", question_id)
            if existing is not None:
                if existing.pir_id != pir.id:
                    raise ConflictError("Question", "id", question_id)
                self._link("pirs", pir.id, "question_ids", existing.id)
                return existing

        data = dict(fields, pir_id=pir.id, created_by=actor.id, attachment_ids=[])
        if question_id:
            data["id"] = question_id
        new_id = self.store.create("questions", data)
        self._link("pirs", pir.id, "question_ids", new_id)
        logger.info("Question %s created on PIR %s by %s", new_id, pir.id, actor.id)

        self.events.emit(ChildCreated(
            pir_id=pir.id, parent_type="pir", parent_id=pir.id,
            child_type="question", child_id=new_id, actor_id=actor.id,
        ))
        return self.store.get("questions", new_id)

    def list_questions(self, pir_id):
        """Questions by parent-reference query, creation order."""
        return self.store.query("questions", {"pir_id": pir_id}, order_by="created_at")

    def resolve_questions(self, pir):
        """Questions by the PIR's ``question_ids`` list; dangling ids dropped."""
        ids = list(pir.question_ids or [])
        return _ordered_by_ids(self.store.batch_get("questions", ids), ids)

    def update_question(self, question_id, actor, patch, *, expected_version=None):
        """Edit text, category or the required flag. Needs Edit on the owning PIR."""
        question = self.store.get_or_404("questions", question_id)
        pir = self.store.get_or_404("pirs", question.pir_id)
        check_permission(actor, pir, ACTION_EDIT)

        values = _edit_patch(Question, patch)
        for field in ("text", "category"):
            if field in values:
                values[field] = _required_text(values[field], field)
        if "required" in values:
            values["required"] = bool(values["required"])

        updated = self.store.update(
            "questions", question_id, values, expected=_version_check(expected_version),
        )
        logger.info("Question %s updated by %s: %s", question_id, actor.id, sorted(values))
        return updated

    # ── Answers ──────────────────────────────────────────────────────────

    def create_answer(self, question_id, actor, *, text):
        question = self.store.get_or_404("questions", question_id)
        pir = self.store.get_or_404("pirs", question.pir_id)
        if not can_answer_questions(actor, pir):
            raise PermissionDenied(actor.id, "answer", pir.id)
        text = _required_text(text, "text")

        answer_id = self.store.create("answers", {
            "question_id": question.id,
            "pir_id": pir.id,
            "text": text,
            "responder_id": actor.id,
            "responder_name": actor.display_name,
            "attachment_ids": [],
        })
        logger.info("Answer %s created on question %s by %s", answer_id, question.id, actor.id)

        self.events.emit(ChildCreated(
            pir_id=pir.id, parent_type="question", parent_id=question.id,
            child_type="answer", child_id=answer_id, actor_id=actor.id,
        ))
        return self.store.get("answers", answer_id)

    def list_answers_for_question(self, question_id):
        """Newest first."""
        return self.store.query(
            "answers", {"question_id": question_id}, order_by="created_at", descending=True,
        )

    def list_answers_for_pir(self, pir_id):
        return self.store.query("answers", {"pir_id": pir_id}, order_by="created_at")

    def update_answer(self, answer_id, actor, patch, *, expected_version=None):
        """Edit an answer's text. Only its author or an admin may."""
        answer = self.store.get_or_404("answers", answer_id)
        if not (actor.is_admin or answer.responder_id == actor.id):
            raise PermissionDenied(actor.id, "edit answer", answer.pir_id)

        values = _edit_patch(Answer, patch)
        values["text"] = _required_text(values.get("text"), "text")

        updated = self.store.update(
            "answers", answer_id, values, expected=_version_check(expected_version),
        )
        logger.info("Answer %s updated by %s", answer_id, actor.id)
        return updated

    def list_answers_by_responder(self, responder_id):
        """Every answer written by ``responder_id``, newest first."""
        return self.store.query(
            "answers", {"responder_id": responder_id}, order_by="created_at", descending=True,
        )

    # ── Attachments ──────────────────────────────────────────────────────

    def _parent(self, parent_type, parent_id):
        collection = PARENT_COLLECTIONS.get(parent_type)
        if collection is None:
            raise ValidationError(
                f"parent_type must be one of {', '.join(ATTACHMENT_PARENT_TYPES)}",
                details={"parent_type": "invalid"},
            )
        return collection, self.store.get_or_404(collection, parent_id)

    def _owning_pir(self, parent_type, parent):
        if parent_type == "pir":
            return parent
        return self.store.get_or_404("pirs", parent.pir_id)

    def _check_upload_permission(self, actor, parent_type, pir):
        if parent_type == "answer":
            if not can_answer_questions(actor, pir):
                raise PermissionDenied(actor.id, "upload", pir.id)
        else:
            check_permission(actor, pir, ACTION_EDIT)

    def upload_attachment(self, parent_type, parent_id, actor, *, file_name, data, file_type=None):
        """
        Store the blob, then create and link the metadata record.

        Raises:
            DependencyFailure: the blob write failed; no record was created.
        """
        collection, parent = self._parent(parent_type, parent_id)
        pir = self._owning_pir(parent_type, parent)
        self._check_upload_permission(actor, parent_type, pir)

        original_name = _required_text(file_name, "file_name")
        safe_name = secure_filename(original_name) or "file"
        if data is None:
            raise ValidationError("file content is required", details={"file": "required"})
        content_type = file_type or "application/octet-stream"

        path = f"attachments/{parent_type}/{parent_id}/{uuid.uuid4().hex}_{safe_name}"
        try:
            locator = self.blobs.put(path, data, content_type)
        except BlobStoreError as exc:
            logger.error("Blob write failed for %s: %s", path, exc)
            raise DependencyFailure("blob_store", str(exc)) from exc

        try:
            attachment_id = self.store.create("attachments", {
                "file_name": original_name,
                "file_type": content_type,
                "file_size": len(data),
                "uploaded_by": actor.id,
                "parent_id": parent_id,
                "parent_type": parent_type,
                "download_url": locator,
            })
        except SQLAlchemyError:
            self._discard_blob(locator)
            raise

        self._link(collection, parent_id, "attachment_ids", attachment_id)
        logger.info(
            "Attachment %s (%d bytes) uploaded to %s %s by %s",
            attachment_id, len(data), parent_type, parent_id, actor.id,
        )

        self.events.emit(ChildCreated(
            pir_id=pir.id, parent_type=parent_type, parent_id=parent_id,
            child_type="attachment", child_id=attachment_id, actor_id=actor.id,
        ))
        return self.store.get("attachments", attachment_id)

    def _discard_blob(self, locator) -> bool:
        try:
            self.blobs.delete(locator)
            return True
        except BlobStoreError as exc:
            logger.warning("Blob delete failed for %s (recoverable): %s", locator, exc)
            return False

    def delete_attachment(self, attachment_id, actor):
        """
        Delete an attachment: blob first (best effort), then the record,
        then the parent's id-list entry.
        """
        attachment = self.store.get_or_404("attachments", attachment_id)
        if not actor.is_admin and attachment.uploaded_by != actor.id:
            raise PermissionDenied(actor.id, "delete_attachment")

        parent_type = attachment.parent_type
        parent_id = attachment.parent_id
        blob_deleted = self._discard_blob(attachment.download_url)

        self.store.delete("attachments", attachment_id)
        unlinked = False
        collection = PARENT_COLLECTIONS.get(parent_type)
        if collection:
            unlinked = self._unlink(collection, parent_id, "attachment_ids", attachment_id)

        logger.info("Attachment %s deleted by %s (blob_deleted=%s)", attachment_id, actor.id, blob_deleted)
        return {
            "id": attachment_id,
            "deleted": True,
            "blob_deleted": blob_deleted,
            "unlinked": unlinked,
        }

    def read_attachment(self, attachment_id):
        """Return ``(attachment, bytes)``."""
        attachment = self.store.get_or_404("attachments", attachment_id)
        try:
            content = self.blobs.get(attachment.download_url)
        except BlobStoreError as exc:
            raise DependencyFailure("blob_store", str(exc)) from exc
        return attachment, content

    def list_attachments(self, parent_type, parent_id):
        """Attachments by parent-reference query."""
        if parent_type not in PARENT_COLLECTIONS:
            raise ValidationError("invalid parent_type", details={"parent_type": "invalid"})
        return self.store.query(
            "attachments", {"parent_type": parent_type, "parent_id": parent_id},
            order_by="uploaded_at",
        )

    def resolve_attachments(self, parent):
        """Attachments by the parent's ``attachment_ids``; dangling ids dropped."""
        ids = list(parent.attachment_ids or [])
        return _ordered_by_ids(self.store.batch_get("attachments", ids), ids)

    # ── Repair ───────────────────────────────────────────────────────────

    def _reconcile_list(self, collection, parent, field, queried):
        """Make ``parent.<field>`` equal the ids in ``queried``."""
        listed = list(getattr(parent, field) or [])
        queried_ids = [child.id for child in queried]
        orphans = [cid for cid in queried_ids if cid not in listed]
        dangling = [cid for cid in listed if cid not in set(queried_ids)]
        if orphans:
            self.store.array_union(collection, parent.id, field, *orphans)
        if dangling:
            self.store.array_remove(collection, parent.id, field, *dangling)
        return orphans, dangling

    def reconcile_pir(self, pir_id, actor=None):
        """
        Repair id-lists of a PIR and its questions/answers against the
        parent-reference queries.

        Returns:
            {"pir_id", "questions": {"orphans", "dangling"},
             "attachments": {"orphans", "dangling"}}
        """
        if actor is not None and not actor.is_admin:
            raise PermissionDenied(actor.id, "reconcile", pir_id)

        pir = self.store.get_or_404("pirs", pir_id)
        q_orphans, q_dangling = self._reconcile_list(
            "pirs", pir, "question_ids", self.list_questions(pir_id),
        )

        a_orphans, a_dangling = [], []
        parents = [("pir", "pirs", self.store.get("pirs", pir_id))]
        parents += [("question", "questions", q) for q in self.list_questions(pir_id)]
        parents += [("answer", "answers", a) for a in self.list_answers_for_pir(pir_id)]
        for parent_type, collection, parent in parents:
            orphans, dangling = self._reconcile_list(
                collection, parent, "attachment_ids",
                self.list_attachments(parent_type, parent.id),
            )
            a_orphans += orphans
            a_dangling += dangling

        report = {
            "pir_id": pir_id,
            "questions": {"orphans": q_orphans, "dangling": q_dangling},
            "attachments": {"orphans": a_orphans, "dangling": a_dangling},
        }
        if q_orphans or q_dangling or a_orphans or a_dangling:
            logger.warning("PIR %s linkage repaired: %s", pir_id, report)
        return report
