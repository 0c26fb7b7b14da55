"""
PIR Workflow Service
Product Information Request aggregate - PIR, Question, Answer, Attachment, Tag.

Containment:
    PIR ──< Question ──< Answer
     │         │           │
     └─────────┴───────────┴──< Attachment (parent_type + parent_id)

Parents keep id-lists of their children (``question_ids``,
``attachment_ids``); children keep a plain id reference back to the
parent. The lists are maintained by ``AggregateManager``.
"""

import uuid
from datetime import datetime, timezone

from pirflow.models import db


__all__ = [
    "PIR_STATUSES",
    "PIR_TRANSITIONS",
    "STATUS_TIMESTAMP_FIELDS",
    "TERMINAL_STATUSES",
    "ATTACHMENT_PARENT_TYPES",
    "PIR",
    "Question",
    "Answer",
    "Attachment",
    "Tag",
]


# ── Helpers ──────────────────────────────────────────────────────────────────

def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Lifecycle constants ──────────────────────────────────────────────────────

PIR_STATUSES = ("draft", "requested", "submitted", "reviewed", "accepted", "rejected")

PIR_TRANSITIONS = {
    "draft":     ["requested"],
    "requested": ["submitted"],
    "submitted": ["reviewed"],
    "reviewed":  ["accepted", "rejected"],
    "accepted":  [],
    "rejected":  [],
}

TERMINAL_STATUSES = frozenset({"accepted", "rejected"})

# Draft and requested have no dedicated stamp.
STATUS_TIMESTAMP_FIELDS = {
    "submitted": "submitted_at",
    "reviewed": "reviewed_at",
    "accepted": "accepted_at",
    "rejected": "rejected_at",
}

ATTACHMENT_PARENT_TYPES = ("pir", "question", "answer")


# ═════════════════════════════════════════════════════════════════════════════
# PIR - aggregate root
# ═════════════════════════════════════════════════════════════════════════════

class PIR(db.Model):
    """
    Product Information Request.

    ``requester_id`` is fixed at creation. ``version`` is bumped by the
    entity store on every update and backs optimistic concurrency checks.
    """

    __tablename__ = "pirs"
    __table_args__ = (
        db.Index("idx_pir_status_created", "status", "created_at"),
    )

    MUTABLE_FIELDS = frozenset({
        "title", "description", "product_name", "product_category",
        "status", "assigned_responder_id", "assigned_responder_name",
        "reviewer_id", "reviewer_name",
        "submitted_at", "reviewed_at", "accepted_at", "rejected_at",
        "completion_deadline", "tags", "question_ids", "attachment_ids",
        "comments", "review_notes",
    })
    LIST_FIELDS = frozenset({"tags", "question_ids", "attachment_ids"})

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=False)
    product_name = db.Column(db.String(200), nullable=False)
    product_category = db.Column(db.String(100), nullable=False)

    status = db.Column(
        db.String(20), nullable=False, default="draft",
        comment="draft | requested | submitted | reviewed | accepted | rejected",
    )

    # Role assignments
    requester_id = db.Column(db.String(128), nullable=False, index=True)
    requester_name = db.Column(db.String(150), nullable=False)
    assigned_responder_id = db.Column(db.String(128), nullable=True, index=True)
    assigned_responder_name = db.Column(db.String(150), nullable=True)
    reviewer_id = db.Column(db.String(128), nullable=True, index=True)
    reviewer_name = db.Column(db.String(150), nullable=True)

    # Collections (id-lists, set semantics)
    tags = db.Column(db.JSON, nullable=False, default=list)
    question_ids = db.Column(db.JSON, nullable=False, default=list)
    attachment_ids = db.Column(db.JSON, nullable=False, default=list)

    comments = db.Column(db.Text, nullable=True)
    review_notes = db.Column(db.Text, nullable=True)
    completion_deadline = db.Column(db.DateTime(timezone=True), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    # Lifecycle timestamps
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    accepted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "product_name": self.product_name,
            "product_category": self.product_category,
            "status": self.status,
            "requester_id": self.requester_id,
            "requester_name": self.requester_name,
            "assigned_responder_id": self.assigned_responder_id,
            "assigned_responder_name": self.assigned_responder_name,
            "reviewer_id": self.reviewer_id,
            "reviewer_name": self.reviewer_name,
            "tags": list(self.tags or []),
            "question_ids": list(self.question_ids or []),
            "attachment_ids": list(self.attachment_ids or []),
            "comments": self.comments,
            "review_notes": self.review_notes,
            "completion_deadline": _iso(self.completion_deadline),
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "submitted_at": _iso(self.submitted_at),
            "reviewed_at": _iso(self.reviewed_at),
            "accepted_at": _iso(self.accepted_at),
            "rejected_at": _iso(self.rejected_at),
        }

    def __repr__(self):
        return f"<PIR {self.id}: {self.title[:40]} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# Question / Answer
# ═════════════════════════════════════════════════════════════════════════════

class Question(db.Model):
    """Question raised on a PIR. Never deleted in normal flow."""

    __tablename__ = "questions"
    __table_args__ = (
        db.Index("idx_question_pir_created", "pir_id", "created_at"),
    )

    MUTABLE_FIELDS = frozenset({"text", "category", "required", "attachment_ids"})
    LIST_FIELDS = frozenset({"attachment_ids"})

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    pir_id = db.Column(db.String(36), nullable=False, index=True)
    text = db.Column(db.Text, nullable=False)
    category = db.Column(db.String(100), nullable=False)
    required = db.Column(db.Boolean, nullable=False, default=False)
    created_by = db.Column(db.String(128), nullable=False)
    attachment_ids = db.Column(db.JSON, nullable=False, default=list)
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "pir_id": self.pir_id,
            "text": self.text,
            "category": self.category,
            "required": self.required,
            "created_by": self.created_by,
            "attachment_ids": list(self.attachment_ids or []),
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Question {self.id}: {self.text[:40]}>"


class Answer(db.Model):
    """
    Answer to a Question. ``pir_id`` is denormalized from the question
    for direct per-PIR queries. Several answers per question are allowed.
    """

    __tablename__ = "answers"
    __table_args__ = (
        db.Index("idx_answer_question_created", "question_id", "created_at"),
    )

    MUTABLE_FIELDS = frozenset({"text", "attachment_ids"})
    LIST_FIELDS = frozenset({"attachment_ids"})

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    question_id = db.Column(db.String(36), nullable=False, index=True)
    pir_id = db.Column(db.String(36), nullable=False, index=True)
    text = db.Column(db.Text, nullable=False)
    responder_id = db.Column(db.String(128), nullable=False, index=True)
    responder_name = db.Column(db.String(150), nullable=False)
    attachment_ids = db.Column(db.JSON, nullable=False, default=list)
    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "question_id": self.question_id,
            "pir_id": self.pir_id,
            "text": self.text,
            "responder_id": self.responder_id,
            "responder_name": self.responder_name,
            "attachment_ids": list(self.attachment_ids or []),
            "version": self.version,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Answer {self.id} → Question {self.question_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# Attachment
# ═════════════════════════════════════════════════════════════════════════════

class Attachment(db.Model):
    """
    Metadata for an uploaded file. The bytes live in the blob store,
    addressed by the opaque ``download_url`` locator.

    Polymorphic parent: ``parent_type`` + ``parent_id``.
    """

    __tablename__ = "attachments"
    __table_args__ = (
        db.Index("idx_attachment_parent", "parent_type", "parent_id"),
    )

    MUTABLE_FIELDS = frozenset({"file_name"})
    LIST_FIELDS = frozenset()

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    file_name = db.Column(db.String(255), nullable=False)
    file_type = db.Column(db.String(150), nullable=False, default="application/octet-stream")
    file_size = db.Column(db.Integer, nullable=False, default=0)
    uploaded_by = db.Column(db.String(128), nullable=False)
    uploaded_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    parent_id = db.Column(db.String(36), nullable=False)
    parent_type = db.Column(db.String(20), nullable=False, comment="pir | question | answer")
    download_url = db.Column(db.String(1000), nullable=False, comment="Opaque blob locator")

    def to_dict(self):
        return {
            "id": self.id,
            "file_name": self.file_name,
            "file_type": self.file_type,
            "file_size": self.file_size,
            "uploaded_by": self.uploaded_by,
            "uploaded_at": _iso(self.uploaded_at),
            "parent_id": self.parent_id,
            "parent_type": self.parent_type,
            "download_url": self.download_url,
        }

    def __repr__(self):
        return f"<Attachment {self.id}: {self.file_name}>"


# ═════════════════════════════════════════════════════════════════════════════
# Tag - global, deduplicated by case-insensitive name
# ═════════════════════════════════════════════════════════════════════════════

class Tag(db.Model):
    """Global tag. ``name_key`` is the lower-cased name and is unique."""

    __tablename__ = "tags"

    MUTABLE_FIELDS = frozenset({"name", "name_key", "category", "color"})
    LIST_FIELDS = frozenset()

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(100), nullable=False)
    name_key = db.Column(db.String(100), nullable=False, unique=True)
    category = db.Column(db.String(100), nullable=True, index=True)
    color = db.Column(db.String(20), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "color": self.color,
        }

    def __repr__(self):
        return f"<Tag {self.name}>"
