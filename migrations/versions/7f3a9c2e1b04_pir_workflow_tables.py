"""pir_workflow_tables

Creates the PIR workflow schema:
  - users          - profiles for externally issued identities
  - pirs           - Product Information Requests (aggregate root)
  - questions      - questions raised on a PIR
  - answers        - answers to questions (pir_id denormalized)
  - attachments    - blob metadata, polymorphic parent (pir | question | answer)
  - tags           - global tags, unique by lower-cased name
  - notifications  - in-app notifications per recipient email
  - email_logs     - outbound email audit log

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via db.create_all()
in a development environment.

Revision ID: 7f3a9c2e1b04
Revises:
Create Date: 2026-10-18 09:12:44.318211
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '7f3a9c2e1b04'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── User ──────────────────────────────────────────────────────────────
    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.String(length=128), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("display_name", sa.String(length=150), nullable=False),
            sa.Column(
                "role", sa.String(length=20), nullable=False,
                comment="admin | requester | responder | reviewer",
            ),
            sa.Column("department", sa.String(length=150), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_users_email", "users", ["email"])
        op.create_index("ix_users_role", "users", ["role"])

    # ── PIR ───────────────────────────────────────────────────────────────
    if "pirs" not in existing:
        op.create_table(
            "pirs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("product_name", sa.String(length=200), nullable=False),
            sa.Column("product_category", sa.String(length=100), nullable=False),
            sa.Column(
                "status", sa.String(length=20), nullable=False, server_default="draft",
                comment="draft | requested | submitted | reviewed | accepted | rejected",
            ),
            sa.Column("requester_id", sa.String(length=128), nullable=False),
            sa.Column("requester_name", sa.String(length=150), nullable=False),
            sa.Column("assigned_responder_id", sa.String(length=128), nullable=True),
            sa.Column("assigned_responder_name", sa.String(length=150), nullable=True),
            sa.Column("reviewer_id", sa.String(length=128), nullable=True),
            sa.Column("reviewer_name", sa.String(length=150), nullable=True),
            sa.Column("tags", sa.JSON(), nullable=False),
            sa.Column("question_ids", sa.JSON(), nullable=False),
            sa.Column("attachment_ids", sa.JSON(), nullable=False),
            sa.Column("comments", sa.Text(), nullable=True),
            sa.Column("review_notes", sa.Text(), nullable=True),
            sa.Column("completion_deadline", sa.DateTime(timezone=True), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            *_timestamps(),
            sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_pir_status_created", "pirs", ["status", "created_at"])
        op.create_index("ix_pirs_requester_id", "pirs", ["requester_id"])
        op.create_index("ix_pirs_assigned_responder_id", "pirs", ["assigned_responder_id"])
        op.create_index("ix_pirs_reviewer_id", "pirs", ["reviewer_id"])

    # ── Question ──────────────────────────────────────────────────────────
    if "questions" not in existing:
        op.create_table(
            "questions",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("pir_id", sa.String(length=36), nullable=False),
            sa.Column("text", sa.Text(), nullable=False),
            sa.Column("category", sa.String(length=100), nullable=False),
            sa.Column("required", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_by", sa.String(length=128), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("attachment_ids", sa.JSON(), nullable=False),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_questions_pir_id", "questions", ["pir_id"])
        op.create_index("idx_question_pir_created", "questions", ["pir_id", "created_at"])

    # ── Answer ────────────────────────────────────────────────────────────
    if "answers" not in existing:
        op.create_table(
            "answers",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("question_id", sa.String(length=36), nullable=False),
            sa.Column("pir_id", sa.String(length=36), nullable=False),
            sa.Column("text", sa.Text(), nullable=False),
            sa.Column("responder_id", sa.String(length=128), nullable=False),
            sa.Column("responder_name", sa.String(length=150), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("attachment_ids", sa.JSON(), nullable=False),
            *_timestamps(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_answers_question_id", "answers", ["question_id"])
        op.create_index("ix_answers_pir_id", "answers", ["pir_id"])
        op.create_index("ix_answers_responder_id", "answers", ["responder_id"])
        op.create_index("idx_answer_question_created", "answers", ["question_id", "created_at"])

    # ── Attachment ────────────────────────────────────────────────────────
    if "attachments" not in existing:
        op.create_table(
            "attachments",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("file_name", sa.String(length=255), nullable=False),
            sa.Column("file_type", sa.String(length=150), nullable=False),
            sa.Column("file_size", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("uploaded_by", sa.String(length=128), nullable=False),
            sa.Column("uploaded_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("parent_id", sa.String(length=36), nullable=False),
            sa.Column(
                "parent_type", sa.String(length=20), nullable=False,
                comment="pir | question | answer",
            ),
            sa.Column(
                "download_url", sa.String(length=1000), nullable=False,
                comment="Opaque blob locator",
            ),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("idx_attachment_parent", "attachments", ["parent_type", "parent_id"])

    # ── Tag ───────────────────────────────────────────────────────────────
    if "tags" not in existing:
        op.create_table(
            "tags",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=100), nullable=False),
            sa.Column("name_key", sa.String(length=100), nullable=False),
            sa.Column("category", sa.String(length=100), nullable=True),
            sa.Column("color", sa.String(length=20), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name_key", name="uq_tags_name_key"),
        )
        op.create_index("ix_tags_category", "tags", ["category"])

    # ── Notification ──────────────────────────────────────────────────────
    if "notifications" not in existing:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient", sa.String(length=255), nullable=False, comment="Recipient email"),
            sa.Column("kind", sa.String(length=30), nullable=False),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("pir_id", sa.String(length=36), nullable=True),
            sa.Column("entity_type", sa.String(length=30), nullable=True, comment="pir/question/answer"),
            sa.Column("entity_id", sa.String(length=36), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_notifications_recipient", "notifications", ["recipient"])
        op.create_index("ix_notifications_pir_id", "notifications", ["pir_id"])

    # ── EmailLog ──────────────────────────────────────────────────────────
    if "email_logs" not in existing:
        op.create_table(
            "email_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient_email", sa.String(length=255), nullable=False),
            sa.Column("subject", sa.String(length=500), nullable=False),
            sa.Column("template_name", sa.String(length=100), nullable=True, comment="Email template used"),
            sa.Column("status", sa.String(length=20), nullable=True, comment="queued, sent, failed"),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("notification_id", sa.Integer(), nullable=True),
            sa.Column("pir_id", sa.String(length=36), nullable=True),
            sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_email_logs_recipient_email", "email_logs", ["recipient_email"])
        op.create_index("ix_email_logs_pir_id", "email_logs", ["pir_id"])


def downgrade():
    for table in (
        "email_logs", "notifications", "tags", "attachments",
        "answers", "questions", "pirs", "users",
    ):
        op.drop_table(table)
