"""
PIR Workflow Service
Identity domain model.

Models:
    - User: profile record for an identity issued by the external provider.

The role is fixed at signup; there is no role-change workflow.
"""

from datetime import datetime, timezone

from pirflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ROLE_ADMIN = "admin"
ROLE_REQUESTER = "requester"
ROLE_RESPONDER = "responder"
ROLE_REVIEWER = "reviewer"

USER_ROLES = frozenset({ROLE_ADMIN, ROLE_REQUESTER, ROLE_RESPONDER, ROLE_REVIEWER})


def _utcnow():
    return datetime.now(timezone.utc)


class User(db.Model):
    """
    Workflow participant.

    ``id`` is the subject identifier issued by the identity provider,
    not generated here.
    """

    __tablename__ = "users"

    MUTABLE_FIELDS = frozenset({"email", "display_name", "department"})

    id = db.Column(db.String(128), primary_key=True)
    email = db.Column(db.String(255), nullable=False, index=True)
    display_name = db.Column(db.String(150), nullable=False)
    role = db.Column(
        db.String(20), nullable=False, index=True,
        comment="admin | requester | responder | reviewer",
    )
    department = db.Column(db.String(150), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "display_name": self.display_name,
            "role": self.role,
            "department": self.department,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.id} ({self.role})>"
