"""
User Service - signup records and profiles for externally issued identities.

Roles are fixed at signup; there is no role-change path.
"""

import logging

from email_validator import EmailNotValidError, validate_email

from pirflow.core.exceptions import ValidationError
from pirflow.models.auth import ROLE_ADMIN, USER_ROLES, User

logger = logging.getLogger(__name__)

PROFILE_FIELDS = User.MUTABLE_FIELDS


def _normalize_email(email):
    try:
        return validate_email(email or "", check_deliverability=False).normalized
    except EmailNotValidError as exc:
        raise ValidationError(f"Invalid email: {exc}", details={"email": "invalid"}) from exc


def _required(value, field):
    text = value.strip() if isinstance(value, str) else ""
    if not text:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return text


class UserService:
    def __init__(self, store):
        self.store = store

    def register_user(self, user_id, *, email, display_name, role, department=None):
        """Create the profile for identity ``user_id``. Duplicate ids → ConflictError."""
        user_id = _required(user_id, "id")
        if role not in USER_ROLES:
            raise ValidationError(
                f"role must be one of {', '.join(sorted(USER_ROLES))}",
                details={"role": "invalid"},
            )
        self.store.create("users", {
            "id": user_id,
            "email": _normalize_email(email),
            "display_name": _required(display_name, "display_name"),
            "role": role,
            "department": department,
        })
        logger.info("User registered: %s (%s)", user_id, role)
        return self.store.get("users", user_id)

    def get_user(self, user_id):
        return self.store.get_or_404("users", user_id, label="User")

    def update_profile(self, user_id, patch):
        user = self.get_user(user_id)
        if "role" in patch and patch["role"] != user.role:
            raise ValidationError("Role cannot be changed after signup", details={"role": "immutable"})

        values = {k: v for k, v in patch.items() if k != "role"}
        illegal = sorted(set(values) - PROFILE_FIELDS)
        if illegal:
            raise ValidationError(
                f"Fields not editable: {', '.join(illegal)}",
                details={field: "not editable" for field in illegal},
            )
        if "email" in values:
            values["email"] = _normalize_email(values["email"])
        if "display_name" in values:
            values["display_name"] = _required(values["display_name"], "display_name")
        if not values:
            return user
        return self.store.update("users", user.id, values)

    def list_users(self, role=None):
        filters = {"role": role} if role else None
        return self.store.query("users", filters, order_by="display_name")

    def admin_emails(self):
        return [u.email for u in self.list_users(ROLE_ADMIN) if u.email]
