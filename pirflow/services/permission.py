"""
PIR Permission Resolver

Maps (user role + identity, PIR status, PIR role assignments) to the set
of actions the user may currently perform. Pure: no store access. The
lifecycle engine, the aggregate manager and the API all consult it.

Usage:
    from pirflow.services.permission import resolve_actions, check_permission

    actions = resolve_actions(user, pir)          # {"edit", "request"}
    check_permission(user, pir, ACTION_SUBMIT)    # raises PermissionDenied
"""

from pirflow.core.exceptions import PermissionDenied
from pirflow.models.auth import ROLE_ADMIN, ROLE_REVIEWER


ACTION_EDIT = "edit"
ACTION_REQUEST = "request"
ACTION_SUBMIT = "submit"
ACTION_REVIEW = "review"
ACTION_ACCEPT_REJECT = "accept_reject"

ALL_ACTIONS = (
    ACTION_EDIT,
    ACTION_REQUEST,
    ACTION_SUBMIT,
    ACTION_REVIEW,
    ACTION_ACCEPT_REJECT,
)

# Target status → action that gates the transition into it.
TRANSITION_ACTIONS = {
    "requested": ACTION_REQUEST,
    "submitted": ACTION_SUBMIT,
    "reviewed": ACTION_REVIEW,
    "accepted": ACTION_ACCEPT_REJECT,
    "rejected": ACTION_ACCEPT_REJECT,
}


def _is_admin(user) -> bool:
    return user is not None and user.role == ROLE_ADMIN


def _same(user_id, other_id) -> bool:
    return bool(user_id) and user_id == other_id


def resolve_actions(user, pir) -> set[str]:
    """
    Return the actions ``user`` may perform on ``pir`` right now.

    Args:
        user: object with ``id`` and ``role`` (a ``User`` row or equivalent).
        pir: object with ``status``, ``requester_id``,
            ``assigned_responder_id`` and ``reviewer_id``.
    """
    if user is None or pir is None:
        return set()

    admin = _is_admin(user)
    is_requester = _same(user.id, pir.requester_id)
    is_responder = _same(user.id, pir.assigned_responder_id)
    is_reviewer = _same(user.id, pir.reviewer_id)
    status = pir.status

    actions = set()
    if admin or (is_requester and status == "draft"):
        actions.add(ACTION_EDIT)
    if status == "draft" and (admin or is_requester):
        actions.add(ACTION_REQUEST)
    if status == "requested" and (admin or is_responder):
        actions.add(ACTION_SUBMIT)
    if status == "submitted" and (admin or user.role == ROLE_REVIEWER):
        actions.add(ACTION_REVIEW)
    if status == "reviewed" and (admin or is_reviewer):
        actions.add(ACTION_ACCEPT_REJECT)
    return actions


def has_permission(user, pir, action: str) -> bool:
    return action in resolve_actions(user, pir)


def check_permission(user, pir, action: str) -> None:
    """Raise ``PermissionDenied`` unless ``action`` is currently permitted."""
    if not has_permission(user, pir, action):
        raise PermissionDenied(getattr(user, "id", None), action, getattr(pir, "id", None))


def can_author_questions(user, pir) -> bool:
    return has_permission(user, pir, ACTION_EDIT)


def can_answer_questions(user, pir) -> bool:
    if pir is None or user is None:
        return False
    return has_permission(user, pir, ACTION_SUBMIT) or pir.status == "submitted"


def permission_flags(user, pir) -> dict:
    """Boolean view of the resolved actions, as served to UI callers."""
    actions = resolve_actions(user, pir)
    return {
        "can_edit": ACTION_EDIT in actions,
        "can_request": ACTION_REQUEST in actions,
        "can_submit": ACTION_SUBMIT in actions,
        "can_review": ACTION_REVIEW in actions,
        "can_accept_reject": ACTION_ACCEPT_REJECT in actions,
        "can_add_questions": ACTION_EDIT in actions,
        "can_answer_questions": can_answer_questions(user, pir),
        "can_upload": ACTION_EDIT in actions,
    }
