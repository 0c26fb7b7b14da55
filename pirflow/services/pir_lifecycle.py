"""
PIR Lifecycle Engine

Owns the PIR status state machine:
  draft → requested → submitted → reviewed → accepted | rejected

For every transition it:
  - rejects self-transitions and pairs outside PIR_TRANSITIONS
  - checks the actor through the permission resolver
  - assigns the reviewer on entry into 'reviewed'
  - stamps the status-specific lifecycle timestamp once
  - persists status + stamp as one compare-and-set update
  - publishes TransitionApplied (notification fan-out happens in a subscriber)

Usage:
    engine = PIRLifecycleEngine(store, events)
    result = engine.apply_transition(pir_id, "submitted", actor)
    result = engine.apply_transition(
        pir_id, "reviewed", actor,
        reviewer_id=actor.id, reviewer_name=actor.display_name,
    )
"""

import logging
from datetime import datetime, timezone

from pirflow.core.exceptions import InvalidTransitionError, ValidationError
from pirflow.models.auth import ROLE_ADMIN
from pirflow.models.pir import PIR_STATUSES, PIR_TRANSITIONS, STATUS_TIMESTAMP_FIELDS
from pirflow.services.events import TransitionApplied
from pirflow.services.permission import TRANSITION_ACTIONS, check_permission, has_permission

logger = logging.getLogger(__name__)


def validate_transition(pir, target_status: str) -> dict:
    """Validate a status change against the transition table only."""
    current = pir.status
    if target_status not in PIR_STATUSES:
        return {"valid": False, "from": current, "to": target_status,
                "reason": f"Unknown status: {target_status}"}
    if target_status == current:
        return {"valid": False, "from": current, "to": target_status,
                "reason": f"PIR is already '{current}'"}
    if target_status not in PIR_TRANSITIONS.get(current, []):
        return {"valid": False, "from": current, "to": target_status,
                "reason": f"'{current}' cannot move to '{target_status}'"}
    return {"valid": True, "from": current, "to": target_status, "reason": None}


class PIRLifecycleEngine:
    """Applies lifecycle transitions through the entity store."""

    def __init__(self, store, events):
        self.store = store
        self.events = events

    # ── Queries ──────────────────────────────────────────────────────────

    def available_transitions(self, user, pir) -> list[str]:
        """Target statuses ``user`` could move ``pir`` into right now."""
        return [
            target for target in PIR_TRANSITIONS.get(pir.status, [])
            if has_permission(user, pir, TRANSITION_ACTIONS[target])
        ]

    def resolve_recipients(self, pir, target_status: str) -> list[str]:
        """
        Email addresses to notify for a transition into ``target_status``.

        Returns an empty list when nobody is resolvable, or when a submitted
        PIR has no reviewer assigned yet.
        """
        if target_status == "requested":
            user_ids = [pir.assigned_responder_id]
            user_ids += [u.id for u in self.store.query("users", {"role": ROLE_ADMIN})]
        elif target_status == "submitted":
            if not pir.reviewer_id:
                return []
            user_ids = [pir.reviewer_id, pir.requester_id]
        elif target_status in ("reviewed", "accepted", "rejected"):
            user_ids = [pir.requester_id, pir.assigned_responder_id]
        else:
            return []
        return self._emails_for(user_ids)

    def resolve_child_recipients(self, pir, child_type: str) -> list[str]:
        """New question → assigned responder. New answer → requester."""
        if child_type == "question":
            return self._emails_for([pir.assigned_responder_id])
        if child_type == "answer":
            return self._emails_for([pir.requester_id])
        return []

    def _emails_for(self, user_ids) -> list[str]:
        emails = []
        for user_id in dict.fromkeys(u for u in user_ids if u):
            user = self.store.get("users", user_id)
            if user is None or not user.email:
                logger.info("No email resolvable for user %s, skipped", user_id)
                continue
            if user.email not in emails:
                emails.append(user.email)
        return emails

    # ── Transition ───────────────────────────────────────────────────────

    def apply_transition(
        self,
        pir_id: str,
        target_status: str,
        actor,
        *,
        reviewer_id: str | None = None,
        reviewer_name: str | None = None,
        review_notes: str | None = None,
        expected_version: int | None = None,
    ) -> dict:
        """
        Move a PIR into ``target_status``.

        Returns:
            {"pir_id", "previous_status", "new_status", "pir"}

        Raises:
            NotFoundError, InvalidTransitionError, PermissionDenied,
            ValidationError, ConflictError
        """
        pir = self.store.get_or_404("pirs", pir_id)
        previous = pir.status

        # 1. Table (self-transitions included)
        validation = validate_transition(pir, target_status)
        if not validation["valid"]:
            raise InvalidTransitionError(pir.id, previous, target_status, validation["reason"])

        # 2. Actor
        check_permission(actor, pir, TRANSITION_ACTIONS[target_status])

        patch = {"status": target_status}

        # 3. Reviewer assignment
        if target_status == "reviewed":
            missing = {
                field: "required"
                for field, value in (("reviewer_id", reviewer_id), ("reviewer_name", reviewer_name))
                if not isinstance(value, str) or not value.strip()
            }
            if missing:
                raise ValidationError(
                    "reviewer_id and reviewer_name are required to review a PIR",
                    details=missing,
                )
            self.store.get_or_404("users", reviewer_id, label="Reviewer")
            patch["reviewer_id"] = reviewer_id
            patch["reviewer_name"] = reviewer_name.strip()

        if review_notes is not None and not isinstance(review_notes, str):
            raise ValidationError("review_notes must be a string", details={"review_notes": "invalid"})
        if review_notes is not None and target_status in ("reviewed", "accepted", "rejected"):
            patch["review_notes"] = review_notes

        # 4. Lifecycle stamp, first entry only
        stamp_field = STATUS_TIMESTAMP_FIELDS.get(target_status)
        if stamp_field and getattr(pir, stamp_field) is None:
            patch[stamp_field] = datetime.now(timezone.utc)

        # 5. Persist (compare-and-set on the status we validated against)
        expected = {"status": previous}
        if expected_version is not None:
            expected["version"] = expected_version
        updated = self.store.update("pirs", pir.id, patch, expected=expected)

        logger.info(
            "PIR %s: %s → %s by %s", pir_id, previous, target_status, actor.id,
        )

        # 6. Side effects
        self.events.emit(TransitionApplied(
            pir_id=pir_id,
            from_status=previous,
            to_status=target_status,
            actor_id=actor.id,
        ))

        return {
            "pir_id": pir_id,
            "previous_status": previous,
            "new_status": target_status,
            "pir": updated.to_dict(),
        }
