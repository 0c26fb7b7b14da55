"""
PIR notification subscriber.

Turns workflow events into notification dispatches:
  - TransitionApplied → pir_status_update to the engine-resolved recipients
  - ChildCreated(question) → new_question to the assigned responder
  - ChildCreated(answer)   → new_answer to the requester

Dispatch is best effort: at most once, never retried, and a failure is
logged without reaching the code that emitted the event. With
NOTIFICATIONS_ASYNC the dispatch runs on a daemon thread inside an app
context.
"""

import logging
import threading

from flask import current_app, has_app_context

from pirflow.services.events import ChildCreated, TransitionApplied

logger = logging.getLogger(__name__)

STATUS_HEADLINES = {
    "requested": "New PIR Requested",
    "submitted": "PIR Submitted for Review",
    "reviewed": "PIR Reviewed",
    "accepted": "PIR Accepted",
    "rejected": "PIR Rejected",
}

CHILD_TEMPLATES = {
    "question": "new_question",
    "answer": "new_answer",
}


class PIRNotificationSubscriber:
    """Consumes workflow events and calls the notification dispatcher."""

    def __init__(self, store, engine, dispatcher, *, async_dispatch=False):
        self.store = store
        self.engine = engine
        self.dispatcher = dispatcher
        self.async_dispatch = async_dispatch

    def subscribe(self, events):
        events.subscribe(TransitionApplied, self.on_transition)
        events.subscribe(ChildCreated, self.on_child_created)

    # ── Handlers ─────────────────────────────────────────────────────────

    def _actor_name(self, actor_id):
        actor = self.store.get("users", actor_id)
        return actor.display_name if actor else actor_id

    def on_transition(self, event: TransitionApplied):
        pir = self.store.get("pirs", event.pir_id)
        if pir is None:
            return
        recipients = self.engine.resolve_recipients(pir, event.to_status)
        if not recipients:
            logger.info("PIR %s → %s: no resolvable recipients, notification skipped",
                        event.pir_id, event.to_status)
            return

        payload = {
            "pir_id": pir.id,
            "title": pir.title,
            "product_name": pir.product_name,
            "from_status": event.from_status,
            "to_status": event.to_status,
            "headline": STATUS_HEADLINES.get(event.to_status, "PIR Updated"),
            "actor_name": self._actor_name(event.actor_id),
            "pir_url": self._pir_url(pir.id),
            "message": f"{pir.title}: {event.from_status} → {event.to_status}",
            "entity_type": "pir",
            "entity_id": pir.id,
        }
        self._dispatch(recipients, "pir_status_update", payload)

    def on_child_created(self, event: ChildCreated):
        template = CHILD_TEMPLATES.get(event.child_type)
        if template is None:
            return
        pir = self.store.get("pirs", event.pir_id)
        child = self.store.get(f"{event.child_type}s", event.child_id)
        if pir is None or child is None:
            return
        recipients = self.engine.resolve_child_recipients(pir, event.child_type)
        if not recipients:
            logger.info("New %s on PIR %s: no resolvable recipient, notification skipped",
                        event.child_type, event.pir_id)
            return

        payload = {
            "pir_id": pir.id,
            "title": pir.title,
            "text": child.text,
            "actor_name": self._actor_name(event.actor_id),
            "pir_url": self._pir_url(pir.id),
            "message": child.text[:200],
            "entity_type": event.child_type,
            "entity_id": child.id,
        }
        self._dispatch(recipients, template, payload)

    # ── Dispatch ─────────────────────────────────────────────────────────

    @staticmethod
    def _pir_url(pir_id):
        base = current_app.config.get("APP_BASE_URL", "") if has_app_context() else ""
        return f"{base.rstrip('/')}/pirs/{pir_id}"

    def _send(self, recipients, template, payload):
        try:
            self.dispatcher.send(recipients, template, payload)
        except Exception:
            logger.exception("Notification dispatch failed: template=%s pir=%s",
                             template, payload.get("pir_id"))

    def _dispatch(self, recipients, template, payload):
        if not self.async_dispatch:
            self._send(recipients, template, payload)
            return

        app = current_app._get_current_object()

        def _run():
            with app.app_context():
                self._send(recipients, template, payload)

        threading.Thread(target=_run, daemon=True, name=f"notify-{template}").start()
