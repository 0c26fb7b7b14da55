"""
Workflow events.

The lifecycle engine and the aggregate manager publish events after a
write has been committed; subscribers (notifications) react to them.
A failing handler is logged and never reaches the publisher.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionApplied:
    pir_id: str
    from_status: str
    to_status: str
    actor_id: str


@dataclass(frozen=True)
class ChildCreated:
    pir_id: str
    parent_type: str
    parent_id: str
    child_type: str
    child_id: str
    actor_id: str


class EventBus:
    """Synchronous in-process publish/subscribe keyed by event class."""

    def __init__(self):
        self._handlers = defaultdict(list)

    def subscribe(self, event_type, handler):
        self._handlers[event_type].append(handler)

    def handlers_for(self, event_type):
        return list(self._handlers.get(event_type, ()))

    def emit(self, event) -> int:
        """Deliver ``event`` to every handler. Returns the number that succeeded."""
        delivered = 0
        for handler in self.handlers_for(type(event)):
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "Event handler %s failed for %s",
                    getattr(handler, "__qualname__", handler), event,
                )
        return delivered
