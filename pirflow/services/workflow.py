"""
PIR workflow container.

Builds the collaborators once per application and keeps them in
``app.extensions["pir_workflow"]``:

    store ─┬─ PIRLifecycleEngine ─┐
           ├─ AggregateManager ───┼── EventBus ── PIRNotificationSubscriber ── NotificationDispatcher
           ├─ PIRService          │
           ├─ TagService          │
           └─ UserService         │
    blobs ─── AggregateManager ───┘
"""

import logging

from flask import current_app

from pirflow.services.blob_store import create_blob_store
from pirflow.services.entity_store import EntityStore
from pirflow.services.events import EventBus
from pirflow.services.notification import NotificationDispatcher
from pirflow.services.pir_aggregate import AggregateManager
from pirflow.services.pir_lifecycle import PIRLifecycleEngine
from pirflow.services.pir_notifications import PIRNotificationSubscriber
from pirflow.services.pir_service import PIRService
from pirflow.services.tag_service import TagService
from pirflow.services.user_service import UserService

logger = logging.getLogger(__name__)

EXTENSION_KEY = "pir_workflow"


class PIRWorkflow:
    def __init__(self, *, store=None, blobs=None, dispatcher=None, async_notifications=False):
        self.store = store or EntityStore()
        self.blobs = blobs
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.events = EventBus()

        self.lifecycle = PIRLifecycleEngine(self.store, self.events)
        self.aggregate = AggregateManager(self.store, self.blobs, self.events)
        self.pirs = PIRService(self.store, self.lifecycle, self.aggregate)
        self.tags = TagService(self.store)
        self.users = UserService(self.store)

        self.notifications = PIRNotificationSubscriber(
            self.store, self.lifecycle, self.dispatcher,
            async_dispatch=async_notifications,
        )
        self.notifications.subscribe(self.events)


def init_workflow(app, **overrides):
    """Create the workflow for ``app`` and register it as an extension."""
    options = {
        "blobs": create_blob_store(app.config),
        "async_notifications": app.config.get("NOTIFICATIONS_ASYNC", False),
    }
    options.update(overrides)
    workflow = PIRWorkflow(**options)
    app.extensions[EXTENSION_KEY] = workflow
    logger.info(
        "PIR workflow ready (blob backend=%s, async notifications=%s)",
        app.config.get("BLOB_BACKEND", "local"), options["async_notifications"],
    )
    return workflow


def get_workflow() -> PIRWorkflow:
    return current_app.extensions[EXTENSION_KEY]
