"""
Shared pytest fixtures for the PIR workflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - workflow: the app's PIRWorkflow container
    - admin / requester / responder / reviewer: registered users
    - draft_pir: a Draft PIR owned by ``requester``
"""

import pytest

from pirflow import create_app
from pirflow.models import db as _db
from pirflow.services.workflow import get_workflow


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app(tmp_path_factory):
    """Create the Flask application once per test session."""
    application = create_app("testing")
    application.config["BLOB_STORAGE_PATH"] = str(tmp_path_factory.mktemp("blobs"))
    # Rebuild the workflow so the blob store picks up the temp directory.
    from pirflow.services.workflow import init_workflow
    init_workflow(application)
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def workflow():
    return get_workflow()


# ── Users ────────────────────────────────────────────────────────────────


def _register(workflow, user_id, role, name):
    return workflow.users.register_user(
        user_id,
        email=f"{user_id}@example.com",
        display_name=name,
        role=role,
    )


@pytest.fixture()
def admin(workflow):
    return _register(workflow, "admin-1", "admin", "Ada Admin")


@pytest.fixture()
def requester(workflow):
    return _register(workflow, "req-1", "requester", "Rita Requester")


@pytest.fixture()
def responder(workflow):
    return _register(workflow, "resp-1", "responder", "Ravi Responder")


@pytest.fixture()
def reviewer(workflow):
    return _register(workflow, "rev-1", "reviewer", "Vera Reviewer")


# ── Convenience fixtures ─────────────────────────────────────────────────


PIR_DATA = {
    "title": "Allergen statement for Oat Bar",
    "description": "Need the full allergen declaration.",
    "product_name": "Oat Bar 40g",
    "product_category": "Snacks",
}


@pytest.fixture()
def draft_pir(workflow, requester):
    """A Draft PIR created by ``requester``."""
    return workflow.pirs.create_pir(requester, dict(PIR_DATA))
