"""
PIR Workflow Service
Flask Application Factory.

Usage:
    from pirflow import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from pirflow.config import config
from pirflow.models import db
from pirflow.middleware.identity import init_identity_middleware
from pirflow.middleware.logging_config import configure_logging
from pirflow.middleware.rate_limiter import init_rate_limits
from pirflow.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit - apply per-blueprint
)


def create_app(config_name=None, **workflow_overrides):
    """
    Create and configure the Flask application.

    Args:
        config_name: One of "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.
        workflow_overrides: Collaborators to inject into the PIR workflow
                     (e.g. ``blobs=``, ``dispatcher=``), mainly for tests.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request middleware ───────────────────────────────────────────────
    init_request_timing(app)
    init_identity_middleware(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from pirflow.models import auth as _auth_models                  # noqa: F401
    from pirflow.models import pir as _pir_models                    # noqa: F401
    from pirflow.models import notification as _notification_models  # noqa: F401

    with app.app_context():
        db.create_all()

    # ── PIR workflow (store, blobs, lifecycle, notifications) ────────────
    from pirflow.services.workflow import init_workflow
    init_workflow(app, **workflow_overrides)

    # ── Blueprints ───────────────────────────────────────────────────────
    from pirflow.blueprints import register_error_handlers
    from pirflow.blueprints.health_bp import health_bp
    from pirflow.blueprints.notification_bp import notification_bp
    from pirflow.blueprints.pir_bp import pir_bp
    from pirflow.blueprints.tag_bp import tag_bp
    from pirflow.blueprints.user_bp import user_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(pir_bp)
    app.register_blueprint(tag_bp)
    app.register_blueprint(user_bp)
    app.register_blueprint(notification_bp)

    register_error_handlers(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    logger.debug("Application created with config '%s'", config_name)
    return app
