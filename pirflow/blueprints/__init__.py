"""
PIR Workflow Service
Blueprint registry and shared error handling.

Services raise ``pirflow.core.exceptions`` types; the handlers below turn
them into ``api_error`` bodies so every blueprint answers the same way.
"""

import logging

from flask import request
from sqlalchemy.exc import SQLAlchemyError

from pirflow.core.exceptions import (
    AuthenticationError,
    ConflictError,
    DependencyFailure,
    InvalidTransitionError,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from pirflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def paginate_list(items, default_limit=50, max_limit=200):
    """Apply limit/offset query params to an already-loaded list.

    Returns:
        (page_items, total_count)
    """
    total = len(items)
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return items[offset:offset + limit], total


def register_error_handlers(app):
    """Map domain exceptions to HTTP responses for the whole app."""

    @app.errorhandler(ValidationError)
    def _handle_validation(error):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @app.errorhandler(AuthenticationError)
    def _handle_authentication(error):
        return api_error(E.UNAUTHORIZED, str(error))

    @app.errorhandler(PermissionDenied)
    def _handle_permission(error):
        return api_error(E.FORBIDDEN, str(error), details={"action": error.action})

    @app.errorhandler(NotFoundError)
    def _handle_not_found(error):
        return api_error(E.NOT_FOUND, str(error))

    @app.errorhandler(InvalidTransitionError)
    def _handle_transition(error):
        return api_error(
            E.INVALID_TRANSITION, str(error),
            details={"current_status": error.current_status, "target_status": error.target_status},
        )

    @app.errorhandler(ConflictError)
    def _handle_conflict(error):
        return api_error(E.CONFLICT_STATE, str(error), details={"field": error.field})

    @app.errorhandler(DependencyFailure)
    def _handle_dependency(error):
        logger.error("Dependency failure on %s: %s", request.path, error)
        return api_error(E.DEPENDENCY, str(error), details={"dependency": error.dependency})

    @app.errorhandler(SQLAlchemyError)
    def _handle_database(error):
        logger.exception("Database error on %s %s", request.method, request.path)
        return api_error(E.DATABASE, "Database error")

    @app.errorhandler(404)
    def _not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(413)
    def _too_large(e):
        return api_error(E.PAYLOAD_TOO_LARGE, "Request body too large")

    @app.errorhandler(429)
    def _rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def _server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")
