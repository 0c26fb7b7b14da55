"""
Identity middleware - resolves the calling user for each API request.

Tokens are issued by the external identity provider; this service only
verifies them.

Priority order:
  1. Authorization: Bearer <jwt>  (HS256, JWT_SECRET_KEY, ``sub`` = user id)
  2. X-User-Id header             (only when AUTH_TRUST_USER_HEADER is set)

The resolved id lands in ``g.current_user_id``. Views call
``current_user()`` to load the registered profile.
"""

import logging

import jwt as pyjwt
from flask import current_app, g, request

from pirflow.core.exceptions import AuthenticationError, NotFoundError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

# Paths that never carry identity
IDENTITY_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def _get_secret():
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def decode_identity_token(token: str) -> dict:
    """Verify a bearer token and return its payload. Raises pyjwt errors."""
    return pyjwt.decode(
        token,
        _get_secret(),
        algorithms=[ALGORITHM],
        options={"require": ["sub"]},
    )


def init_identity_middleware(app):
    """Register identity resolution as a before_request hook."""

    @app.before_request
    def _resolve_identity():
        g.current_user_id = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in IDENTITY_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            try:
                payload = decode_identity_token(auth_header[7:])
                g.current_user_id = str(payload["sub"])
            except pyjwt.ExpiredSignatureError:
                logger.info("Expired bearer token on %s", path)
            except pyjwt.InvalidTokenError as exc:
                logger.info("Invalid bearer token on %s: %s", path, exc)
            return

        if current_app.config.get("AUTH_TRUST_USER_HEADER"):
            header_id = request.headers.get("X-User-Id", "").strip()
            if header_id:
                g.current_user_id = header_id


def current_user_id() -> str:
    """Identity of the caller; ``AuthenticationError`` when there is none."""
    user_id = getattr(g, "current_user_id", None)
    if not user_id:
        raise AuthenticationError("Authentication required")
    return user_id


def current_user():
    """Registered profile of the caller."""
    from pirflow.services.workflow import get_workflow

    user_id = current_user_id()
    try:
        return get_workflow().users.get_user(user_id)
    except NotFoundError as exc:
        raise AuthenticationError(f"User {user_id} is not registered") from exc
