"""
Platform-wide exception hierarchy.

Services raise these types and never HTTP responses. Blueprints register
one handler per type (see ``pirflow.blueprints.register_error_handlers``)
and get consistent HTTP status codes everywhere.

Usage:
    from pirflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="PIR", resource_id="8c1f...")
    raise ValidationError("Title is required", details={"title": "required"})
"""


class NotFoundError(Exception):
    """Raised when a referenced entity id does not exist.

    Args:
        resource: Human-readable entity name (e.g. "PIR", "Question").
        resource_id: The id that was looked up.
    """

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Always raised before any store write.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when a write would violate a uniqueness rule or a
    compare-and-set precondition no longer holds.

    Args:
        resource: Entity name.
        field: The field in conflict.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} conflicts with the stored state")


class InvalidTransitionError(Exception):
    """Raised when a PIR status change is not in the transition table."""

    def __init__(self, pir_id: str, current: str, target: str, reason: str | None = None) -> None:
        msg = f"Cannot move PIR {pir_id} from '{current}' to '{target}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.pir_id = pir_id
        self.current_status = current
        self.target_status = target
        self.reason = reason


class PermissionDenied(Exception):
    """Raised when a user lacks the role or identity required for an action."""

    def __init__(self, user_id: str | None, action: str, pir_id: str | None = None) -> None:
        scope = f" on PIR {pir_id}" if pir_id else ""
        super().__init__(f"User {user_id} does not have permission for '{action}'{scope}")
        self.user_id = user_id
        self.action = action
        self.pir_id = pir_id


class AuthenticationError(Exception):
    """Raised when a request carries no resolvable user identity."""


class DependencyFailure(Exception):
    """Raised when an external collaborator (blob store, notification
    transport) fails.

    Only attachment upload lets this escape to the caller; every other
    boundary logs and suppresses it.
    """

    def __init__(self, dependency: str, message: str) -> None:
        self.dependency = dependency
        super().__init__(f"{dependency}: {message}")
