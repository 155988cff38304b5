"""
Engine-wide exception hierarchy.

Services raise these; blueprints register one handler per type and map
them to HTTP status codes. Batch operations (bulk update, CSV import)
catch them per item and report them as data instead.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="PlanItem", resource_id=item_id)
    raise ValidationError("Cannot move item to its own descendant")
"""


class PlanEngineError(Exception):
    """Base class so batch callers can catch every engine failure at once."""


class NotFoundError(PlanEngineError):
    """Raised when a project, item, parent or item type is absent, inactive
    or outside the caller's organization scope.

    Maps to HTTP 404.

    Args:
        resource: Human-readable entity name (e.g. "PlanItem", "Parent plan item").
        resource_id: The key that was looked up. Included in the message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ForbiddenError(PlanEngineError):
    """Raised when the caller's organization does not own the referenced item.

    Maps to HTTP 403.
    """

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(message)


class ValidationError(PlanEngineError):
    """Raised when well-formed input violates a structural rule
    (cyclic move, missing hierarchy column, dangling reference).

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InternalError(PlanEngineError):
    """Raised when the store fails while applying an atomic unit.

    Maps to HTTP 500. The original exception is chained as ``__cause__``.
    """
