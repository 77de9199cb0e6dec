"""
Engine-wide exception hierarchy.

Every service raises one of these types; the app registers a single handler
against ``ShopfloorError`` and answers with the exception's machine-readable
``code`` plus the human text, so blueprints never translate errors by hand.

Usage:
    from shopfloor.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Order", resource_id="T-1")
    raise ValidationError("failed_task_ref is required", details={"fail_qty": 2})
"""


class ShopfloorError(Exception):
    """Base class for errors returned to callers.

    Args:
        message: Human-readable explanation.
        details: Optional structured payload echoed in API responses.
    """

    code = "error"
    http_status = 400

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(ShopfloorError):
    """Missing or malformed input (e.g. fail quantity without a failure reference)."""

    code = "validation_error"
    http_status = 400


class NotFoundError(ShopfloorError):
    """Raised when an order, step, batch or remediation id does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Order", "FlowStep").
        resource_id: The key that was looked up.
    """

    code = "not_found"
    http_status = 404

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg, {"resource": resource, "resource_id": resource_id})


class NotAssigned(ShopfloorError):
    """The authorization resolver found no rule allowing the caller to act."""

    code = "not_assigned"
    http_status = 403


class PermissionDenied(ShopfloorError):
    """The caller lacks the administrative privilege an operation demands."""

    code = "permission_denied"
    http_status = 403


class InvalidState(ShopfloorError):
    """A precondition on the current state was violated.

    Also raised when a guarded conditional write matches zero rows, which
    means another request changed the row first.
    """

    code = "invalid_state"
    http_status = 409


class AlreadyInProgress(InvalidState):
    """Another step of the same order is already ``current``."""

    code = "already_in_progress"
