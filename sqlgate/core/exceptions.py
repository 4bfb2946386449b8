"""
Platform-wide exception hierarchy.

Services raise these; blueprints register one handler per base type and get
consistent HTTP status codes and machine-readable error codes everywhere.

Usage:
    from sqlgate.core.exceptions import NotFoundError, BusyError

    raise NotFoundError(resource="Order", resource_id=order_id)
    raise BusyError("Another task of this order is executing")
"""


class SqlGateError(Exception):
    """Base class for all business errors surfaced to API callers."""

    status_code = 400
    code = "ERR_BAD_REQUEST"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ValidationError(SqlGateError):
    """Input was well-formed but violated a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown (or audit findings) for
                 structured API responses.
    """

    status_code = 400
    code = "ERR_VALIDATION"


class ForbiddenError(SqlGateError):
    """The caller is not allowed to perform this operation."""

    status_code = 403
    code = "ERR_FORBIDDEN"


class NotFoundError(SqlGateError):
    """Raised when a requested resource does not exist (or is soft-deleted).

    Args:
        resource: Human-readable entity name (e.g. "Order", "Task").
        resource_id: The key that was looked up. Included in the message.
        message: Optional override for the rendered message.
    """

    status_code = 404
    code = "ERR_NOT_FOUND"

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        if message is None:
            message = f"{resource}"
            if resource_id is not None:
                message += f" id={resource_id}"
            message += " not found"
        super().__init__(message)


class InvalidStateError(SqlGateError):
    """A state-machine precondition was violated (wrong progress)."""

    status_code = 409
    code = "ERR_INVALID_STATE"


class BusyError(SqlGateError):
    """Mutual-exclusion conflict: another task of the order is running."""

    status_code = 409
    code = "ERR_BUSY"


class ExecutionFailure(SqlGateError):
    """The target database or the schema-change subprocess reported an error.

    ``payload`` is the result dict already persisted on the Task.
    """

    status_code = 500
    code = "ERR_EXECUTION_FAILED"

    def __init__(self, message: str, payload: dict | None = None) -> None:
        self.payload = payload or {}
        super().__init__(message, details={"result": self.payload})


class InternalError(SqlGateError):
    """Store or transport failure."""

    status_code = 500
    code = "ERR_INTERNAL"


class AlreadyDecidedError(InvalidStateError):
    """The approver has already recorded a decision on this order."""

    code = "ERR_ALREADY_DECIDED"
