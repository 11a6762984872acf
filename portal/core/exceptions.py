"""
Portal-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from portal.core.exceptions import NotFoundError, InvalidStateError

    raise NotFoundError(resource="Organization", resource_id=org_id)
    raise InvalidStateError("Audit AUD-2026-001 is already completed",
                            current_status="COMPLETED")

Scoring code never raises any of these: missing data is a valid input that
produces low scores and issues.
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Organization", "Audit").
        resource_id: The PK that was looked up. Included in logs and the message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed JSON but fails a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidStateError(ValidationError):
    """Raised when an entity's lifecycle state forbids the requested operation.

    Completing an already COMPLETED or CANCELLED audit, or moving a CLOSED
    CAPA, lands here. Nothing is written before this is raised.

    Maps to HTTP 409.
    """

    def __init__(self, message: str, current_status: str | None = None,
                 details: dict | None = None) -> None:
        self.current_status = current_status
        super().__init__(message, details=details)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class PersistenceError(Exception):
    """Raised when a unit of work could not be committed.

    The session has already been rolled back when this surfaces; no partial
    writes from the failed unit of work remain.
    """

    def __init__(self, operation: str, cause: Exception | None = None) -> None:
        self.operation = operation
        self.cause = cause
        msg = f"{operation} failed"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)
