"""
Domain exception hierarchy.

Services raise these; the API layer registers one handler per type and maps
them to HTTP status codes. Nothing below the API layer knows about HTTP.

Usage:
    from opscore.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError("RequestStep", step_id)
    raise ValidationError("Title is required", details={"title": "empty"})
"""


class OpsCoreError(Exception):
    """Base class for every error a command or query can return."""

    status_code = 400

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(OpsCoreError):
    """Malformed or missing input, or a business-rule violation on the input."""

    status_code = 422


class AuthorizationError(OpsCoreError):
    """Caller lacks the role or department rights for the operation."""

    status_code = 403


class InvalidStateError(OpsCoreError):
    """Operation is not legal in the entity's current state.

    Also raised for the loser of a race: once the winner commits, the
    expected status no longer holds.
    """

    status_code = 409


class NotFoundError(OpsCoreError):
    """Entity does not exist in the caller's company.

    Used for genuinely missing rows AND cross-company lookups, so a caller
    cannot probe for ids in another tenant.
    """

    status_code = 404

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ConflictError(OpsCoreError):
    """Precondition on the live row no longer matches (audit rollback, duplicates)."""

    status_code = 409


class DeliveryError(OpsCoreError):
    """Email provider failure. Always retryable up to the attempt cap."""

    status_code = 502
