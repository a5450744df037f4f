from __future__ import annotations

from typing import Tuple


class RuleManagementError(Exception):
    """Base class for errors raised by the rule management services."""


class ValidationError(RuleManagementError):
    """Bad input: missing target location, invalid rule, no label delta."""


class ConflictError(RuleManagementError):
    """A rule with the same content-addressed id already exists."""


class NotAllowedError(RuleManagementError):
    """The operation would modify a platform-managed resource directly."""


class NotFoundError(RuleManagementError):
    def __init__(self, resource: str, id: str, detail: str = ""):
        self.resource = resource
        self.id = id
        message = f"{resource} with id {id} not found"
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)


class StorageError(RuleManagementError):
    """A storage collaborator call failed; the message carries the operation context."""


GENERIC_ERROR_MESSAGE = "An unexpected error occurred"

_HTTP_STATUS = (
    (ValidationError, 400, "validation_error"),
    (NotFoundError, 404, "not_found"),
    (NotAllowedError, 405, "not_allowed"),
    (ConflictError, 409, "conflict"),
)


# PUBLIC_INTERFACE
def http_status_for(exc: Exception) -> Tuple[int, str]:
    """Map a service error to (HTTP status, error code). Anything unrecognized is a 500."""
    for cls, status_code, code in _HTTP_STATUS:
        if isinstance(exc, cls):
            return status_code, code
    return 500, "storage_error" if isinstance(exc, StorageError) else "internal_error"
