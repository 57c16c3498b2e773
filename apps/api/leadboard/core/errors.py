from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base class for errors surfaced to callers as an explicit failure acknowledgment."""

    status_code = 500
    code = "crm_error"

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(CRMError):
    """Missing or malformed input. Raised before any write reaches the store."""

    status_code = 400
    code = "validation_error"


class ConflictError(ValidationError):
    status_code = 409
    code = "conflict"


class PermissionDenied(CRMError):
    """Role-gated operation attempted by a principal without the role."""

    status_code = 403
    code = "permission_denied"


class NotFound(CRMError):
    status_code = 404
    code = "not_found"


class PersistenceError(CRMError):
    """The store rejected a read or write. ``details`` carries the store's own diagnostic."""

    status_code = 500
    code = "persistence_error"

    def __init__(self, message: str, *, details: Any = None, recoverable: bool = True) -> None:
        super().__init__(message, details=details)
        self.recoverable = recoverable


class PartialFailure(CRMError):
    """A multi-step operation where the first step committed and a later one failed."""

    status_code = 207
    code = "partial_failure"

    def __init__(self, message: str, *, completed: list[str], failed: str, details: Any = None) -> None:
        super().__init__(message, details=details)
        self.completed = completed
        self.failed = failed
