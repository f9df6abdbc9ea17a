from __future__ import annotations

from typing import Any


class AssociationError(Exception):
    """Base error for association reconciliation jobs."""

    code = "crm_association_error"
    status_code = 500

    def __init__(self, message: str, *, details: Any = None) -> None:
        self.message = message
        self.details = details if details is not None else message
        super().__init__(message)


class InvalidArgumentError(AssociationError):
    """Raised before any I/O when a required argument is missing or malformed."""

    code = "crm_association_invalid_argument"
    status_code = 422


class NotFoundError(AssociationError):
    code = "crm_association_not_found"
    status_code = 404


class PreconditionFailedError(AssociationError):
    """Raised when a destructive job is not cleared by the latest integrity report."""

    code = "crm_association_precondition_failed"
    status_code = 412


class InternalError(AssociationError):
    code = "crm_association_internal"
    status_code = 500


def require_text(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgumentError(f"{name} is required")
    return value.strip()
