"""Error taxonomy for provisioning runs.

``ValidationError`` and ``PlanError`` are raised before any mutation happens.
``ApiError`` and its subclasses come from the remote client: transient and
plain API errors are recorded per operation, fatal errors abort the run.
"""

from __future__ import annotations


class ProvisionError(Exception):
    """Base exception for idm-provision."""


class ValidationError(ProvisionError):
    """The desired-state document is malformed or not normalised."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []

    def __str__(self) -> str:
        if not self.errors:
            return super().__str__()
        return "\n".join([super().__str__(), *(f"  - {e}" for e in self.errors)])


class PlanError(ProvisionError):
    """The desired state cannot be reached (dangling reference, name clash)."""


class ApiError(ProvisionError):
    """A remote API call failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientError(ApiError):
    """Network failure or 5xx response. Safe to retry on a later run."""


class FatalError(ApiError):
    """Authentication failure or malformed response. Aborts the run."""


class NotFoundError(ApiError):
    """Resource not found."""


class ConflictError(ApiError):
    """Resource already exists."""
