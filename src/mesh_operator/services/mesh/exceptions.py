"""Mesh domain exceptions."""

from __future__ import annotations


class MeshError(Exception):
    """Base exception for mesh reconciliation.

    Attributes:
        message: Human-readable error message.
        resource_name: Name of the Mesh or MeshRevision involved.
    """

    def __init__(self, message: str, resource_name: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.resource_name = resource_name


class MeshValidationError(MeshError):
    """Raised when a Mesh or MeshRevision spec is invalid.

    Validation errors are terminal for the attempt: they are written to the
    Reconciled condition and not retried until the object changes.
    """


class ProfileError(MeshValidationError):
    """Raised when profiles cannot be resolved into a settings document."""

    def __init__(self, message: str, profile: str | None = None) -> None:
        super().__init__(message)
        self.profile = profile
