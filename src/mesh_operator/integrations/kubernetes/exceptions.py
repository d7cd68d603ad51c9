"""Errors raised by the cluster access layer.

Every failure of a Kubernetes API call surfaces as a ``KubernetesError``
subclass chosen from the response status, so reconcilers can branch on the
class (``except KubernetesConflictError``) instead of on raw status codes.
"""

from __future__ import annotations

from typing import ClassVar


class KubernetesError(Exception):
    """Base exception for Kubernetes operations.

    Attributes:
        message: Human-readable error message.
        status_code: HTTP status of the failed request, if there was one.
        resource_type: Kind of the resource involved (e.g. ``MeshRevision``).
        resource_name: Name of the resource involved.
        namespace: Namespace of the resource; None for cluster-scoped kinds.
    """

    default_message: ClassVar[str] = "Kubernetes API request failed"
    default_status: ClassVar[int | None] = None

    def __init__(
        self,
        message: str | None = None,
        status_code: int | None = None,
        resource_type: str | None = None,
        resource_name: str | None = None,
        namespace: str | None = None,
    ) -> None:
        self.status_code = status_code if status_code is not None else self.default_status
        self.resource_type = resource_type
        self.resource_name = resource_name
        self.namespace = namespace
        self.message = message or self._describe()
        super().__init__(self.message)

    def _describe(self) -> str:
        return self.default_message

    @property
    def resource(self) -> str | None:
        """``Kind/name`` of the resource, when both are known."""
        if self.resource_type and self.resource_name:
            return f"{self.resource_type}/{self.resource_name}"
        return None

    def __str__(self) -> str:
        text = self.message
        if self.status_code:
            text += f" (status: {self.status_code})"
        if self.resource:
            scope = f" in {self.namespace}" if self.namespace else ""
            text += f" [{self.resource}{scope}]"
        return text


class _ResourceError(KubernetesError):
    """An error about one named resource; the message names it."""

    verb: ClassVar[str] = ""

    def __init__(
        self,
        message: str | None = None,
        resource_type: str | None = None,
        resource_name: str | None = None,
        namespace: str | None = None,
    ) -> None:
        super().__init__(
            message=message,
            resource_type=resource_type,
            resource_name=resource_name,
            namespace=namespace,
        )

    def _describe(self) -> str:
        if not self.resource:
            return self.default_message
        text = self.verb.format(kind=self.resource_type, name=self.resource_name)
        if self.namespace:
            text += f" in namespace '{self.namespace}'"
        return text


class KubernetesNotFoundError(_ResourceError):
    """The resource does not exist (404)."""

    default_message = "Kubernetes resource not found"
    default_status = 404
    verb = "{kind} '{name}' not found"


class KubernetesConflictError(_ResourceError):
    """A write lost an optimistic-concurrency race or the object already exists (409).

    Reconcilers requeue shortly instead of failing.
    """

    default_message = "Resource conflict"
    default_status = 409
    verb = "Conflict on {kind} '{name}'"


class KubernetesAuthError(KubernetesError):
    """The operator lacks credentials or permissions (401/403)."""

    default_message = "Kubernetes authentication/authorization failed"
    default_status = 401

    def __init__(
        self,
        message: str | None = None,
        status_code: int | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message=message, status_code=status_code)
        self.reason = reason


class KubernetesValidationError(KubernetesError):
    """The API server rejected the object as invalid (400/422)."""

    default_message = "Invalid resource specification"
    default_status = 422


class KubernetesNotReadyError(KubernetesError):
    """The API server cannot serve the request yet.

    Raised for 503s from aggregated APIs, and for the 403 returned while
    RBAC aggregation has not caught up with newly created cluster roles.
    """

    default_message = "Kubernetes API not ready"
    default_status = 503


class KubernetesConnectionError(KubernetesError):
    """The API server is unreachable or no cluster configuration could be loaded."""

    default_message = "Failed to connect to Kubernetes cluster"

    def __init__(
        self,
        message: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message=message)
        self.original_error = original_error


class KubernetesTimeoutError(KubernetesError):
    """A request did not complete within the configured request timeout."""

    default_message = "Kubernetes operation timed out"

    def __init__(
        self,
        message: str | None = None,
        timeout_seconds: int | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(message=message)

    def _describe(self) -> str:
        if self.timeout_seconds:
            return f"{self.default_message} (after {self.timeout_seconds}s)"
        return self.default_message
