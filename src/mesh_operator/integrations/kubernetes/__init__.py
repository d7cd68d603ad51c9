"""Kubernetes integration - API client, helm client and configuration models."""

from mesh_operator.integrations.kubernetes.client import KubernetesClient
from mesh_operator.integrations.kubernetes.config import KubernetesConfig
from mesh_operator.integrations.kubernetes.exceptions import (
    KubernetesAuthError,
    KubernetesConflictError,
    KubernetesConnectionError,
    KubernetesError,
    KubernetesNotFoundError,
    KubernetesNotReadyError,
    KubernetesTimeoutError,
    KubernetesValidationError,
)

__all__ = [
    "KubernetesAuthError",
    "KubernetesClient",
    "KubernetesConfig",
    "KubernetesConflictError",
    "KubernetesConnectionError",
    "KubernetesError",
    "KubernetesNotFoundError",
    "KubernetesNotReadyError",
    "KubernetesTimeoutError",
    "KubernetesValidationError",
]
