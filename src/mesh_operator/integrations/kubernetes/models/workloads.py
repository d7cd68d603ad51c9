"""Lightweight views of the built-in resources the reconcilers inspect."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from mesh_operator.integrations.kubernetes.models.base import _safe_get


class _View(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class DeploymentReadiness(_View):
    """Replica counters of a Deployment."""

    name: str
    namespace: str
    replicas: int = 0
    ready_replicas: int = 0

    @classmethod
    def from_k8s_object(cls, obj: Any) -> DeploymentReadiness:
        """Create from a kubernetes V1Deployment object."""
        return cls(
            name=_safe_get(obj, "metadata", "name", default=""),
            namespace=_safe_get(obj, "metadata", "namespace", default=""),
            replicas=_safe_get(obj, "status", "replicas", default=0),
            ready_replicas=_safe_get(obj, "status", "ready_replicas", default=0),
        )


class DaemonSetReadiness(_View):
    """Scheduling counters of a DaemonSet."""

    name: str
    namespace: str
    current_number_scheduled: int = 0
    number_ready: int = 0

    @classmethod
    def from_k8s_object(cls, obj: Any) -> DaemonSetReadiness:
        """Create from a kubernetes V1DaemonSet object."""
        return cls(
            name=_safe_get(obj, "metadata", "name", default=""),
            namespace=_safe_get(obj, "metadata", "namespace", default=""),
            current_number_scheduled=_safe_get(
                obj, "status", "current_number_scheduled", default=0
            ),
            number_ready=_safe_get(obj, "status", "number_ready", default=0),
        )


class NamespaceLabels(_View):
    """A namespace and its labels."""

    name: str
    labels: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_k8s_object(cls, obj: Any) -> NamespaceLabels:
        """Create from a kubernetes V1Namespace object."""
        return cls(
            name=_safe_get(obj, "metadata", "name", default=""),
            labels=dict(_safe_get(obj, "metadata", "labels", default={})),
        )


class PodLabels(_View):
    """A pod's labels and annotations."""

    name: str
    namespace: str
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_k8s_object(cls, obj: Any) -> PodLabels:
        """Create from a kubernetes V1Pod object."""
        return cls(
            name=_safe_get(obj, "metadata", "name", default=""),
            namespace=_safe_get(obj, "metadata", "namespace", default=""),
            labels=dict(_safe_get(obj, "metadata", "labels", default={})),
            annotations=dict(_safe_get(obj, "metadata", "annotations", default={})),
        )
