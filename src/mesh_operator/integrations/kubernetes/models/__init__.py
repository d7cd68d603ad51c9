"""Typed models for Kubernetes and Helm resources used by the operator."""

from mesh_operator.integrations.kubernetes.models.base import K8sModel, ObjectMeta, OwnerReference
from mesh_operator.integrations.kubernetes.models.conditions import (
    Clock,
    Condition,
    ConditionStatus,
    derive_state,
    get_condition,
    set_condition,
    utc_now,
)
from mesh_operator.integrations.kubernetes.models.helm import (
    HelmCommandResult,
    HelmRelease,
    ReleaseStatus,
    UninstallResult,
)
from mesh_operator.integrations.kubernetes.models.mesh import (
    Mesh,
    MeshConditionType,
    MeshReason,
    MeshRevision,
    MeshRevisionSpec,
    MeshRevisionStatus,
    MeshSpec,
    MeshStatus,
    RevisionConditionType,
    RevisionReason,
    RevisionSummary,
    UpdateStrategy,
    UpdateStrategyType,
)
from mesh_operator.integrations.kubernetes.models.workloads import (
    DaemonSetReadiness,
    DeploymentReadiness,
    NamespaceLabels,
    PodLabels,
)

__all__ = [
    "Clock",
    "Condition",
    "ConditionStatus",
    "DaemonSetReadiness",
    "DeploymentReadiness",
    "HelmCommandResult",
    "HelmRelease",
    "K8sModel",
    "Mesh",
    "MeshConditionType",
    "MeshReason",
    "MeshRevision",
    "MeshRevisionSpec",
    "MeshRevisionStatus",
    "MeshSpec",
    "MeshStatus",
    "NamespaceLabels",
    "ObjectMeta",
    "OwnerReference",
    "PodLabels",
    "ReleaseStatus",
    "RevisionConditionType",
    "RevisionReason",
    "RevisionSummary",
    "UninstallResult",
    "UpdateStrategy",
    "UpdateStrategyType",
    "derive_state",
    "get_condition",
    "set_condition",
    "utc_now",
]
