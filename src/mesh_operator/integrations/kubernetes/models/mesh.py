"""Mesh and MeshRevision custom resource models.

Both kinds are cluster scoped. ``values`` is an open settings document
that is passed through to the managed charts untouched.
"""

from __future__ import annotations

from datetime import timedelta
from enum import StrEnum
from typing import Any

from pydantic import Field

from mesh_operator.integrations.kubernetes.models.base import K8sModel, ObjectMeta
from mesh_operator.integrations.kubernetes.models.conditions import Condition, get_condition

# CRD coordinates
MESH_GROUP = "operator.mesh.io"
MESH_VERSION = "v1alpha1"
MESH_API_VERSION = f"{MESH_GROUP}/{MESH_VERSION}"
MESH_KIND = "Mesh"
MESH_PLURAL = "meshes"
REVISION_KIND = "MeshRevision"
REVISION_PLURAL = "meshrevisions"

DEFAULT_GRACE_PERIOD_SECONDS = 30
MIN_GRACE_PERIOD_SECONDS = 0


class UpdateStrategyType(StrEnum):
    """How a version change is rolled out."""

    IN_PLACE = "InPlace"
    REVISION_BASED = "RevisionBased"


class MeshConditionType(StrEnum):
    RECONCILED = "Reconciled"
    READY = "Ready"


class RevisionConditionType(StrEnum):
    RECONCILED = "Reconciled"
    READY = "Ready"
    IN_USE = "InUse"


class RevisionReason(StrEnum):
    """Reasons used in MeshRevision conditions and state."""

    RECONCILE_ERROR = "ReconcileError"
    ISTIOD_NOT_READY = "IstiodNotReady"
    CNI_NOT_READY = "CNINotReady"
    HEALTHY = "Healthy"
    REFERENCED_BY_WORKLOADS = "ReferencedByWorkloads"
    NOT_REFERENCED = "NotReferencedByAnyWorkload"
    USAGE_CHECK_FAILED = "UsageCheckFailed"


class MeshReason(StrEnum):
    """Reasons used in Mesh conditions and state."""

    RECONCILE_ERROR = "ReconcileError"
    REVISION_NOT_FOUND = "ActiveRevisionNotFound"
    ISTIOD_NOT_READY = "IstiodNotReady"
    CNI_NOT_READY = "CNINotReady"
    HEALTHY = "Healthy"


class UpdateStrategy(K8sModel):
    """Rollout policy of a Mesh."""

    type: UpdateStrategyType = UpdateStrategyType.IN_PLACE
    inactive_revision_deletion_grace_period_seconds: int | None = None


class MeshSpec(K8sModel):
    """Desired state of a mesh installation."""

    version: str = ""
    namespace: str = ""
    profile: str | None = None
    values: dict[str, Any] | None = None
    update_strategy: UpdateStrategy | None = None


class RevisionSummary(K8sModel):
    """Counters over all revisions owned by a Mesh."""

    total: int = 0
    ready: int = 0
    in_use: int = 0


class MeshStatus(K8sModel):
    """Observed state of a Mesh."""

    observed_generation: int | None = None
    conditions: list[Condition] = Field(default_factory=list)
    state: str | None = None
    revisions: RevisionSummary = Field(default_factory=RevisionSummary)

    def get_condition(self, condition_type: MeshConditionType) -> Condition:
        """Return the condition of the given type, or an Unknown placeholder."""
        return get_condition(self.conditions, condition_type)


class MeshRevisionSpec(K8sModel):
    """Concrete deployable unit derived from a Mesh."""

    version: str = ""
    namespace: str = ""
    values: dict[str, Any] | None = None


class MeshRevisionStatus(K8sModel):
    """Observed state of a MeshRevision."""

    observed_generation: int | None = None
    conditions: list[Condition] = Field(default_factory=list)
    state: str | None = None

    def get_condition(self, condition_type: RevisionConditionType) -> Condition:
        """Return the condition of the given type, or an Unknown placeholder."""
        return get_condition(self.conditions, condition_type)


class Mesh(K8sModel):
    """Top-level desired-state object."""

    api_version: str = MESH_API_VERSION
    kind: str = MESH_KIND
    metadata: ObjectMeta
    spec: MeshSpec = Field(default_factory=MeshSpec)
    status: MeshStatus = Field(default_factory=MeshStatus)

    @classmethod
    def from_k8s_object(cls, obj: dict[str, Any]) -> Mesh:
        """Create from a custom object dictionary returned by the API."""
        return cls.model_validate(obj)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def strategy_type(self) -> UpdateStrategyType:
        """Effective update strategy; InPlace when none is set."""
        if self.spec.update_strategy is None:
            return UpdateStrategyType.IN_PLACE
        return self.spec.update_strategy.type

    def grace_period(self) -> timedelta:
        """Grace period before an unused inactive revision is deleted."""
        period = DEFAULT_GRACE_PERIOD_SECONDS
        strategy = self.spec.update_strategy
        configured = strategy.inactive_revision_deletion_grace_period_seconds if strategy else None
        if configured is not None:
            period = configured
        return timedelta(seconds=max(period, MIN_GRACE_PERIOD_SECONDS))


class MeshRevision(K8sModel):
    """Concrete, versioned deployable unit owned by a Mesh."""

    api_version: str = MESH_API_VERSION
    kind: str = REVISION_KIND
    metadata: ObjectMeta
    spec: MeshRevisionSpec = Field(default_factory=MeshRevisionSpec)
    status: MeshRevisionStatus = Field(default_factory=MeshRevisionStatus)

    @classmethod
    def from_k8s_object(cls, obj: dict[str, Any]) -> MeshRevision:
        """Create from a custom object dictionary returned by the API."""
        return cls.model_validate(obj)

    @property
    def name(self) -> str:
        return self.metadata.name
