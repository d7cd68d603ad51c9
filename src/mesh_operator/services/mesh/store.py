"""Cluster access for the mesh reconcilers.

Reads and writes Mesh and MeshRevision custom objects through the
``CustomObjectsApi`` and reads the built-in resources that readiness and
usage checks inspect. Every call carries the configured request timeout,
transient connection errors are retried, and API errors are translated to
the ``KubernetesError`` hierarchy.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from mesh_operator.integrations.kubernetes.exceptions import KubernetesNotFoundError
from mesh_operator.integrations.kubernetes.models import (
    DaemonSetReadiness,
    DeploymentReadiness,
    Mesh,
    MeshRevision,
    MeshRevisionStatus,
    MeshStatus,
    NamespaceLabels,
    PodLabels,
)
from mesh_operator.integrations.kubernetes.models.mesh import (
    MESH_GROUP,
    MESH_KIND,
    MESH_PLURAL,
    MESH_VERSION,
    REVISION_KIND,
    REVISION_PLURAL,
)

if TYPE_CHECKING:
    from mesh_operator.integrations.kubernetes.client import KubernetesClient

logger = structlog.get_logger()

T = TypeVar("T")


def status_patch(status: MeshStatus | MeshRevisionStatus) -> list[dict[str, Any]]:
    """JSON patch replacing the whole status document."""
    return [{"op": "replace", "path": "/status", "value": status.to_dict()}]


class MeshResourceStore:
    """Typed access to the resources the mesh reconcilers read and write."""

    def __init__(self, client: KubernetesClient) -> None:
        self._client = client
        self._log = logger.bind(entity="mesh_store")

    def _call(
        self,
        func: Callable[..., T],
        *args: Any,
        resource_type: str | None = None,
        resource_name: str | None = None,
        namespace: str | None = None,
        **kwargs: Any,
    ) -> T:
        """Invoke an API method with timeout, retry and error translation."""

        def attempt() -> T:
            try:
                return func(*args, _request_timeout=self._client.request_timeout, **kwargs)
            except Exception as e:
                raise self._client.translate_api_exception(
                    e,
                    resource_type=resource_type,
                    resource_name=resource_name,
                    namespace=namespace,
                    timeout_seconds=self._client.request_timeout,
                ) from e

        retry_decorator = self._client.make_retry_decorator()
        return retry_decorator(attempt)()

    # =========================================================================
    # Mesh
    # =========================================================================

    def get_mesh(self, name: str) -> Mesh | None:
        """Get a Mesh by name, or None when it does not exist."""
        try:
            obj = self._call(
                self._client.custom_objects.get_cluster_custom_object,
                MESH_GROUP,
                MESH_VERSION,
                MESH_PLURAL,
                name,
                resource_type=MESH_KIND,
                resource_name=name,
            )
        except KubernetesNotFoundError:
            return None
        return Mesh.from_k8s_object(obj)

    def list_meshes(self) -> list[Mesh]:
        """List all Meshes."""
        result = self._call(
            self._client.custom_objects.list_cluster_custom_object,
            MESH_GROUP,
            MESH_VERSION,
            MESH_PLURAL,
            resource_type=MESH_KIND,
        )
        return [Mesh.from_k8s_object(item) for item in result.get("items", [])]

    def patch_mesh_status(self, mesh: Mesh, status: MeshStatus) -> None:
        """Replace the status of a Mesh."""
        self._log.debug("patching_mesh_status", name=mesh.name)
        self._call(
            self._client.custom_objects.patch_cluster_custom_object_status,
            MESH_GROUP,
            MESH_VERSION,
            MESH_PLURAL,
            mesh.name,
            status_patch(status),
            resource_type=MESH_KIND,
            resource_name=mesh.name,
        )

    # =========================================================================
    # MeshRevision
    # =========================================================================

    def get_revision(self, name: str) -> MeshRevision | None:
        """Get a MeshRevision by name, or None when it does not exist."""
        try:
            obj = self._call(
                self._client.custom_objects.get_cluster_custom_object,
                MESH_GROUP,
                MESH_VERSION,
                REVISION_PLURAL,
                name,
                resource_type=REVISION_KIND,
                resource_name=name,
            )
        except KubernetesNotFoundError:
            return None
        return MeshRevision.from_k8s_object(obj)

    def list_revisions(self) -> list[MeshRevision]:
        """List all MeshRevisions."""
        result = self._call(
            self._client.custom_objects.list_cluster_custom_object,
            MESH_GROUP,
            MESH_VERSION,
            REVISION_PLURAL,
            resource_type=REVISION_KIND,
        )
        return [MeshRevision.from_k8s_object(item) for item in result.get("items", [])]

    def create_revision(self, revision: MeshRevision) -> MeshRevision:
        """Create a MeshRevision."""
        self._log.debug("creating_revision", name=revision.name)
        obj = self._call(
            self._client.custom_objects.create_cluster_custom_object,
            MESH_GROUP,
            MESH_VERSION,
            REVISION_PLURAL,
            revision.to_dict(),
            resource_type=REVISION_KIND,
            resource_name=revision.name,
        )
        return MeshRevision.from_k8s_object(obj)

    def update_revision(self, revision: MeshRevision) -> MeshRevision:
        """Replace a MeshRevision.

        The stored ``resourceVersion`` is sent along, so a stale object
        raises ``KubernetesConflictError``.
        """
        self._log.debug("updating_revision", name=revision.name)
        obj = self._call(
            self._client.custom_objects.replace_cluster_custom_object,
            MESH_GROUP,
            MESH_VERSION,
            REVISION_PLURAL,
            revision.name,
            revision.to_dict(),
            resource_type=REVISION_KIND,
            resource_name=revision.name,
        )
        return MeshRevision.from_k8s_object(obj)

    def delete_revision(self, name: str) -> None:
        """Delete a MeshRevision; an already-absent revision is not an error."""
        self._log.debug("deleting_revision", name=name)
        try:
            self._call(
                self._client.custom_objects.delete_cluster_custom_object,
                MESH_GROUP,
                MESH_VERSION,
                REVISION_PLURAL,
                name,
                resource_type=REVISION_KIND,
                resource_name=name,
            )
        except KubernetesNotFoundError:
            self._log.debug("revision_already_deleted", name=name)

    def patch_revision_status(self, revision: MeshRevision, status: MeshRevisionStatus) -> None:
        """Replace the status of a MeshRevision."""
        self._log.debug("patching_revision_status", name=revision.name)
        self._call(
            self._client.custom_objects.patch_cluster_custom_object_status,
            MESH_GROUP,
            MESH_VERSION,
            REVISION_PLURAL,
            revision.name,
            status_patch(status),
            resource_type=REVISION_KIND,
            resource_name=revision.name,
        )

    # =========================================================================
    # Workloads
    # =========================================================================

    def get_deployment(self, name: str, namespace: str) -> DeploymentReadiness | None:
        """Get the replica counters of a Deployment, or None when absent."""
        try:
            obj = self._call(
                self._client.apps_v1.read_namespaced_deployment,
                name,
                namespace,
                resource_type="Deployment",
                resource_name=name,
                namespace=namespace,
            )
        except KubernetesNotFoundError:
            return None
        return DeploymentReadiness.from_k8s_object(obj)

    def get_daemonset(self, name: str, namespace: str) -> DaemonSetReadiness | None:
        """Get the scheduling counters of a DaemonSet, or None when absent."""
        try:
            obj = self._call(
                self._client.apps_v1.read_namespaced_daemon_set,
                name,
                namespace,
                resource_type="DaemonSet",
                resource_name=name,
                namespace=namespace,
            )
        except KubernetesNotFoundError:
            return None
        return DaemonSetReadiness.from_k8s_object(obj)

    def list_namespaces(self) -> list[NamespaceLabels]:
        """List all namespaces with their labels."""
        result = self._call(self._client.core_v1.list_namespace, resource_type="Namespace")
        return [NamespaceLabels.from_k8s_object(item) for item in result.items]

    def list_pods(self) -> list[PodLabels]:
        """List all pods in all namespaces with their labels and annotations."""
        result = self._call(
            self._client.core_v1.list_pod_for_all_namespaces, resource_type="Pod"
        )
        return [PodLabels.from_k8s_object(item) for item in result.items]
