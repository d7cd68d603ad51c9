"""End-to-end reconcile scenarios over an in-memory cluster."""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from mesh_operator.core.config.models import OperatorConfig
from mesh_operator.integrations.kubernetes.models import (
    Mesh,
    MeshConditionType,
    MeshSpec,
    ObjectMeta,
    RevisionConditionType,
    UpdateStrategy,
    UpdateStrategyType,
)
from mesh_operator.services.mesh.mesh_reconciler import MeshReconciler
from mesh_operator.services.mesh.revision_reconciler import RevisionReconciler
from tests.fakes import FakeCharts, FakeClock, FakeStore


class Cluster:
    """Both reconcilers wired to one fake store."""

    def __init__(
        self, store: FakeStore, charts: FakeCharts, config: OperatorConfig, clock: FakeClock
    ) -> None:
        self.store = store
        self.charts = charts
        self.clock = clock
        self.meshes = MeshReconciler(store, config, clock)  # type: ignore[arg-type]
        self.revisions = RevisionReconciler(store, charts, config, clock)  # type: ignore[arg-type]

    def settle(self, mesh_name: str, rounds: int = 3) -> None:
        """Alternate mesh and revision reconciles until nothing changes."""
        for _ in range(rounds):
            self.meshes.reconcile(mesh_name)
            for name in list(self.store.revisions):
                self.revisions.reconcile(name)
        self.meshes.reconcile(mesh_name)

    def mark_istiod_ready(self, revision: str, namespace: str = "istio-system") -> None:
        name = "istiod" if revision == "default" else f"istiod-{revision}"
        self.store.set_deployment(name, namespace, replicas=1, ready=1)


@pytest.fixture
def cluster(
    store: FakeStore, charts: FakeCharts, operator_config: OperatorConfig, clock: FakeClock
) -> Cluster:
    return Cluster(store, charts, operator_config, clock)


@pytest.mark.unit
class TestInPlaceMesh:
    """A Mesh with the default update strategy."""

    def test_install_to_healthy(self, cluster: Cluster) -> None:
        cluster.store.add_mesh(
            Mesh(
                metadata=ObjectMeta(name="default"),
                spec=MeshSpec(version="1.24.0", namespace="istio-system"),
            )
        )
        cluster.mark_istiod_ready("default")

        cluster.settle("default")

        assert cluster.charts.converged[-1][1:] == ("istio-system", "default-istiod")
        installed = cluster.charts.releases[("istio-system", "default-istiod")]["values"]
        assert installed["revision"] == ""
        assert installed["global"]["istioNamespace"] == "istio-system"
        assert installed["pilot"]["replicas"] == 1

        status = cluster.store.meshes["default"].status
        assert status.state == "Healthy"
        assert status.get_condition(MeshConditionType.READY).is_true
        assert status.revisions.total == 1
        assert status.revisions.ready == 1

    def test_settings_change_upgrades_in_place(self, cluster: Cluster) -> None:
        cluster.store.add_mesh(
            Mesh(
                metadata=ObjectMeta(name="default"),
                spec=MeshSpec(version="1.24.0", namespace="istio-system"),
            )
        )
        cluster.mark_istiod_ready("default")
        cluster.settle("default")

        cluster.store.meshes["default"].spec.values = {"pilot": {"replicas": 3}}
        cluster.settle("default")

        assert list(cluster.store.revisions) == ["default"]
        installed = cluster.charts.releases[("istio-system", "default-istiod")]["values"]
        assert installed["pilot"]["replicas"] == 3

    def test_deleted_revision_is_recreated(self, cluster: Cluster) -> None:
        cluster.store.add_mesh(
            Mesh(
                metadata=ObjectMeta(name="mesh"),
                spec=MeshSpec(version="1.24.0", namespace="istio-system"),
            )
        )
        cluster.settle("mesh")
        original = cluster.store.revisions["mesh"]

        cluster.store.delete_revision("mesh")
        cluster.settle("mesh")

        recreated = cluster.store.revisions["mesh"]
        assert recreated.metadata.uid != original.metadata.uid
        assert recreated.spec == original.spec
        assert recreated.metadata.deletion_timestamp is None


@pytest.mark.unit
class TestRevisionBasedUpgrade:
    """A canary upgrade with a RevisionBased Mesh."""

    def test_old_revision_is_pruned_after_workloads_move(
        self, cluster: Cluster, resource_dir: Path
    ) -> None:
        shutil.copytree(resource_dir / "1.24.0", resource_dir / "1.25.0")
        cluster.store.add_mesh(
            Mesh(
                metadata=ObjectMeta(name="prod"),
                spec=MeshSpec(
                    version="1.24.0",
                    namespace="istio-system",
                    update_strategy=UpdateStrategy(
                        type=UpdateStrategyType.REVISION_BASED,
                        inactive_revision_deletion_grace_period_seconds=60,
                    ),
                ),
            )
        )
        cluster.store.label_namespace("app", **{"istio.io/rev": "prod-1-24-0"})
        cluster.mark_istiod_ready("prod-1-24-0")
        cluster.settle("prod")
        assert cluster.store.meshes["prod"].status.state == "Healthy"

        # upgrade: a second revision is installed next to the first
        cluster.store.meshes["prod"].spec.version = "1.25.0"
        cluster.mark_istiod_ready("prod-1-25-0")
        cluster.settle("prod")

        assert set(cluster.store.revisions) == {"prod-1-24-0", "prod-1-25-0"}
        old = cluster.store.revisions["prod-1-24-0"]
        assert old.status.get_condition(RevisionConditionType.IN_USE).is_true

        # workloads move to the new revision; the old one waits out its grace period
        cluster.store.label_namespace("app", **{"istio.io/rev": "prod-1-25-0"})
        cluster.settle("prod")
        assert "prod-1-24-0" in cluster.store.revisions
        assert cluster.meshes.reconcile("prod").requeue_after == pytest.approx(60.0)

        cluster.clock.advance(61)
        cluster.settle("prod")

        # deletion runs through the finalizer, which uninstalls the old release
        assert set(cluster.store.revisions) == {"prod-1-25-0"}
        assert ("istio-system", "prod-1-24-0-istiod") in cluster.charts.removed
        assert ("istio-system", "prod-1-24-0-istiod") not in cluster.charts.releases
        assert cluster.store.meshes["prod"].status.revisions.total == 1

    def test_switch_to_in_place_keeps_old_revision_until_unused(self, cluster: Cluster) -> None:
        cluster.store.add_mesh(
            Mesh(
                metadata=ObjectMeta(name="mesh"),
                spec=MeshSpec(
                    version="1.24.0",
                    namespace="istio-system",
                    update_strategy=UpdateStrategy(type=UpdateStrategyType.REVISION_BASED),
                ),
            )
        )
        cluster.store.label_namespace("app", **{"istio.io/rev": "mesh-1-24-0"})
        cluster.settle("mesh")
        assert set(cluster.store.revisions) == {"mesh-1-24-0"}

        cluster.store.meshes["mesh"].spec.update_strategy = UpdateStrategy(
            type=UpdateStrategyType.IN_PLACE,
            inactive_revision_deletion_grace_period_seconds=10,
        )
        cluster.settle("mesh")
        assert set(cluster.store.revisions) == {"mesh", "mesh-1-24-0"}
        assert cluster.store.revisions["mesh"].spec.values["revision"] == "mesh"

        cluster.store.label_namespace("app", **{"istio.io/rev": "mesh"})
        cluster.settle("mesh")
        cluster.clock.advance(11)
        cluster.settle("mesh")

        assert set(cluster.store.revisions) == {"mesh"}
        in_use = cluster.store.revisions["mesh"].status.get_condition(
            RevisionConditionType.IN_USE
        )
        assert in_use.is_true
