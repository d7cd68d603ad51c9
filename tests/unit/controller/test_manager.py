"""Unit tests for the controller manager's queue handling and event mapping."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import (
    ApiException,
    V1Deployment,
    V1MutatingWebhookConfiguration,
    V1ObjectMeta,
    V1OwnerReference,
    V1Pod,
)

from mesh_operator.controller.manager import ControllerManager, WatchSource
from mesh_operator.controller.result import ReconcileResult
from mesh_operator.controller.workqueue import WorkQueue
from mesh_operator.core.config.models import OperatorConfig
from mesh_operator.integrations.kubernetes.models import MeshRevision, MeshRevisionSpec, ObjectMeta
from tests.fakes import FakeStore, deployment_spec


class FakeMonotonic:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def drain(queue: WorkQueue) -> list[str]:
    keys = []
    while (key := queue.get(timeout=0)) is not None:
        keys.append(key)
        queue.done(key)
    return keys


@pytest.fixture
def ticks() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def queue(ticks: FakeMonotonic) -> WorkQueue:
    return WorkQueue("mesh", backoff_base=1.0, backoff_max=60.0, clock=ticks)


@pytest.fixture
def manager(tmp_path: Path) -> ControllerManager:
    config = OperatorConfig(resource_directory=tmp_path, cni_namespace="istio-cni")
    return ControllerManager(config, MagicMock(), MagicMock())


@pytest.mark.unit
class TestProcessItem:
    """Tests for translating reconcile outcomes into queue operations."""

    def test_success_forgets_backoff(self, queue: WorkQueue) -> None:
        queue.next_backoff("a")

        ControllerManager.process_item(queue, lambda key: ReconcileResult(), "a")

        assert queue.num_requeues("a") == 0
        assert drain(queue) == []

    def test_requeue_after_schedules_fixed_delay(
        self, queue: WorkQueue, ticks: FakeMonotonic
    ) -> None:
        queue.next_backoff("a")

        ControllerManager.process_item(queue, lambda key: ReconcileResult.after(30), "a")

        assert queue.num_requeues("a") == 0
        ticks.now = 29.0
        assert drain(queue) == []
        ticks.now = 30.0
        assert drain(queue) == ["a"]

    def test_requeue_uses_backoff(self, queue: WorkQueue, ticks: FakeMonotonic) -> None:
        ControllerManager.process_item(queue, lambda key: ReconcileResult(requeue=True), "a")

        assert queue.num_requeues("a") == 1
        ticks.now = 1.0
        assert drain(queue) == ["a"]

    def test_error_retries_with_growing_backoff(
        self, queue: WorkQueue, ticks: FakeMonotonic
    ) -> None:
        reconcile = MagicMock(side_effect=RuntimeError("boom"))

        ControllerManager.process_item(queue, reconcile, "a")
        ControllerManager.process_item(queue, reconcile, "a")

        assert queue.num_requeues("a") == 2
        ticks.now = 1.0
        assert drain(queue) == ["a"]
        reconcile.assert_called_with("a")


@pytest.mark.unit
class TestCustomResourceEvents:
    """Tests for Mesh and MeshRevision watch events."""

    def test_mesh_event_queues_mesh(self, manager: ControllerManager) -> None:
        manager.handle_mesh_event("ADDED", {"metadata": {"name": "default"}})

        assert drain(manager.mesh_queue) == ["default"]

    def test_revision_event_queues_revision_and_controlling_mesh(
        self, manager: ControllerManager
    ) -> None:
        obj = {
            "metadata": {
                "name": "prod-1-24-0",
                "ownerReferences": [
                    {"kind": "Mesh", "name": "prod", "uid": "u1", "controller": True},
                    {"kind": "Mesh", "name": "other", "uid": "u2"},
                ],
            }
        }

        manager.handle_revision_event("MODIFIED", obj)

        assert drain(manager.revision_queue) == ["prod-1-24-0"]
        assert drain(manager.mesh_queue) == ["prod"]


@pytest.mark.unit
class TestOwnedResourceEvents:
    """Tests for events on resources installed by the charts."""

    def test_owner_reference_maps_to_revision(self, manager: ControllerManager) -> None:
        deployment = V1Deployment(
            metadata=V1ObjectMeta(
                name="istiod-canary",
                namespace="istio-system",
                owner_references=[
                    V1OwnerReference(
                        api_version="operator.mesh.io/v1alpha1",
                        kind="MeshRevision",
                        name="canary",
                        uid="u1",
                    )
                ],
            ),
            spec=deployment_spec(),
        )

        manager.handle_owned_event("MODIFIED", deployment)

        assert drain(manager.revision_queue) == ["canary"]

    def test_unowned_resource_is_ignored(self, manager: ControllerManager) -> None:
        manager.handle_owned_event(
            "ADDED",
            V1Deployment(
                metadata=V1ObjectMeta(name="web", namespace="app"), spec=deployment_spec()
            ),
        )

        assert drain(manager.revision_queue) == []

    def test_cni_resource_maps_to_every_cni_revision(self, manager: ControllerManager) -> None:
        store = FakeStore()
        for name, values in [
            ("a", {"istio_cni": {"enabled": True}}),
            ("b", {"istio_cni": {"enabled": False}}),
            ("c", {"istio_cni": {"enabled": "yes"}}),
            ("d", {"istio_cni": {"enabled": True}}),
        ]:
            store.create_revision(
                MeshRevision(metadata=ObjectMeta(name=name), spec=MeshRevisionSpec(values=values))
            )
        manager._store = store  # type: ignore[assignment]
        daemonset = V1Deployment(
            metadata=V1ObjectMeta(
                name="istio-cni-node",
                namespace="istio-cni",
                annotations={"meta.helm.sh/release-name": "istio-cni"},
            ),
            spec=deployment_spec(),
        )

        manager.handle_owned_event("MODIFIED", daemonset)

        assert drain(manager.revision_queue) == ["a", "d"]

    def test_cluster_scoped_owner_reference_maps_to_revision(
        self, manager: ControllerManager
    ) -> None:
        webhook = V1MutatingWebhookConfiguration(
            metadata=V1ObjectMeta(
                name="istio-sidecar-injector-canary",
                owner_references=[
                    V1OwnerReference(
                        api_version="operator.mesh.io/v1alpha1",
                        kind="MeshRevision",
                        name="canary",
                        uid="u1",
                    )
                ],
            )
        )

        manager.handle_owned_event("DELETED", webhook)

        assert drain(manager.revision_queue) == ["canary"]

    def test_rendered_kinds_are_watched(self, manager: ControllerManager) -> None:
        names = {source.name for source in manager._watch_sources()}

        assert {
            "secrets",
            "roles",
            "rolebindings",
            "clusterroles",
            "clusterrolebindings",
            "mutatingwebhookconfigurations",
            "validatingwebhookconfigurations",
            "poddisruptionbudgets",
            "horizontalpodautoscalers",
            "endpoints",
        } <= names


def _validator(name: str, *, failure_policy: str, ca_bundle: str, rule_ops: list[str]) -> dict:
    return {
        "metadata": {
            "name": name,
            "resource_version": ca_bundle or "1",
            "owner_references": [
                {
                    "api_version": "operator.mesh.io/v1alpha1",
                    "kind": "MeshRevision",
                    "name": "canary",
                }
            ],
        },
        "webhooks": [
            {
                "name": "rev.validation.istio.io",
                "failure_policy": failure_policy,
                "client_config": {"ca_bundle": ca_bundle, "service": {"name": "istiod"}},
                "rules": [{"operations": rule_ops}],
            }
        ],
    }


@pytest.mark.unit
class TestValidatingWebhookEvents:
    """Tests for the updates istiod makes to its own validating webhooks."""

    NAME = "istio-validator-canary-istio-system"

    def test_istiod_managed_fields_are_ignored(self, manager: ControllerManager) -> None:
        manager.handle_validating_webhook_event(
            "ADDED", _validator(self.NAME, failure_policy="Ignore", ca_bundle="", rule_ops=["*"])
        )
        assert drain(manager.revision_queue) == ["canary"]

        manager.handle_validating_webhook_event(
            "MODIFIED",
            _validator(self.NAME, failure_policy="Fail", ca_bundle="LS0t", rule_ops=["*"]),
        )

        assert drain(manager.revision_queue) == []

    def test_other_changes_are_reconciled(self, manager: ControllerManager) -> None:
        manager.handle_validating_webhook_event(
            "ADDED", _validator(self.NAME, failure_policy="Ignore", ca_bundle="", rule_ops=["*"])
        )
        drain(manager.revision_queue)

        manager.handle_validating_webhook_event(
            "MODIFIED",
            _validator(self.NAME, failure_policy="Ignore", ca_bundle="", rule_ops=["CREATE"]),
        )

        assert drain(manager.revision_queue) == ["canary"]

    def test_other_webhooks_always_count(self, manager: ControllerManager) -> None:
        obj = _validator("unrelated", failure_policy="Ignore", ca_bundle="", rule_ops=["*"])
        manager.handle_validating_webhook_event("ADDED", obj)
        drain(manager.revision_queue)

        manager.handle_validating_webhook_event("MODIFIED", obj)

        assert drain(manager.revision_queue) == ["canary"]


@pytest.mark.unit
class TestUsageEvents:
    """Tests for namespace and pod events that change revision usage."""

    def test_namespace_relabel_queues_old_and_new_revision(
        self, manager: ControllerManager
    ) -> None:
        manager.handle_namespace_event(
            "ADDED", {"metadata": {"name": "app", "labels": {"istio.io/rev": "old"}}}
        )
        drain(manager.revision_queue)

        manager.handle_namespace_event(
            "MODIFIED",
            {"metadata": {"name": "app", "labels": {"istio.io/rev": "new"}}},
        )

        assert sorted(drain(manager.revision_queue)) == ["new", "old"]

    def test_injection_label_queues_default_revision(self, manager: ControllerManager) -> None:
        manager.handle_namespace_event(
            "ADDED", {"metadata": {"name": "app", "labels": {"istio-injection": "enabled"}}}
        )

        assert drain(manager.revision_queue) == ["default"]

    def test_pod_uses_cached_namespace_labels(self, manager: ControllerManager) -> None:
        manager.handle_namespace_event(
            "ADDED", {"metadata": {"name": "app", "labels": {"istio.io/rev": "canary"}}}
        )
        drain(manager.revision_queue)

        manager.handle_pod_event("ADDED", V1Pod(metadata=V1ObjectMeta(name="web", namespace="app")))

        assert drain(manager.revision_queue) == ["canary"]

    def test_deleted_namespace_is_forgotten(self, manager: ControllerManager) -> None:
        ns = {"metadata": {"name": "app", "labels": {"istio.io/rev": "canary"}}}
        manager.handle_namespace_event("ADDED", ns)
        manager.handle_namespace_event("DELETED", ns)
        drain(manager.revision_queue)

        manager.handle_pod_event("ADDED", V1Pod(metadata=V1ObjectMeta(name="web", namespace="app")))

        assert drain(manager.revision_queue) == []

    def test_pod_annotation_wins(self, manager: ControllerManager) -> None:
        pod = V1Pod(
            metadata=V1ObjectMeta(
                name="web", namespace="app", annotations={"istio.io/rev": "stable"}
            )
        )

        manager.handle_pod_event("ADDED", pod)

        assert drain(manager.revision_queue) == ["stable"]

    def test_namespace_update_without_label_change_is_dropped(
        self, manager: ControllerManager
    ) -> None:
        ns = {"metadata": {"name": "app", "labels": {"istio.io/rev": "canary"}}}
        manager.handle_namespace_event("ADDED", ns)
        drain(manager.revision_queue)

        manager.handle_namespace_event("MODIFIED", ns)
        manager.handle_namespace_event("ADDED", ns)

        assert drain(manager.revision_queue) == []

    def test_pod_update_with_same_revision_is_dropped(self, manager: ControllerManager) -> None:
        pod = {"metadata": {"name": "web", "namespace": "app", "labels": {"istio.io/rev": "a"}}}
        manager.handle_pod_event("ADDED", pod)
        drain(manager.revision_queue)

        pod["metadata"]["labels"]["pod-template-hash"] = "abc"
        manager.handle_pod_event("MODIFIED", pod)

        assert drain(manager.revision_queue) == []

    def test_pod_relabel_queues_old_and_new_revision(self, manager: ControllerManager) -> None:
        pod = {"metadata": {"name": "web", "namespace": "app", "labels": {"istio.io/rev": "a"}}}
        manager.handle_pod_event("ADDED", pod)
        drain(manager.revision_queue)

        manager.handle_pod_event(
            "MODIFIED",
            {"metadata": {"name": "web", "namespace": "app", "labels": {"istio.io/rev": "b"}}},
        )

        assert sorted(drain(manager.revision_queue)) == ["a", "b"]

    def test_deleted_pod_queues_its_revision(self, manager: ControllerManager) -> None:
        pod = {"metadata": {"name": "web", "namespace": "app", "labels": {"istio.io/rev": "a"}}}
        manager.handle_pod_event("ADDED", pod)
        drain(manager.revision_queue)

        manager.handle_pod_event("DELETED", pod)
        manager.handle_pod_event("ADDED", pod)

        assert drain(manager.revision_queue) == ["a"]


@pytest.mark.unit
class TestWatchLoop:
    """Tests for the watch stream loop."""

    @patch("mesh_operator.controller.manager.watch.Watch")
    def test_events_are_dispatched_until_stopped(
        self, mock_watch_cls: MagicMock, manager: ControllerManager
    ) -> None:
        events = [
            {"type": "ADDED", "object": {"metadata": {"name": "a"}}},
            {"type": "MODIFIED", "object": {"metadata": {"name": "b"}}},
        ]
        mock_watch_cls.return_value.stream.return_value = iter(events)
        seen: list[tuple[str, str]] = []

        def handler(event_type: str, obj: dict) -> None:
            seen.append((event_type, obj["metadata"]["name"]))
            if len(seen) == 2:
                manager._stop.set()

        list_func = MagicMock()
        manager._watch_loop(WatchSource("meshes", list_func, handler, args=("g",)))

        assert seen == [("ADDED", "a"), ("MODIFIED", "b")]
        mock_watch_cls.return_value.stream.assert_called_once_with(
            list_func, "g", timeout_seconds=300
        )
        mock_watch_cls.return_value.stop.assert_called()

    @patch("mesh_operator.controller.manager.watch.Watch")
    def test_expired_watch_is_reopened_immediately(
        self, mock_watch_cls: MagicMock, manager: ControllerManager
    ) -> None:
        handler = MagicMock(side_effect=lambda *_: manager._stop.set())
        mock_watch_cls.return_value.stream.side_effect = [
            ApiException(status=410, reason="Gone"),
            iter([{"type": "ADDED", "object": {"metadata": {"name": "a"}}}]),
        ]

        manager._watch_loop(WatchSource("meshes", MagicMock(), handler))

        assert mock_watch_cls.return_value.stream.call_count == 2
        handler.assert_called_once()

    @patch("mesh_operator.controller.manager.watch.Watch")
    def test_reopen_resumes_from_last_resource_version(
        self, mock_watch_cls: MagicMock, manager: ControllerManager
    ) -> None:
        events = [
            {"type": "ADDED", "object": {"metadata": {"name": "a", "resourceVersion": "5"}}},
            {"type": "MODIFIED", "object": {"metadata": {"name": "a", "resourceVersion": "9"}}},
        ]
        streams = iter([iter(events)])

        def open_stream(*args, **kwargs):  # type: ignore[no-untyped-def]
            stream = next(streams, None)
            if stream is None:
                manager._stop.set()
                return iter([])
            return stream

        mock_watch_cls.return_value.stream.side_effect = open_stream

        manager._watch_loop(WatchSource("meshes", MagicMock(), MagicMock()))

        first, second = mock_watch_cls.return_value.stream.call_args_list
        assert "resource_version" not in first.kwargs
        assert second.kwargs["resource_version"] == "9"

    @patch("mesh_operator.controller.manager.watch.Watch")
    def test_expired_resource_version_is_dropped(
        self, mock_watch_cls: MagicMock, manager: ControllerManager
    ) -> None:
        calls = []

        def open_stream(*args, **kwargs):  # type: ignore[no-untyped-def]
            calls.append(kwargs.get("resource_version"))
            if len(calls) == 1:
                return iter([{"type": "ADDED", "object": {"metadata": {"resourceVersion": "3"}}}])
            if len(calls) == 2:
                raise ApiException(status=410, reason="Gone")
            manager._stop.set()
            return iter([])

        mock_watch_cls.return_value.stream.side_effect = open_stream

        manager._watch_loop(WatchSource("meshes", MagicMock(), MagicMock()))

        assert calls == [None, "3", None]

    @patch("mesh_operator.controller.manager.watch.Watch")
    def test_watch_error_backs_off_and_stops(
        self, mock_watch_cls: MagicMock, manager: ControllerManager
    ) -> None:
        mock_watch_cls.return_value.stream.side_effect = ApiException(status=500, reason="Boom")
        manager._stop = MagicMock()
        manager._stop.is_set.side_effect = [False, True]

        manager._watch_loop(WatchSource("meshes", MagicMock(), MagicMock()))

        manager._stop.wait.assert_called_once()


@pytest.mark.unit
class TestLifecycle:
    """Tests for starting and stopping the manager."""

    def test_stop_shuts_down_queues(self, manager: ControllerManager) -> None:
        manager.stop()

        assert manager.mesh_queue.shutting_down
        assert manager.revision_queue.shutting_down
        assert manager.mesh_queue.get() is None

    def test_worker_loop_processes_until_shutdown(self, manager: ControllerManager) -> None:
        reconcile = MagicMock(return_value=ReconcileResult())
        manager.mesh_queue.add("a")
        manager.mesh_queue.add("b")
        manager.mesh_queue.shut_down()

        manager._worker_loop(manager.mesh_queue, reconcile)

        assert [c.args[0] for c in reconcile.call_args_list] == ["a", "b"]
