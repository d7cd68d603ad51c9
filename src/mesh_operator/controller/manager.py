"""Controller manager.

Runs one watch thread per watched resource kind and a pool of worker threads
per controller. Watch events are mapped to object names and added to the
controller's work queue; workers take names off the queue and reconcile
them one at a time per name.
"""

from __future__ import annotations

import random
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog
from kubernetes import watch
from kubernetes.client import ApiException

from mesh_operator.controller.result import ReconcileResult
from mesh_operator.controller.workqueue import WorkQueue
from mesh_operator.core.config.models import OperatorConfig
from mesh_operator.integrations.kubernetes.client import KubernetesClient
from mesh_operator.integrations.kubernetes.helm_client import HelmClient
from mesh_operator.integrations.kubernetes.models import Clock, utc_now
from mesh_operator.integrations.kubernetes.models.base import _safe_get
from mesh_operator.integrations.kubernetes.models.mesh import (
    MESH_GROUP,
    MESH_KIND,
    MESH_PLURAL,
    MESH_VERSION,
    REVISION_PLURAL,
)
from mesh_operator.logging.config import reconcile_context
from mesh_operator.services.mesh.chart_manager import ChartManager
from mesh_operator.services.mesh.constants import CNI_ENABLED_KEY
from mesh_operator.services.mesh.mesh_reconciler import MeshReconciler
from mesh_operator.services.mesh.ownership import RevisionRequestMapper, validator_fingerprint
from mesh_operator.services.mesh.revision_reconciler import RevisionReconciler
from mesh_operator.services.mesh.store import MeshResourceStore
from mesh_operator.services.mesh.usage import namespace_revision, pod_revision
from mesh_operator.utils.values import Values

logger = structlog.get_logger()

# Watches are re-opened periodically and resume from the last resourceVersion
WATCH_TIMEOUT_SECONDS = 300
WATCH_BACKOFF_MAX_SECONDS = 30
QUEUE_POLL_SECONDS = 1.0


@dataclass
class WatchSource:
    """A list function to watch and the handler for its events."""

    name: str
    list_func: Callable[..., Any]
    handler: Callable[[str, Any], None]
    args: tuple[Any, ...] = ()
    kwargs: dict[str, Any] = field(default_factory=dict)


class ControllerManager:
    """Wire the reconcilers to watches and work queues and run them."""

    def __init__(
        self,
        config: OperatorConfig,
        client: KubernetesClient,
        helm: HelmClient,
        clock: Clock = utc_now,
    ) -> None:
        self._config = config
        self._client = client
        self._store = MeshResourceStore(client)
        charts = ChartManager(helm, config.helm)

        self.mesh_reconciler = MeshReconciler(self._store, config, clock)
        self.revision_reconciler = RevisionReconciler(self._store, charts, config, clock)

        ctl = config.controller
        self.mesh_queue = WorkQueue(
            "mesh", backoff_base=ctl.backoff_base_seconds, backoff_max=ctl.backoff_max_seconds
        )
        self.revision_queue = WorkQueue(
            "meshrevision",
            backoff_base=ctl.backoff_base_seconds,
            backoff_max=ctl.backoff_max_seconds,
        )

        self._mapper = RevisionRequestMapper(config.cni_namespace, self._cni_revision_names)
        self._namespace_labels: dict[str, dict[str, str]] = {}
        self._pod_revisions: dict[str, str] = {}
        self._validator_fingerprints: dict[str, dict[str, Any]] = {}
        self._labels_lock = threading.Lock()

        self._stop = threading.Event()
        self._watchers: set[watch.Watch] = set()
        self._watchers_lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._log = logger.bind(entity="manager")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start watch and worker threads."""
        self._stop.clear()
        for source in self._watch_sources():
            self._spawn(f"watch-{source.name}", self._watch_loop, source)

        workers = self._config.controller.workers
        for i in range(workers):
            self._spawn(
                f"mesh-worker-{i}",
                self._worker_loop,
                self.mesh_queue,
                self.mesh_reconciler.reconcile,
            )
            self._spawn(
                f"meshrevision-worker-{i}",
                self._worker_loop,
                self.revision_queue,
                self.revision_reconciler.reconcile,
            )
        self._log.info("manager_started", workers=workers, threads=len(self._threads))

    def stop(self) -> None:
        """Request shutdown and interrupt open watch streams."""
        self._stop.set()
        self.mesh_queue.shut_down()
        self.revision_queue.shut_down()
        with self._watchers_lock:
            for watcher in list(self._watchers):
                watcher.stop()

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Start, then block until ``stop_event`` is set or ``stop`` is called."""
        self.start()
        try:
            while not self._stop.is_set():
                if stop_event is not None and stop_event.wait(QUEUE_POLL_SECONDS):
                    break
                if stop_event is None:
                    self._stop.wait(QUEUE_POLL_SECONDS)
        finally:
            self.stop()
            self.join()

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout)
        self._log.info("manager_stopped")

    def _spawn(self, name: str, target: Callable[..., None], *args: Any) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    # =========================================================================
    # Workers
    # =========================================================================

    def _worker_loop(self, queue: WorkQueue, reconcile: Callable[[str], ReconcileResult]) -> None:
        while True:
            key = queue.get()
            if key is None:
                return
            try:
                self.process_item(queue, reconcile, key)
            finally:
                queue.done(key)

    @staticmethod
    def process_item(
        queue: WorkQueue, reconcile: Callable[[str], ReconcileResult], key: str
    ) -> None:
        """Reconcile one key and translate the outcome into queue operations."""
        log = logger.bind(controller=queue.name, name=key)
        try:
            with reconcile_context(queue.name, key):
                result = reconcile(key)
        except Exception as e:
            delay = queue.next_backoff(key)
            log.error("reconcile_error", error=str(e), error_type=type(e).__name__, retry_in=delay)
            queue.add_after(key, delay)
            return

        if result.requeue_after is not None:
            queue.forget(key)
            queue.add_after(key, result.requeue_after)
        elif result.requeue:
            queue.add_rate_limited(key)
        else:
            queue.forget(key)

    # =========================================================================
    # Watches
    # =========================================================================

    def _watch_sources(self) -> list[WatchSource]:
        core = self._client.core_v1
        apps = self._client.apps_v1
        rbac = self._client.rbac_v1
        admission = self._client.admissionregistration_v1
        custom = self._client.custom_objects
        owned = self.handle_owned_event
        return [
            WatchSource(
                "meshes",
                custom.list_cluster_custom_object,
                self.handle_mesh_event,
                args=(MESH_GROUP, MESH_VERSION, MESH_PLURAL),
            ),
            WatchSource(
                "meshrevisions",
                custom.list_cluster_custom_object,
                self.handle_revision_event,
                args=(MESH_GROUP, MESH_VERSION, REVISION_PLURAL),
            ),
            # namespaced resources rendered by the charts
            WatchSource("configmaps", core.list_config_map_for_all_namespaces, owned),
            WatchSource("deployments", apps.list_deployment_for_all_namespaces, owned),
            WatchSource("daemonsets", apps.list_daemon_set_for_all_namespaces, owned),
            WatchSource("endpoints", core.list_endpoints_for_all_namespaces, owned),
            WatchSource("resourcequotas", core.list_resource_quota_for_all_namespaces, owned),
            WatchSource("secrets", core.list_secret_for_all_namespaces, owned),
            WatchSource("services", core.list_service_for_all_namespaces, owned),
            WatchSource("serviceaccounts", core.list_service_account_for_all_namespaces, owned),
            WatchSource("roles", rbac.list_role_for_all_namespaces, owned),
            WatchSource("rolebindings", rbac.list_role_binding_for_all_namespaces, owned),
            WatchSource(
                "poddisruptionbudgets",
                self._client.policy_v1.list_pod_disruption_budget_for_all_namespaces,
                owned,
            ),
            WatchSource(
                "horizontalpodautoscalers",
                self._client.autoscaling_v2.list_horizontal_pod_autoscaler_for_all_namespaces,
                owned,
            ),
            # cluster-scoped resources rendered by the charts
            WatchSource("clusterroles", rbac.list_cluster_role, owned),
            WatchSource("clusterrolebindings", rbac.list_cluster_role_binding, owned),
            WatchSource(
                "mutatingwebhookconfigurations",
                admission.list_mutating_webhook_configuration,
                owned,
            ),
            WatchSource(
                "validatingwebhookconfigurations",
                admission.list_validating_webhook_configuration,
                self.handle_validating_webhook_event,
            ),
            # usage
            WatchSource("namespaces", core.list_namespace, self.handle_namespace_event),
            WatchSource("pods", core.list_pod_for_all_namespaces, self.handle_pod_event),
        ]

    def _watch_loop(self, source: WatchSource) -> None:
        """Stream events for one source until stopped.

        Each re-open resumes from the last resourceVersion seen, so only
        changes are delivered. Once that version has expired (410) the watch
        starts over without one and the server replays every object.
        """
        log = self._log.bind(watch=source.name)
        backoff = 1.0
        resource_version: str | None = None
        while not self._stop.is_set():
            watcher = watch.Watch()
            with self._watchers_lock:
                self._watchers.add(watcher)
            kwargs = dict(source.kwargs)
            if resource_version:
                kwargs["resource_version"] = resource_version
            try:
                for event in watcher.stream(
                    source.list_func,
                    *source.args,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                    **kwargs,
                ):
                    if self._stop.is_set():
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    resource_version = _resource_version(obj) or resource_version
                    source.handler(str(event.get("type", "")), obj)
                backoff = 1.0
            except ApiException as e:
                if e.status == 410:
                    log.debug("watch_expired", resource_version=resource_version)
                    resource_version = None
                    continue
                log.warning("watch_error", status=e.status, reason=e.reason, retry_in=backoff)
                self._stop.wait(backoff * (0.5 + random.random()))  # noqa: S311
                backoff = min(backoff * 2, WATCH_BACKOFF_MAX_SECONDS)
            except Exception as e:
                log.error("watch_failed", error=str(e), retry_in=backoff)
                self._stop.wait(backoff * (0.5 + random.random()))  # noqa: S311
                backoff = min(backoff * 2, WATCH_BACKOFF_MAX_SECONDS)
            finally:
                watcher.stop()
                with self._watchers_lock:
                    self._watchers.discard(watcher)

    # =========================================================================
    # Event handlers
    # =========================================================================

    def handle_mesh_event(self, event_type: str, obj: Any) -> None:
        name = _safe_get(obj, "metadata", "name")
        if name:
            self.mesh_queue.add(name)

    def handle_revision_event(self, event_type: str, obj: Any) -> None:
        """Queue the revision and the Mesh that controls it."""
        name = _safe_get(obj, "metadata", "name")
        if name:
            self.revision_queue.add(name)
        for ref in _safe_get(obj, "metadata", "ownerReferences", default=[]):
            if ref.get("kind") == MESH_KIND and ref.get("controller"):
                self.mesh_queue.add(ref["name"])

    def handle_owned_event(self, event_type: str, obj: Any) -> None:
        for name in self._mapper.map(obj):
            self.revision_queue.add(name)

    def handle_validating_webhook_event(self, event_type: str, obj: Any) -> None:
        """Like ``handle_owned_event``, minus the updates istiod makes itself."""
        name = _safe_get(obj, "metadata", "name", default="")
        fingerprint = validator_fingerprint(obj)
        with self._labels_lock:
            if event_type == "DELETED" or fingerprint is None:
                self._validator_fingerprints.pop(name, None)
            else:
                previous = self._validator_fingerprints.get(name)
                self._validator_fingerprints[name] = fingerprint
                if event_type == "MODIFIED" and previous == fingerprint:
                    return
        self.handle_owned_event(event_type, obj)

    def handle_namespace_event(self, event_type: str, obj: Any) -> None:
        """Track namespace labels and queue the revisions a label change affects."""
        name = _safe_get(obj, "metadata", "name", default="")
        labels = dict(_safe_get(obj, "metadata", "labels", default={}))
        with self._labels_lock:
            previous = self._namespace_labels.get(name)
            if event_type == "DELETED":
                self._namespace_labels.pop(name, None)
            else:
                self._namespace_labels[name] = labels
                if previous == labels:
                    return

        for revision in {namespace_revision(labels), namespace_revision(previous)}:
            if revision:
                self.revision_queue.add(revision)

    def handle_pod_event(self, event_type: str, obj: Any) -> None:
        """Queue the revisions whose usage a pod event changes.

        Pod status updates are frequent; an update that leaves the revision
        the pod resolves to unchanged is dropped.
        """
        namespace = _safe_get(obj, "metadata", "namespace", default="")
        key = f"{namespace}/{_safe_get(obj, 'metadata', 'name', default='')}"
        with self._labels_lock:
            ns_labels = self._namespace_labels.get(namespace)
        revision = pod_revision(
            _safe_get(obj, "metadata", "labels", default={}),
            _safe_get(obj, "metadata", "annotations", default={}),
            ns_labels,
        )
        with self._labels_lock:
            known = key in self._pod_revisions
            previous = self._pod_revisions.pop(key, "")
            if event_type != "DELETED":
                self._pod_revisions[key] = revision
                if known and previous == revision:
                    return

        for name in {revision, previous}:
            if name:
                self.revision_queue.add(name)

    def _cni_revision_names(self) -> list[str]:
        names = []
        for rev in self._store.list_revisions():
            try:
                if Values.from_dict(rev.spec.values).get_bool(CNI_ENABLED_KEY):
                    names.append(rev.name)
            except TypeError:
                continue
        return names


def _resource_version(obj: Any) -> str | None:
    """resourceVersion of an SDK model or a custom-object dict."""
    return _safe_get(obj, "metadata", "resource_version") or _safe_get(
        obj, "metadata", "resourceVersion"
    )
