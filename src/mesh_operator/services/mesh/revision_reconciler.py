"""MeshRevision reconciler.

Installs the charts of one revision, then reports whether its control plane
is ready and whether any workload still references it.
"""

from __future__ import annotations

from typing import Any

import structlog

from mesh_operator.controller.result import ReconcileResult
from mesh_operator.core.config.models import OperatorConfig
from mesh_operator.integrations.kubernetes.exceptions import (
    KubernetesConflictError,
    KubernetesError,
    KubernetesNotFoundError,
)
from mesh_operator.integrations.kubernetes.models import (
    Clock,
    Condition,
    ConditionStatus,
    MeshRevision,
    MeshRevisionStatus,
    OwnerReference,
    RevisionConditionType,
    RevisionReason,
    derive_state,
    set_condition,
    utc_now,
)
from mesh_operator.integrations.kubernetes.models.mesh import MESH_API_VERSION, REVISION_KIND
from mesh_operator.services.mesh.chart_manager import ChartManager
from mesh_operator.services.mesh.constants import (
    CNI_CHART,
    CNI_DAEMONSET,
    CNI_ENABLED_KEY,
    CNI_RELEASE_NAME,
    DEFAULT_REVISION,
    FINALIZER,
    ISTIO_NAMESPACE_KEY,
    ISTIOD_CHART,
    ISTIOD_DEPLOYMENT,
    REVISION_KEY,
    istiod_release_name,
)
from mesh_operator.services.mesh.exceptions import MeshError, MeshValidationError
from mesh_operator.services.mesh.store import MeshResourceStore
from mesh_operator.services.mesh.usage import is_revision_in_use
from mesh_operator.utils.values import Values

logger = structlog.get_logger()


class RevisionReconciler:
    """Reconcile a single MeshRevision by name."""

    def __init__(
        self,
        store: MeshResourceStore,
        charts: ChartManager,
        config: OperatorConfig,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._charts = charts
        self._config = config
        self._clock = clock
        self._log = logger.bind(controller="meshrevision")

    @property
    def _conflict_requeue(self) -> ReconcileResult:
        return ReconcileResult.after(self._config.controller.conflict_requeue_seconds)

    def reconcile(self, name: str) -> ReconcileResult:
        """Run one reconcile attempt.

        Returns:
            The requeue decision.

        Raises:
            MeshError: On failures that should be retried with backoff.
            KubernetesError: On cluster or helm failures.
        """
        log = self._log.bind(name=name)
        rev = self._store.get_revision(name)
        if rev is None:
            log.debug("revision_not_found")
            return ReconcileResult()

        if rev.metadata.deletion_timestamp is not None:
            return self._finalize(rev, log)

        if FINALIZER not in rev.metadata.finalizers:
            return self._add_finalizer(rev, log)

        log.info("reconcile_started", generation=rev.metadata.generation)
        values: Values | None = None
        error: Exception | None = None
        try:
            values = self.validate(rev)
            self._install_charts(rev, values, log)
        except (MeshError, KubernetesError) as e:
            log.warning("reconcile_failed", error=str(e), error_type=type(e).__name__)
            error = e

        status_error = self._update_status(rev, values, error, log)

        if error is not None:
            if isinstance(error, MeshValidationError) and status_error is None:
                return ReconcileResult()
            raise error
        if status_error is not None:
            if isinstance(status_error, KubernetesConflictError):
                log.info("status_conflict_requeue")
                return self._conflict_requeue
            raise status_error

        log.info("reconcile_completed")
        return ReconcileResult()

    # =========================================================================
    # Finalizer
    # =========================================================================

    def _finalize(self, rev: MeshRevision, log: Any) -> ReconcileResult:
        if FINALIZER not in rev.metadata.finalizers:
            return ReconcileResult()

        log.info("uninstalling_revision")
        self._charts.remove(CNI_RELEASE_NAME, self._config.cni_namespace)
        self._charts.remove(istiod_release_name(rev.name), rev.spec.namespace)

        rev.metadata.finalizers = [f for f in rev.metadata.finalizers if f != FINALIZER]
        return self._update_finalizers(rev, log, "finalizer_removed")

    def _add_finalizer(self, rev: MeshRevision, log: Any) -> ReconcileResult:
        rev.metadata.finalizers = [*rev.metadata.finalizers, FINALIZER]
        result = self._update_finalizers(rev, log, "finalizer_added")
        return result if not result.is_zero else ReconcileResult(requeue=True)

    def _update_finalizers(self, rev: MeshRevision, log: Any, event: str) -> ReconcileResult:
        try:
            self._store.update_revision(rev)
        except KubernetesNotFoundError:
            log.info("revision_gone_during_finalizer_update")
            return ReconcileResult()
        except KubernetesConflictError:
            log.info("finalizer_conflict_requeue")
            return self._conflict_requeue
        log.info(event, finalizer=FINALIZER)
        return ReconcileResult()

    # =========================================================================
    # Validation and install
    # =========================================================================

    @staticmethod
    def validate(rev: MeshRevision) -> Values:
        """Check that the revision can be installed.

        Returns:
            The revision's settings document.

        Raises:
            MeshValidationError: If a required field is missing or the settings
                disagree with the revision's identity.
        """
        if not rev.spec.version:
            raise MeshValidationError("spec.version not set", resource_name=rev.name)
        if not rev.spec.namespace:
            raise MeshValidationError("spec.namespace not set", resource_name=rev.name)
        if rev.spec.values is None:
            raise MeshValidationError("spec.values not set", resource_name=rev.name)

        values = Values.from_dict(rev.spec.values)
        try:
            revision = values.get_string(REVISION_KEY)
            istio_namespace = values.get_string(ISTIO_NAMESPACE_KEY)
            values.get_bool(CNI_ENABLED_KEY)
        except TypeError as e:
            raise MeshValidationError(str(e), resource_name=rev.name) from e

        expected = "" if rev.name == DEFAULT_REVISION else rev.name
        if revision != expected:
            raise MeshValidationError(
                f'spec.values.revision does not match metadata.name (expected "{expected}")',
                resource_name=rev.name,
            )
        if istio_namespace != rev.spec.namespace:
            raise MeshValidationError(
                "spec.values.global.istioNamespace does not match spec.namespace",
                resource_name=rev.name,
            )
        return values

    def _install_charts(self, rev: MeshRevision, values: Values, log: Any) -> None:
        owner = OwnerReference(
            api_version=MESH_API_VERSION,
            kind=REVISION_KIND,
            name=rev.name,
            uid=rev.metadata.uid or "",
            controller=True,
            block_owner_deletion=True,
        )

        if values.get_bool(CNI_ENABLED_KEY):
            if self._is_oldest_revision_with_cni(rev):
                self._charts.converge(
                    self._config.chart_dir(rev.spec.version, CNI_CHART),
                    values,
                    self._config.cni_namespace,
                    CNI_RELEASE_NAME,
                    owner,
                )
            else:
                log.info("cni_install_skipped", reason="owned by another revision")

        self._charts.converge(
            self._config.chart_dir(rev.spec.version, ISTIOD_CHART),
            values,
            rev.spec.namespace,
            istiod_release_name(rev.name),
            owner,
        )

    def _is_oldest_revision_with_cni(self, rev: MeshRevision) -> bool:
        """Whether ``rev`` is the earliest-created revision with CNI enabled.

        Ties on creation time are broken by name.
        """
        oldest = rev
        for item in self._store.list_revisions():
            try:
                enabled = Values.from_dict(item.spec.values).get_bool(CNI_ENABLED_KEY)
            except TypeError:
                # a malformed revision must not block the others
                continue
            if enabled and _creation_key(item) < _creation_key(oldest):
                oldest = item
        return oldest.metadata.uid == rev.metadata.uid

    # =========================================================================
    # Status
    # =========================================================================

    def _update_status(
        self,
        rev: MeshRevision,
        values: Values | None,
        error: Exception | None,
        log: Any,
    ) -> KubernetesError | None:
        """Compute and write the status.

        Returns:
            The status write error, if any. The write is skipped when the
            status is unchanged.
        """
        now = self._clock()
        reconciled = self._determine_reconciled_condition(error)
        ready = self._determine_ready_condition(rev, values)
        in_use = self._determine_in_use_condition(rev)

        conditions = rev.status.conditions
        for condition in (reconciled, ready, in_use):
            conditions = set_condition(conditions, condition, now)

        status = MeshRevisionStatus(
            observed_generation=rev.metadata.generation,
            conditions=conditions,
            state=derive_state(reconciled, ready, RevisionReason.HEALTHY),
        )
        if status.to_dict() == rev.status.to_dict():
            log.debug("status_unchanged")
            return None

        try:
            self._store.patch_revision_status(rev, status)
        except KubernetesError as e:
            log.error("status_update_failed", error=str(e))
            return e
        log.debug("status_updated", state=status.state)
        return None

    @staticmethod
    def _determine_reconciled_condition(error: Exception | None) -> Condition:
        if error is None:
            return Condition(type=RevisionConditionType.RECONCILED, status=ConditionStatus.TRUE)
        return Condition(
            type=RevisionConditionType.RECONCILED,
            status=ConditionStatus.FALSE,
            reason=RevisionReason.RECONCILE_ERROR,
            message=f"error reconciling resource: {error}",
        )

    def _determine_ready_condition(self, rev: MeshRevision, values: Values | None) -> Condition:
        def not_ready(reason: RevisionReason, message: str) -> Condition:
            return Condition(
                type=RevisionConditionType.READY,
                status=ConditionStatus.FALSE,
                reason=reason,
                message=message,
            )

        if values is None:
            return Condition(
                type=RevisionConditionType.READY,
                status=ConditionStatus.UNKNOWN,
                reason=RevisionReason.RECONCILE_ERROR,
                message="cannot determine readiness due to reconciliation error",
            )

        revision = values.get_string(REVISION_KEY)
        deployment_name = f"{ISTIOD_DEPLOYMENT}-{revision}" if revision else ISTIOD_DEPLOYMENT
        try:
            istiod = self._store.get_deployment(deployment_name, rev.spec.namespace)
        except KubernetesError as e:
            return not_ready(RevisionReason.RECONCILE_ERROR, f"failed to get readiness: {e}")
        if istiod is None:
            return not_ready(RevisionReason.ISTIOD_NOT_READY, "istiod Deployment not found")
        if istiod.replicas == 0:
            return not_ready(
                RevisionReason.ISTIOD_NOT_READY, "istiod Deployment is scaled to zero replicas"
            )
        if istiod.ready_replicas < istiod.replicas:
            return not_ready(RevisionReason.ISTIOD_NOT_READY, "not all istiod pods are ready")

        if values.get_bool(CNI_ENABLED_KEY):
            try:
                cni = self._store.get_daemonset(CNI_DAEMONSET, self._config.cni_namespace)
            except KubernetesError as e:
                return not_ready(RevisionReason.RECONCILE_ERROR, f"failed to get readiness: {e}")
            if cni is None:
                return not_ready(RevisionReason.CNI_NOT_READY, "istio-cni-node DaemonSet not found")
            if cni.current_number_scheduled == 0:
                return not_ready(
                    RevisionReason.CNI_NOT_READY, "no istio-cni-node pods are currently scheduled"
                )
            if cni.number_ready < cni.current_number_scheduled:
                return not_ready(
                    RevisionReason.CNI_NOT_READY, "not all istio-cni-node pods are ready"
                )

        return Condition(type=RevisionConditionType.READY, status=ConditionStatus.TRUE)

    def _determine_in_use_condition(self, rev: MeshRevision) -> Condition:
        try:
            values = Values.from_dict(rev.spec.values)
            in_use = is_revision_in_use(
                rev.name,
                values,
                self._store.list_namespaces(),
                self._store.list_pods(),
            )
        except (KubernetesError, TypeError) as e:
            return Condition(
                type=RevisionConditionType.IN_USE,
                status=ConditionStatus.UNKNOWN,
                reason=RevisionReason.USAGE_CHECK_FAILED,
                message=f"failed to determine if revision is in use: {e}",
            )

        if in_use:
            return Condition(
                type=RevisionConditionType.IN_USE,
                status=ConditionStatus.TRUE,
                reason=RevisionReason.REFERENCED_BY_WORKLOADS,
                message="Referenced by at least one pod or namespace",
            )
        return Condition(
            type=RevisionConditionType.IN_USE,
            status=ConditionStatus.FALSE,
            reason=RevisionReason.NOT_REFERENCED,
            message="Not referenced by any pod or namespace",
        )


def _creation_key(rev: MeshRevision) -> tuple[float, str]:
    created = rev.metadata.creation_timestamp
    return (created.timestamp() if created else 0.0, rev.name)
