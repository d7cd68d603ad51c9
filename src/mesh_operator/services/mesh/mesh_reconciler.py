"""Mesh reconciler.

Turns a Mesh into its active MeshRevision, prunes inactive revisions that
no workload uses anymore, and mirrors the active revision's status.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

import structlog

from mesh_operator.controller.result import ReconcileResult
from mesh_operator.core.config.models import OperatorConfig
from mesh_operator.integrations.kubernetes.exceptions import (
    KubernetesConflictError,
    KubernetesError,
    KubernetesNotReadyError,
)
from mesh_operator.integrations.kubernetes.models import (
    Clock,
    Condition,
    ConditionStatus,
    Mesh,
    MeshConditionType,
    MeshReason,
    MeshRevision,
    MeshRevisionSpec,
    MeshStatus,
    ObjectMeta,
    OwnerReference,
    RevisionConditionType,
    RevisionSummary,
    UpdateStrategyType,
    derive_state,
    set_condition,
    utc_now,
)
from mesh_operator.integrations.kubernetes.models.mesh import MESH_API_VERSION, MESH_KIND
from mesh_operator.services.mesh import profiles
from mesh_operator.services.mesh.constants import (
    DEFAULT_REVISION,
    ISTIO_NAMESPACE_KEY,
    REVISION_KEY,
)
from mesh_operator.services.mesh.exceptions import MeshError, MeshValidationError
from mesh_operator.services.mesh.store import MeshResourceStore
from mesh_operator.utils.values import Values

logger = structlog.get_logger()

_CONDITION_TYPES = {
    RevisionConditionType.RECONCILED: MeshConditionType.RECONCILED,
    RevisionConditionType.READY: MeshConditionType.READY,
}

# Revision reasons that have a Mesh counterpart
_REASONS = {reason.value: reason for reason in MeshReason}


def active_revision_name(mesh: Mesh) -> str:
    """Name of the revision that implements the Mesh's current spec.

    InPlace reuses the Mesh name; RevisionBased appends the version with dots
    replaced by dashes (``mesh`` + ``1.2.0`` gives ``mesh-1-2-0``).
    """
    if mesh.strategy_type == UpdateStrategyType.REVISION_BASED:
        return f"{mesh.name}-{mesh.spec.version.replace('.', '-')}"
    return mesh.name


def compute_revision_values(
    mesh: Mesh,
    default_profiles: list[str],
    profiles_dir: str | Path,
) -> Values:
    """Resolve the settings document handed to the active revision.

    Default profiles come first, then ``spec.profile``, then ``spec.values``.
    ``revision`` and ``global.istioNamespace`` are always forced.
    """
    names = list(default_profiles)
    if mesh.spec.profile:
        names.append(mesh.spec.profile)

    values = profiles.resolve(profiles_dir, names, mesh.spec.values)

    revision = active_revision_name(mesh)
    # the default revision is addressed by an empty revision name
    if revision == DEFAULT_REVISION:
        revision = ""
    try:
        values.set_path(REVISION_KEY, revision)
        values.set_path(ISTIO_NAMESPACE_KEY, mesh.spec.namespace)
    except TypeError as e:
        raise MeshValidationError(str(e), resource_name=mesh.name) from e
    return values


def convert_condition(condition: Condition) -> Condition:
    """Translate a revision condition into the Mesh vocabulary."""
    reason = condition.reason
    if reason:
        if reason not in _REASONS:
            raise MeshError(f"cannot convert revision condition reason {reason}")
        reason = _REASONS[reason]
    return Condition(
        type=_CONDITION_TYPES[RevisionConditionType(condition.type)],
        status=condition.status,
        reason=reason,
        message=condition.message,
    )


class MeshReconciler:
    """Reconcile a single Mesh by name."""

    def __init__(
        self,
        store: MeshResourceStore,
        config: OperatorConfig,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._config = config
        self._clock = clock
        self._log = logger.bind(controller="mesh")

    def reconcile(self, name: str) -> ReconcileResult:
        """Run one reconcile attempt.

        Raises:
            MeshError: On failures that should be retried with backoff.
            KubernetesError: On cluster failures.
        """
        log = self._log.bind(name=name)
        mesh = self._store.get_mesh(name)
        if mesh is None:
            log.debug("mesh_not_found")
            return ReconcileResult()
        if mesh.metadata.deletion_timestamp is not None:
            log.debug("mesh_deleting")
            return ReconcileResult()

        log.info("reconcile_started", generation=mesh.metadata.generation)
        result = ReconcileResult()
        error: Exception | None = None
        try:
            result = self._do_reconcile(mesh, log)
        except (MeshError, KubernetesError) as e:
            log.warning("reconcile_failed", error=str(e), error_type=type(e).__name__)
            error = e

        status_error = self._update_status(mesh, error, log)

        if error is not None:
            if isinstance(error, MeshValidationError) and status_error is None:
                return ReconcileResult()
            raise error
        if status_error is not None:
            if isinstance(status_error, KubernetesConflictError):
                log.info("status_conflict_requeue")
                return ReconcileResult.after(self._config.controller.conflict_requeue_seconds)
            raise status_error

        log.info("reconcile_completed", requeue_after=result.requeue_after)
        return result

    def _do_reconcile(self, mesh: Mesh, log: Any) -> ReconcileResult:
        if not mesh.spec.version:
            raise MeshValidationError("no spec.version set", resource_name=mesh.name)
        if not mesh.spec.namespace:
            raise MeshValidationError("no spec.namespace set", resource_name=mesh.name)

        values = compute_revision_values(
            mesh, self._config.default_profiles, self._config.profiles_dir(mesh.spec.version)
        )

        result = self._reconcile_active_revision(mesh, values, log)
        if not result.is_zero:
            return result

        return self._prune_inactive_revisions(mesh, log)

    # =========================================================================
    # Active revision
    # =========================================================================

    def _reconcile_active_revision(self, mesh: Mesh, values: Values, log: Any) -> ReconcileResult:
        name = active_revision_name(mesh)
        controller = self._config.controller
        spec_values = values.to_dict()

        rev = self._store.get_revision(name)
        if rev is not None:
            if rev.spec.version == mesh.spec.version and rev.spec.values == spec_values:
                log.debug("revision_up_to_date", revision=name)
                return ReconcileResult()
            rev.spec.version = mesh.spec.version
            rev.spec.values = spec_values
            try:
                self._store.update_revision(rev)
            except KubernetesConflictError:
                log.info("revision_update_conflict", revision=name)
                return ReconcileResult.after(controller.conflict_requeue_seconds)
            log.info("revision_updated", revision=name, version=mesh.spec.version)
            return ReconcileResult()

        rev = MeshRevision(
            metadata=ObjectMeta(
                name=name,
                owner_references=[
                    OwnerReference(
                        api_version=MESH_API_VERSION,
                        kind=MESH_KIND,
                        name=mesh.name,
                        uid=mesh.metadata.uid or "",
                        controller=True,
                        block_owner_deletion=True,
                    )
                ],
            ),
            spec=MeshRevisionSpec(
                version=mesh.spec.version,
                namespace=mesh.spec.namespace,
                values=spec_values,
            ),
        )
        try:
            self._store.create_revision(rev)
        except KubernetesNotReadyError as e:
            log.info("revision_create_not_ready", revision=name, error=str(e))
            return ReconcileResult.after(controller.not_ready_requeue_seconds)
        except KubernetesConflictError:
            log.info("revision_create_conflict", revision=name)
            return ReconcileResult.after(controller.conflict_requeue_seconds)
        log.info("revision_created", revision=name, version=mesh.spec.version)
        return ReconcileResult()

    # =========================================================================
    # Pruning
    # =========================================================================

    def _owned_revisions(self, mesh: Mesh) -> list[MeshRevision]:
        return [
            rev
            for rev in self._store.list_revisions()
            if rev.metadata.is_owned_by(mesh.metadata.uid)
        ]

    def _prune_inactive_revisions(self, mesh: Mesh, log: Any) -> ReconcileResult:
        """Delete inactive revisions whose grace period has expired.

        Every revision whose InUse condition is not True is a candidate; the
        grace period runs from that condition's last transition. A revision
        that never recorded InUse has no transition time and is deleted right
        away. When some candidate is still within its grace period, the Mesh
        is requeued for the earliest deadline.
        """
        active = active_revision_name(mesh)
        grace = mesh.grace_period()
        now = self._clock()

        next_prune: datetime | None = None
        for rev in self._owned_revisions(mesh):
            if rev.name == active:
                continue
            in_use = rev.status.get_condition(RevisionConditionType.IN_USE)
            if in_use.status == ConditionStatus.TRUE:
                continue

            since = in_use.last_transition_time
            deadline = since + grace if since is not None else None
            if deadline is None or deadline < now:
                self._store.delete_revision(rev.name)
                log.info(
                    "revision_pruned",
                    revision=rev.name,
                    in_use=in_use.status.value,
                    unused_since=since.isoformat() if since else None,
                )
                continue

            if next_prune is None or deadline < next_prune:
                next_prune = deadline

        if next_prune is None:
            return ReconcileResult()
        delay = (next_prune - now).total_seconds()
        log.debug("prune_scheduled", requeue_after=delay)
        return ReconcileResult.after(delay)

    # =========================================================================
    # Status
    # =========================================================================

    def _update_status(
        self,
        mesh: Mesh,
        error: Exception | None,
        log: Any,
    ) -> KubernetesError | None:
        """Compute and write the status.

        Returns:
            The status write error, if any.

        Raises:
            KubernetesError: If the active revision cannot be read.
        """
        now = self._clock()
        conditions = mesh.status.conditions

        if error is not None:
            conditions = set_condition(
                conditions,
                Condition(
                    type=MeshConditionType.RECONCILED,
                    status=ConditionStatus.FALSE,
                    reason=MeshReason.RECONCILE_ERROR,
                    message=str(error),
                ),
                now,
            )
            conditions = set_condition(
                conditions,
                Condition(
                    type=MeshConditionType.READY,
                    status=ConditionStatus.UNKNOWN,
                    reason=MeshReason.RECONCILE_ERROR,
                    message="cannot determine readiness due to reconciliation error",
                ),
                now,
            )
            state: str | None = MeshReason.RECONCILE_ERROR
        else:
            active = self._store.get_revision(active_revision_name(mesh))
            if active is None:
                for condition_type in (MeshConditionType.RECONCILED, MeshConditionType.READY):
                    conditions = set_condition(
                        conditions,
                        Condition(
                            type=condition_type,
                            status=ConditionStatus.FALSE,
                            reason=MeshReason.REVISION_NOT_FOUND,
                            message="active MeshRevision not found",
                        ),
                        now,
                    )
                state = MeshReason.REVISION_NOT_FOUND
            else:
                reconciled = convert_condition(
                    active.status.get_condition(RevisionConditionType.RECONCILED)
                )
                ready = convert_condition(active.status.get_condition(RevisionConditionType.READY))
                conditions = set_condition(conditions, reconciled, now)
                conditions = set_condition(conditions, ready, now)
                state = derive_state(reconciled, ready, MeshReason.HEALTHY)

        status = MeshStatus(
            observed_generation=mesh.metadata.generation,
            conditions=conditions,
            state=state,
            revisions=self._summarize_revisions(mesh, log),
        )
        if status.to_dict() == mesh.status.to_dict():
            log.debug("status_unchanged")
            return None

        try:
            self._store.patch_mesh_status(mesh, status)
        except KubernetesError as e:
            log.error("status_update_failed", error=str(e))
            return e
        log.debug("status_updated", state=status.state)
        return None

    def _summarize_revisions(self, mesh: Mesh, log: Any) -> RevisionSummary:
        """Recount owned revisions, keeping the previous counters if listing fails."""
        try:
            return summarize_revisions(self._owned_revisions(mesh))
        except KubernetesError as e:
            log.warning("revision_count_failed", error=str(e))
            return mesh.status.revisions


def summarize_revisions(revisions: list[MeshRevision]) -> RevisionSummary:
    """Count owned revisions, ready ones and ones in use."""
    return RevisionSummary(
        total=len(revisions),
        ready=sum(
            1 for rev in revisions if rev.status.get_condition(RevisionConditionType.READY).is_true
        ),
        in_use=sum(
            1 for rev in revisions if rev.status.get_condition(RevisionConditionType.IN_USE).is_true
        ),
    )
