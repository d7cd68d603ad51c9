"""Status conditions.

Conditions form a small ordered collection keyed by type. Updating the
collection is a pure function of (conditions, new condition, now) so that
callers control time through an injected clock.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from enum import StrEnum

from mesh_operator.integrations.kubernetes.models.base import K8sModel

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock."""
    return datetime.now(UTC)


class ConditionStatus(StrEnum):
    """Tri-state condition status."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Condition(K8sModel):
    """A single status condition."""

    type: str
    status: ConditionStatus = ConditionStatus.UNKNOWN
    reason: str | None = None
    message: str | None = None
    last_transition_time: datetime | None = None

    @property
    def is_true(self) -> bool:
        return self.status == ConditionStatus.TRUE

    @property
    def is_false(self) -> bool:
        return self.status == ConditionStatus.FALSE


def get_condition(conditions: Sequence[Condition] | None, condition_type: str) -> Condition:
    """Return the condition of the given type.

    A missing condition (or a missing condition list) yields a synthesized
    condition with status Unknown.
    """
    for condition in conditions or ():
        if condition.type == condition_type:
            return condition
    return Condition(type=condition_type, status=ConditionStatus.UNKNOWN)


def set_condition(
    conditions: Sequence[Condition] | None,
    condition: Condition,
    now: datetime,
) -> list[Condition]:
    """Return a new condition list with ``condition`` applied.

    ``last_transition_time`` only moves when the status of that type changes;
    re-asserting the same status keeps the previous timestamp even when the
    reason or message differ. New timestamps are truncated to whole seconds.
    """
    transition_time = now.replace(microsecond=0)
    result: list[Condition] = []
    replaced = False
    for previous in conditions or ():
        if previous.type != condition.type:
            result.append(previous)
            continue
        if previous.status == condition.status:
            kept_time = previous.last_transition_time
        else:
            kept_time = transition_time
        result.append(condition.model_copy(update={"last_transition_time": kept_time}))
        replaced = True

    if not replaced:
        result.append(condition.model_copy(update={"last_transition_time": transition_time}))
    return result


def derive_state(reconciled: Condition, ready: Condition, healthy: str) -> str | None:
    """Derive the overall state from the Reconciled and Ready conditions.

    A reconcile failure reason always wins over a readiness failure reason.
    """
    if reconciled.is_false:
        return reconciled.reason
    if ready.is_false:
        return ready.reason
    return healthy
