"""Outcome of a single reconcile attempt."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ReconcileResult:
    """What the work queue should do with a key after a successful reconcile.

    Attributes:
        requeue: Requeue with the key's backoff delay.
        requeue_after: Requeue after exactly this many seconds. Takes
            precedence over ``requeue``.
    """

    requeue: bool = False
    requeue_after: float | None = None

    @classmethod
    def after(cls, seconds: float) -> ReconcileResult:
        """Requeue after a fixed delay."""
        return cls(requeue_after=max(seconds, 0.0))

    @property
    def is_zero(self) -> bool:
        """Whether nothing needs to be requeued."""
        return not self.requeue and self.requeue_after is None
