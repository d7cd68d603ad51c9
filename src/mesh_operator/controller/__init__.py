"""Watch and work queue runtime driving the reconcilers."""

from mesh_operator.controller.result import ReconcileResult
from mesh_operator.controller.workqueue import WorkQueue

__all__ = ["ReconcileResult", "WorkQueue"]
