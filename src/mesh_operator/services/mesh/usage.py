"""Resolve which revision a namespace or pod is injected by.

The rules mirror how the sidecar injector picks a revision: the pod's
provenance annotation is authoritative, the namespace labels normally beat
the pod's own revision label, and ``sidecar.istio.io/inject=true`` without
any revision selects the default revision.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from mesh_operator.integrations.kubernetes.models import NamespaceLabels, PodLabels
from mesh_operator.services.mesh.constants import (
    DEFAULT_REVISION,
    ENABLE_NAMESPACES_BY_DEFAULT_KEY,
    INJECTION_ENABLED,
    INJECTION_LABEL,
    REVISION_ANNOTATION,
    REVISION_LABEL,
    SIDECAR_INJECT_LABEL,
)
from mesh_operator.utils.values import Values


def namespace_revision(labels: Mapping[str, str] | None) -> str:
    """Revision referenced by a namespace's labels, or ``""``."""
    labels = labels or {}
    if labels.get(INJECTION_LABEL) == INJECTION_ENABLED:
        return DEFAULT_REVISION
    return labels.get(REVISION_LABEL, "")


def pod_revision(
    labels: Mapping[str, str] | None,
    annotations: Mapping[str, str] | None,
    namespace_labels: Mapping[str, str] | None,
) -> str:
    """Revision referenced by a pod, or ``""``.

    Args:
        labels: Pod labels.
        annotations: Pod annotations.
        namespace_labels: Labels of the pod's namespace.
    """
    labels = labels or {}
    annotations = annotations or {}

    if injected := annotations.get(REVISION_ANNOTATION):
        return injected

    inject = labels.get(SIDECAR_INJECT_LABEL)
    if inject != "false":
        if ns_revision := namespace_revision(namespace_labels):
            return ns_revision

    if pod_rev := labels.get(REVISION_LABEL):
        return pod_rev
    if inject == "true":
        return DEFAULT_REVISION
    return ""


def is_revision_in_use(
    revision_name: str,
    values: Values,
    namespaces: Iterable[NamespaceLabels],
    pods: Iterable[PodLabels],
) -> bool:
    """Whether any namespace or pod references the revision.

    Pods whose namespace is not in ``namespaces`` are ignored.
    """
    if revision_name == DEFAULT_REVISION and values.get_bool(ENABLE_NAMESPACES_BY_DEFAULT_KEY):
        return True

    namespace_labels: dict[str, Mapping[str, str]] = {}
    for ns in namespaces:
        namespace_labels[ns.name] = ns.labels
        if namespace_revision(ns.labels) == revision_name:
            return True

    for pod in pods:
        if pod.namespace not in namespace_labels:
            continue
        ns_labels = namespace_labels[pod.namespace]
        if pod_revision(pod.labels, pod.annotations, ns_labels) == revision_name:
            return True
    return False
