"""Ownership stamping for rendered chart manifests and its reverse lookup.

Owner references cannot cross namespaces, so resources rendered outside the
owner's namespace carry an annotation pair instead::

    operator-sdk/primary-resource: <namespace>/<name>
    operator-sdk/primary-resource-type: <kind>.<apiGroup>

The reverse lookup turns either form back into the owning revision's name so
that watch events on rendered resources trigger a reconcile of their owner.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

import structlog
import yaml

from mesh_operator.integrations.kubernetes.exceptions import KubernetesError
from mesh_operator.integrations.kubernetes.models import OwnerReference
from mesh_operator.integrations.kubernetes.models.base import _safe_get
from mesh_operator.integrations.kubernetes.models.mesh import MESH_GROUP, REVISION_KIND
from mesh_operator.services.mesh.constants import (
    CNI_RELEASE_NAME,
    HELM_RELEASE_NAME_ANNOTATION,
    OWNER_ANNOTATION,
    OWNER_TYPE_ANNOTATION,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class OwnerKey:
    """Owner identity decoded from the annotation pair."""

    namespace: str
    name: str
    kind: str
    api_group: str


# =============================================================================
# Stamping
# =============================================================================


def stamp_manifest(
    manifest: dict[str, Any],
    owner: OwnerReference,
    owner_namespace: str = "",
) -> dict[str, Any]:
    """Add ownership to a single rendered manifest in place.

    A manifest without ``metadata.namespace`` is cluster scoped and matches
    a cluster-scoped owner (``owner_namespace == ""``).

    Returns:
        The same manifest, for chaining.
    """
    metadata = manifest.setdefault("metadata", {})
    namespace = metadata.get("namespace") or ""
    if namespace == owner_namespace:
        refs = list(metadata.get("ownerReferences") or [])
        refs.append(owner.to_dict())
        metadata["ownerReferences"] = refs
    else:
        annotations = dict(metadata.get("annotations") or {})
        annotations[OWNER_TYPE_ANNOTATION] = f"{owner.kind}.{owner.api_group}"
        annotations[OWNER_ANNOTATION] = f"{owner_namespace}/{owner.name}"
        metadata["annotations"] = annotations
    return manifest


def post_render(rendered: str, owner: OwnerReference, owner_namespace: str = "") -> str:
    """Stamp every document of a rendered multi-document YAML stream.

    Empty documents (comments only) are dropped.
    """
    stamped = [
        stamp_manifest(doc, owner, owner_namespace)
        for doc in yaml.safe_load_all(rendered)
        if doc is not None
    ]
    return yaml.safe_dump_all(stamped, sort_keys=False, default_flow_style=False)


# =============================================================================
# Reverse lookup
# =============================================================================


def owner_from_annotations(annotations: dict[str, str] | None) -> OwnerKey | None:
    """Decode the ownership annotation pair, or None when absent or malformed."""
    if not annotations:
        return None
    resource = annotations.get(OWNER_ANNOTATION, "")
    resource_type = annotations.get(OWNER_TYPE_ANNOTATION, "")
    if not resource or not resource_type:
        return None

    name_parts = resource.split("/")
    type_parts = resource_type.split(".", 1)
    if len(name_parts) != 2 or len(type_parts) != 2:
        return None
    return OwnerKey(
        namespace=name_parts[0],
        name=name_parts[1],
        kind=type_parts[0],
        api_group=type_parts[1],
    )


class RevisionRequestMapper:
    """Map an arbitrary managed resource to the MeshRevisions that own it.

    Works on kubernetes SDK objects and on plain snake_case dicts.

    Args:
        cni_namespace: Namespace of the shared CNI release.
        cni_revisions: Returns the names of every revision with CNI enabled.
            CNI resources are shared, so a change to one of them concerns
            all of those revisions.
    """

    def __init__(self, cni_namespace: str, cni_revisions: Callable[[], Iterable[str]]) -> None:
        self._cni_namespace = cni_namespace
        self._cni_revisions = cni_revisions

    def map(self, obj: Any) -> list[str]:
        """Return the names of the revisions to reconcile, without duplicates."""
        requests: list[str] = []

        for ref in _safe_get(obj, "metadata", "owner_references", default=[]):
            api_version = _safe_get(ref, "api_version", default="")
            group = api_version.partition("/")[0] if "/" in api_version else ""
            if _safe_get(ref, "kind") == REVISION_KIND and group == MESH_GROUP:
                requests.append(_safe_get(ref, "name", default=""))

        annotations = _safe_get(obj, "metadata", "annotations", default={})
        owner = owner_from_annotations(annotations)
        if owner is not None and owner.kind == REVISION_KIND and owner.api_group == MESH_GROUP:
            requests.append(owner.name)

        namespace = _safe_get(obj, "metadata", "namespace", default="")
        if (
            namespace == self._cni_namespace
            and annotations.get(HELM_RELEASE_NAME_ANNOTATION) == CNI_RELEASE_NAME
        ):
            try:
                requests.extend(self._cni_revisions())
            except KubernetesError as e:
                logger.error("cni_revisions_list_failed", error=str(e))

        return list(dict.fromkeys(name for name in requests if name))


# =============================================================================
# Validating webhook updates
# =============================================================================

# istiod rewrites caBundle and failurePolicy on these configurations itself
ISTIOD_VALIDATOR_NAME = re.compile(r"istiod-.*-validator|istio-validator.*")

_VOLATILE_METADATA = (
    "resource_version",
    "resourceVersion",
    "generation",
    "managed_fields",
    "managedFields",
)
_VOLATILE_WEBHOOK = ("failure_policy", "failurePolicy")
_VOLATILE_CLIENT_CONFIG = ("ca_bundle", "caBundle")


def validator_fingerprint(obj: Any) -> dict[str, Any] | None:
    """Comparable form of an istiod validating webhook configuration.

    Two updates with equal fingerprints differ only in fields istiod manages,
    and reconciling on them would start an endless update loop. Returns None
    for every other configuration, whose updates always count.
    """
    if not ISTIOD_VALIDATOR_NAME.search(_safe_get(obj, "metadata", "name", default="")):
        return None

    doc = obj.to_dict() if hasattr(obj, "to_dict") else copy.deepcopy(obj)
    for key in _VOLATILE_METADATA:
        (doc.get("metadata") or {}).pop(key, None)
    for webhook in doc.get("webhooks") or []:
        for key in _VOLATILE_WEBHOOK:
            webhook.pop(key, None)
        for config_key in ("client_config", "clientConfig"):
            for key in _VOLATILE_CLIENT_CONFIG:
                (webhook.get(config_key) or {}).pop(key, None)
    return doc
