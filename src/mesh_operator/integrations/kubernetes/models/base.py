"""Base models shared by the operator's Kubernetes resources."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class K8sModel(BaseModel):
    """Base for models that round-trip through camelCase Kubernetes JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the camelCase JSON document the API server expects."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class OwnerReference(K8sModel):
    """Kubernetes owner reference."""

    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool | None = None
    block_owner_deletion: bool | None = None

    @property
    def api_group(self) -> str:
        """API group part of ``api_version`` ("" for the core group)."""
        group, sep, _ = self.api_version.partition("/")
        return group if sep else ""


class ObjectMeta(K8sModel):
    """Subset of Kubernetes object metadata used by the operator.

    Unknown metadata fields are preserved so that full-object updates
    do not drop them.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    name: str
    namespace: str | None = None
    uid: str | None = None
    generation: int | None = None
    resource_version: str | None = None
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None
    labels: dict[str, str] | None = None
    annotations: dict[str, str] | None = None
    finalizers: list[str] = Field(default_factory=list)
    owner_references: list[OwnerReference] = Field(default_factory=list)

    def controller_owner(self) -> OwnerReference | None:
        """Return the owner reference marked as controller, if any."""
        for ref in self.owner_references:
            if ref.controller:
                return ref
        return None

    def is_owned_by(self, uid: str | None) -> bool:
        """Whether any owner reference points at the given UID."""
        return uid is not None and any(ref.uid == uid for ref in self.owner_references)


def _safe_get(obj: Any, *keys: str, default: Any = None) -> Any:
    """Safely traverse nested keys or attributes of API objects.

    Works on both plain dicts (custom objects) and kubernetes SDK models.
    """
    current = obj
    for key in keys:
        if current is None:
            return default
        if isinstance(current, dict):
            current = current.get(key)
        else:
            current = getattr(current, key, None)
    return current if current is not None else default
