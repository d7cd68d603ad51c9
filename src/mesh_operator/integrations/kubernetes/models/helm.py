"""Data models for Helm operations.

Typed dataclasses for Helm releases and command results.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class ReleaseStatus(StrEnum):
    """Status of a release as recorded by helm."""

    UNKNOWN = "unknown"
    DEPLOYED = "deployed"
    UNINSTALLED = "uninstalled"
    SUPERSEDED = "superseded"
    FAILED = "failed"
    UNINSTALLING = "uninstalling"
    PENDING_INSTALL = "pending-install"
    PENDING_UPGRADE = "pending-upgrade"
    PENDING_ROLLBACK = "pending-rollback"

    @classmethod
    def parse(cls, value: str) -> ReleaseStatus:
        """Parse a helm status string, mapping anything unrecognized to UNKNOWN."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN


@dataclass
class HelmRelease:
    """A release as reported by ``helm list``."""

    name: str
    namespace: str
    revision: int
    status: ReleaseStatus
    chart: str = ""
    app_version: str = ""
    updated: str = ""

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> HelmRelease:
        """Create a HelmRelease from a ``helm list --output json`` entry."""
        return cls(
            name=str(data.get("name", "")),
            namespace=str(data.get("namespace", "")),
            revision=int(data.get("revision", 0)),
            status=ReleaseStatus.parse(str(data.get("status", ""))),
            chart=str(data.get("chart", "")),
            app_version=str(data.get("app_version", "")),
            updated=str(data.get("updated", "")),
        )


@dataclass
class HelmCommandResult:
    """Generic result from a Helm command."""

    success: bool
    stdout: str
    stderr: str = ""

    @property
    def output(self) -> str:
        """Return the primary output (stdout)."""
        return self.stdout


@dataclass
class UninstallResult:
    """Outcome of removing a release.

    ``found`` is False when the release was already absent, which is
    reported as success.
    """

    release_name: str
    namespace: str
    found: bool
    info: str = ""
