"""Helm release convergence.

Decides, from the recorded state of the previous release, whether a chart
is installed, upgraded, repaired first, or rejected:

============================================  ===============================
Previous release                               Action
============================================  ===============================
none                                           install
deployed                                       upgrade
pending-upgrade, or failed after revision 1    rollback, then upgrade
pending-install, or failed on revision 1       uninstall, then install
pending-rollback                               error (unrecoverable)
anything else                                  error (unexpected)
============================================  ===============================
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import structlog
import yaml

from mesh_operator.core.config.models import HelmSettings
from mesh_operator.integrations.kubernetes.helm_client import (
    HelmClient,
    HelmError,
    HelmReleaseStateError,
    PostRenderer,
)
from mesh_operator.integrations.kubernetes.models import (
    HelmRelease,
    OwnerReference,
    ReleaseStatus,
    UninstallResult,
)

logger = structlog.get_logger()

# Upgrades keep only the latest release revision
HISTORY_MAX = 1


class ChartManager:
    """Install, upgrade and remove chart releases owned by a resource."""

    def __init__(self, helm: HelmClient, settings: HelmSettings) -> None:
        self._helm = helm
        self._settings = settings
        self._log = logger.bind(entity="chart_manager")

    def converge(
        self,
        chart_dir: str | Path,
        values: dict[str, Any],
        namespace: str,
        release_name: str,
        owner: OwnerReference,
        owner_namespace: str = "",
    ) -> HelmRelease:
        """Bring a release to the given chart and values.

        Args:
            chart_dir: Local chart directory.
            values: Complete settings document for the chart.
            namespace: Namespace of the release.
            release_name: Name of the release.
            owner: Owner stamped on every rendered resource.
            owner_namespace: Namespace of the owner (``""`` when cluster scoped).

        Returns:
            The release as recorded after the operation.

        Raises:
            HelmReleaseStateError: If the previous release is in a state that
                cannot be repaired automatically.
            HelmError: If a helm command fails.
        """
        log = self._log.bind(release=release_name, namespace=namespace)
        release = self._helm.get_release(release_name, namespace=namespace)
        exists = self._prepare_release(release, release_name, namespace, log)

        post_renderer = self._post_renderer(owner, owner_namespace)
        with _values_file(values) as values_path:
            if exists:
                log.debug("performing_helm_upgrade", chart=str(chart_dir))
                self._helm.upgrade(
                    release_name,
                    str(chart_dir),
                    namespace=namespace,
                    values_files=[values_path],
                    post_renderer=post_renderer,
                    skip_crds=True,
                    history_max=HISTORY_MAX,
                    timeout=self._settings.timeout,
                )
            else:
                log.debug("performing_helm_install", chart=str(chart_dir))
                self._helm.install(
                    release_name,
                    str(chart_dir),
                    namespace=namespace,
                    values_files=[values_path],
                    post_renderer=post_renderer,
                    skip_crds=True,
                    timeout=self._settings.timeout,
                )

        converged = self._helm.get_release(release_name, namespace=namespace)
        if converged is None:
            raise HelmError(message=f"helm release {release_name} not found after converging")
        log.info("release_converged", status=str(converged.status), revision=converged.revision)
        return converged

    def remove(self, release_name: str, namespace: str) -> UninstallResult:
        """Uninstall a release; an absent release is reported, not raised."""
        release = self._helm.get_release(release_name, namespace=namespace)
        if release is None:
            self._log.debug("release_not_found", release=release_name, namespace=namespace)
            return UninstallResult(
                release_name=release_name,
                namespace=namespace,
                found=False,
                info="release not found",
            )

        result = self._helm.uninstall(
            release_name, namespace=namespace, timeout=self._settings.timeout
        )
        self._log.info("release_removed", release=release_name, namespace=namespace)
        return UninstallResult(
            release_name=release_name,
            namespace=namespace,
            found=True,
            info=result.stdout.strip(),
        )

    def _prepare_release(
        self,
        release: HelmRelease | None,
        release_name: str,
        namespace: str,
        log: Any,
    ) -> bool:
        """Repair or reject the previous release.

        Returns:
            True when the release should be upgraded, False when installed.
        """
        if release is None:
            return False

        status = release.status
        if status == ReleaseStatus.DEPLOYED:
            return True
        if status == ReleaseStatus.PENDING_UPGRADE or (
            status == ReleaseStatus.FAILED and release.revision > 1
        ):
            log.info("performing_helm_rollback", status=str(status), revision=release.revision)
            self._helm.rollback(release_name, namespace=namespace, timeout=self._settings.timeout)
            return True
        if status == ReleaseStatus.PENDING_INSTALL or (
            status == ReleaseStatus.FAILED and release.revision <= 1
        ):
            log.info("performing_helm_uninstall", status=str(status), revision=release.revision)
            self._helm.uninstall(release_name, namespace=namespace, timeout=self._settings.timeout)
            return False
        if status == ReleaseStatus.PENDING_ROLLBACK:
            raise HelmReleaseStateError(release_name, str(status), unrecoverable=True)
        raise HelmReleaseStateError(release_name, str(status), unrecoverable=False)

    def _post_renderer(self, owner: OwnerReference, owner_namespace: str) -> PostRenderer:
        args = [
            "post-render",
            "--owner-api-version",
            owner.api_version,
            "--owner-kind",
            owner.kind,
            "--owner-name",
            owner.name,
            "--owner-uid",
            owner.uid,
        ]
        if owner_namespace:
            args.extend(["--owner-namespace", owner_namespace])
        return PostRenderer(binary=self._settings.post_renderer, args=args)


@contextmanager
def _values_file(values: dict[str, Any]) -> Iterator[str]:
    """Write values to a temporary YAML file that is removed afterwards."""
    fd, path = tempfile.mkstemp(prefix="mesh-values-", suffix=".yaml")
    try:
        with os.fdopen(fd, "w") as f:
            yaml.safe_dump(dict(values), f, default_flow_style=False)
        yield path
    finally:
        os.unlink(path)
