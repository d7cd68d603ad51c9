"""Subprocess wrapper around the helm CLI.

Only the release lifecycle is covered: install, upgrade, rollback,
uninstall and lookup. Charts are always local directories, so there is
no repository handling.
"""

from __future__ import annotations

import json
import os
import re
import shutil
import subprocess
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from mesh_operator.integrations.kubernetes.exceptions import KubernetesError
from mesh_operator.integrations.kubernetes.models.helm import (
    HelmCommandResult,
    HelmRelease,
)

logger = structlog.get_logger()

# Upper bound for a whole helm invocation, in seconds
HELM_TIMEOUT_SECONDS = 600

# Bound for the quick read-only commands
QUERY_TIMEOUT_SECONDS = 30

INSTALL_DOCS = "https://helm.sh/docs/intro/install/"


class HelmError(KubernetesError):
    """A helm invocation failed; ``stderr`` holds its output when there was any."""

    def __init__(self, message: str, stderr: str | None = None) -> None:
        super().__init__(message=message)
        self.stderr = stderr


class HelmBinaryNotFoundError(HelmError):
    def __init__(self, location: str = "PATH") -> None:
        super().__init__(f"helm binary not found in {location}. Install from: {INSTALL_DOCS}")


class HelmCommandError(HelmError):
    """helm exited non-zero."""


class HelmReleaseStateError(HelmError):
    """The release is in a state the chart manager cannot act on.

    ``unrecoverable`` marks pending-rollback releases; anything else
    raising this is a status the decision table does not know.
    """

    def __init__(self, release_name: str, status: str, *, unrecoverable: bool) -> None:
        qualifier = "unrecoverable" if unrecoverable else "unexpected"
        super().__init__(f"{qualifier} helm release status {status} for release {release_name}")
        self.release_name = release_name
        self.status = status
        self.unrecoverable = unrecoverable


@dataclass
class PostRenderer:
    """Executable that helm pipes rendered manifests through before applying them."""

    binary: str
    args: list[str] = field(default_factory=list)

    def to_args(self) -> list[str]:
        flags = ["--post-renderer", self.binary]
        for arg in self.args:
            flags += ["--post-renderer-args", arg]
        return flags


def _option(flag: str, value: object | None) -> list[str]:
    """``[flag, value]``, or nothing when the value is unset."""
    if value is None or value == "":
        return []
    return [flag, str(value)]


def _repeated(flag: str, values: Iterable[str] | None) -> Iterator[str]:
    for value in values or ():
        yield flag
        yield value


def locate_helm(binary_path: str | None = None) -> str:
    """Resolve the helm executable, from ``binary_path`` or the PATH.

    Raises:
        HelmBinaryNotFoundError: The binary does not exist.
    """
    if not binary_path:
        found = shutil.which("helm")
        if found is None:
            raise HelmBinaryNotFoundError()
        return found
    path = Path(binary_path)
    if not path.exists():
        raise HelmBinaryNotFoundError(binary_path)
    return str(path.resolve())


class HelmClient:
    """Runs helm commands and parses their output.

    Args:
        binary_path: Explicit helm executable; the PATH is searched when unset.
        driver: Release storage driver, exported as ``HELM_DRIVER``.
        command_timeout: Seconds after which a running helm process is killed.
    """

    def __init__(
        self,
        binary_path: str | None = None,
        driver: str | None = None,
        command_timeout: int = HELM_TIMEOUT_SECONDS,
    ) -> None:
        self._binary = locate_helm(binary_path)
        self._env = {**os.environ, "HELM_DRIVER": driver} if driver else None
        self._command_timeout = command_timeout
        self._log = logger.bind(binary=self._binary)

    def _run(self, *args: str, timeout: int | None = None) -> subprocess.CompletedProcess[str]:
        """Run ``helm <args>`` and return the finished process.

        Raises:
            HelmCommandError: helm exited non-zero.
            HelmError: The process outlived its timeout and was killed.
        """
        limit = timeout or self._command_timeout
        self._log.debug("running_helm_command", args=list(args))
        try:
            return subprocess.run(
                [self._binary, *args],
                capture_output=True,
                text=True,
                check=True,
                timeout=limit,
                env=self._env,
            )
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or "").strip() or f"exit code {e.returncode}"
            raise HelmCommandError(f"Helm command failed: {detail}", stderr=e.stderr) from e
        except subprocess.TimeoutExpired as e:
            raise HelmError(f"Helm command {args[0]} timed out after {limit}s") from e

    def _release_command(self, verb: str, release_name: str, *args: str) -> HelmCommandResult:
        proc = self._run(verb, release_name, *args)
        self._log.info(f"helm_{verb}_success", release=release_name)
        return HelmCommandResult(success=True, stdout=proc.stdout, stderr=proc.stderr)

    def get_version(self) -> str:
        """Client version without build metadata, e.g. ``v3.17.0``."""
        proc = self._run("version", "--short", timeout=QUERY_TIMEOUT_SECONDS)
        return proc.stdout.strip().partition("+")[0]

    def install(
        self,
        release_name: str,
        chart: str,
        *,
        namespace: str,
        values_files: list[str] | None = None,
        post_renderer: PostRenderer | None = None,
        skip_crds: bool = False,
        timeout: str | None = None,
    ) -> HelmCommandResult:
        """``helm install`` a chart directory as a new release.

        ``timeout`` is helm's own ``--timeout`` duration (e.g. ``5m0s``),
        distinct from the process timeout.
        """
        return self._release_command(
            "install",
            release_name,
            chart,
            *self._render_args(namespace, values_files, post_renderer, skip_crds, timeout),
        )

    def upgrade(
        self,
        release_name: str,
        chart: str,
        *,
        namespace: str,
        values_files: list[str] | None = None,
        post_renderer: PostRenderer | None = None,
        skip_crds: bool = False,
        history_max: int | None = None,
        timeout: str | None = None,
    ) -> HelmCommandResult:
        """``helm upgrade`` an existing release.

        Values from earlier revisions are discarded (``--reset-values``); the
        given values files are the complete configuration.
        """
        return self._release_command(
            "upgrade",
            release_name,
            chart,
            *self._render_args(namespace, values_files, post_renderer, skip_crds, timeout),
            "--reset-values",
            *_option("--history-max", history_max),
        )

    def rollback(
        self,
        release_name: str,
        revision: int | None = None,
        *,
        namespace: str,
        timeout: str | None = None,
    ) -> HelmCommandResult:
        """Roll back to ``revision``, or to the previous one when unset."""
        target = [str(revision)] if revision is not None else []
        return self._release_command(
            "rollback",
            release_name,
            *target,
            "--namespace",
            namespace,
            *_option("--timeout", timeout),
        )

    def uninstall(
        self,
        release_name: str,
        *,
        namespace: str,
        timeout: str | None = None,
    ) -> HelmCommandResult:
        return self._release_command(
            "uninstall", release_name, "--namespace", namespace, *_option("--timeout", timeout)
        )

    def list_releases(
        self,
        *,
        namespace: str,
        all_releases: bool = False,
        filter_pattern: str | None = None,
    ) -> list[HelmRelease]:
        """Releases in ``namespace``.

        Args:
            namespace: Namespace to look in.
            all_releases: Include every state, not just deployed and failed.
            filter_pattern: Regex the release names must match.
        """
        args = ["list", "--output", "json", "--namespace", namespace]
        if all_releases:
            args.append("--all")
        args += _option("--filter", filter_pattern)

        out = self._run(*args, timeout=QUERY_TIMEOUT_SECONDS).stdout.strip()
        return [HelmRelease.from_json(entry) for entry in json.loads(out or "[]")]

    def get_release(self, release_name: str, *, namespace: str) -> HelmRelease | None:
        """The named release in any state, or None when helm has no record of it."""
        matches = self.list_releases(
            namespace=namespace,
            all_releases=True,
            filter_pattern=f"^{re.escape(release_name)}$",
        )
        return next((r for r in matches if r.name == release_name), None)

    @staticmethod
    def _render_args(
        namespace: str,
        values_files: list[str] | None,
        post_renderer: PostRenderer | None,
        skip_crds: bool,
        timeout: str | None,
    ) -> list[str]:
        """Flags install and upgrade share, in the order helm documents them."""
        args = ["--namespace", namespace, *_repeated("--values", values_files)]
        if post_renderer is not None:
            args += post_renderer.to_args()
        if skip_crds:
            args.append("--skip-crds")
        return args + _option("--timeout", timeout)
