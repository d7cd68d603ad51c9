"""Shared pytest fixtures for mesh_operator tests."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
import typer
from typer.testing import CliRunner

from mesh_operator.cli.main import app


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Typer CLI test runner."""
    return CliRunner()


@pytest.fixture
def cli_app() -> typer.Typer:
    """Return the CLI app for testing."""
    return app


@pytest.fixture(autouse=True)
def reset_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset environment variables for each test."""
    for key in list(os.environ.keys()):
        if key.startswith("MESH_OPERATOR_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def resource_dir(tmp_path: Path) -> Path:
    """Create a resource directory with one packaged version and its profiles."""
    profiles = tmp_path / "1.24.0" / "profiles"
    profiles.mkdir(parents=True)
    (profiles / "default.yaml").write_text(
        """
apiVersion: operator.mesh.io/v1alpha1
kind: Mesh
spec:
  values:
    pilot:
      replicas: 1
      env:
        PILOT_ENABLE_STATUS: "true"
    global:
      hub: docker.io/istio
"""
    )
    (profiles / "demo.yaml").write_text(
        """
spec:
  values:
    pilot:
      replicas: 2
    global:
      proxy:
        logLevel: debug
"""
    )
    (profiles / "empty.yaml").write_text("# nothing but a comment\n")
    (tmp_path / "1.24.0" / "charts" / "istiod").mkdir(parents=True)
    (tmp_path / "1.24.0" / "charts" / "cni").mkdir(parents=True)
    return tmp_path
