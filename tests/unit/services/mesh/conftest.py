"""Shared fixtures for mesh reconciler tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from mesh_operator.core.config.models import OperatorConfig
from tests.fakes import FakeCharts, FakeClock, FakeStore


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> FakeStore:
    return FakeStore(clock)


@pytest.fixture
def charts() -> FakeCharts:
    return FakeCharts()


@pytest.fixture
def operator_config(resource_dir: Path) -> OperatorConfig:
    """Operator configuration pointing at the test resource directory."""
    return OperatorConfig(resource_directory=resource_dir, cni_namespace="istio-cni")
