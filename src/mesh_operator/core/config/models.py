"""Operator configuration models.

Configuration is read from an optional YAML file and then overridden by
``MESH_OPERATOR_*`` environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from mesh_operator.integrations.kubernetes.config import KubernetesConfig

DEFAULT_RESOURCE_DIRECTORY = "/var/lib/mesh-operator/resources"
ENV_PREFIX = "MESH_OPERATOR_"


class HelmSettings(BaseModel):
    """Settings for the helm binary used to converge releases."""

    model_config = ConfigDict(extra="forbid")

    binary_path: str | None = None
    driver: str = "secret"
    timeout: str = "5m0s"
    post_renderer: str = "mesh-operator"

    @field_validator("driver")
    @classmethod
    def validate_driver(cls, v: str) -> str:
        """Validate the release storage driver."""
        valid_drivers = {"secret", "configmap", "memory", "sql"}
        if v not in valid_drivers:
            raise ValueError(f"driver must be one of: {', '.join(sorted(valid_drivers))}")
        return v


class ControllerSettings(BaseModel):
    """Work queue and requeue tuning."""

    model_config = ConfigDict(extra="forbid")

    workers: int = 2
    conflict_requeue_seconds: float = 2.0
    not_ready_requeue_seconds: float = 10.0
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 300.0
    reconcile_timeout_seconds: int = 300

    @field_validator("workers")
    @classmethod
    def validate_workers(cls, v: int) -> int:
        """Validate at least one worker is configured."""
        if v < 1:
            raise ValueError("workers must be at least 1")
        return v

    @field_validator(
        "conflict_requeue_seconds",
        "not_ready_requeue_seconds",
        "backoff_base_seconds",
        "backoff_max_seconds",
    )
    @classmethod
    def validate_delay(cls, v: float) -> float:
        """Delays must be positive and sub-hour."""
        if v <= 0 or v > 3600:
            raise ValueError("delay must be in (0, 3600] seconds")
        return v


class OperatorConfig(BaseModel):
    """Complete operator configuration."""

    model_config = ConfigDict(extra="forbid")

    resource_directory: Path = Path(DEFAULT_RESOURCE_DIRECTORY)
    default_profiles: list[str] = Field(default_factory=lambda: ["default"])
    cni_namespace: str = "istio-cni"
    helm: HelmSettings = HelmSettings()
    kubernetes: KubernetesConfig = KubernetesConfig()
    controller: ControllerSettings = ControllerSettings()

    @field_validator("default_profiles")
    @classmethod
    def validate_default_profiles(cls, v: list[str]) -> list[str]:
        """Reject empty profile names early."""
        if any(not name for name in v):
            raise ValueError("default_profiles must not contain empty names")
        return v

    @classmethod
    def from_env(cls, base_config: dict[str, Any] | None = None) -> OperatorConfig:
        """Create configuration with environment variable overrides.

        Environment variables take precedence over base_config values.

        Supported environment variables:
            MESH_OPERATOR_RESOURCE_DIRECTORY: Root of versioned charts/profiles
            MESH_OPERATOR_DEFAULT_PROFILES: Comma-separated default profiles
            MESH_OPERATOR_CNI_NAMESPACE: Namespace for the shared CNI release
            MESH_OPERATOR_HELM_BINARY: Explicit helm binary path
            MESH_OPERATOR_HELM_DRIVER: Helm release storage driver
            MESH_OPERATOR_KUBECONFIG: Kubeconfig path
            MESH_OPERATOR_CONTEXT: Kubeconfig context
            MESH_OPERATOR_WORKERS: Worker threads per controller
        """
        config_dict: dict[str, Any] = {**base_config} if base_config else {}
        helm = dict(config_dict.get("helm") or {})
        kubernetes = dict(config_dict.get("kubernetes") or {})
        controller = dict(config_dict.get("controller") or {})

        if resource_directory := os.environ.get(f"{ENV_PREFIX}RESOURCE_DIRECTORY"):
            config_dict["resource_directory"] = resource_directory
        if profiles := os.environ.get(f"{ENV_PREFIX}DEFAULT_PROFILES"):
            config_dict["default_profiles"] = [p.strip() for p in profiles.split(",")]
        if cni_namespace := os.environ.get(f"{ENV_PREFIX}CNI_NAMESPACE"):
            config_dict["cni_namespace"] = cni_namespace

        if helm_binary := os.environ.get(f"{ENV_PREFIX}HELM_BINARY"):
            helm["binary_path"] = helm_binary
        if helm_driver := os.environ.get(f"{ENV_PREFIX}HELM_DRIVER"):
            helm["driver"] = helm_driver

        if kubeconfig := os.environ.get(f"{ENV_PREFIX}KUBECONFIG"):
            kubernetes["kubeconfig"] = kubeconfig
        if context := os.environ.get(f"{ENV_PREFIX}CONTEXT"):
            kubernetes["context"] = context

        if workers := os.environ.get(f"{ENV_PREFIX}WORKERS"):
            controller["workers"] = int(workers)

        config_dict["helm"] = helm
        config_dict["kubernetes"] = kubernetes
        config_dict["controller"] = controller
        return cls.model_validate(config_dict)

    def profiles_dir(self, version: str) -> Path:
        """Directory holding the profiles of a packaged version."""
        return self.resource_directory / version / "profiles"

    def chart_dir(self, version: str, chart: str) -> Path:
        """Directory holding one chart of a packaged version."""
        return self.resource_directory / version / "charts" / chart


def load_config(path: Path | None = None) -> OperatorConfig:
    """Load operator configuration from a YAML file plus environment.

    Args:
        path: Optional YAML file. A missing file is an error only when the
            path was given explicitly.

    Returns:
        Validated operator configuration.
    """
    base: dict[str, Any] = {}
    if path is not None:
        with path.open() as f:
            loaded = yaml.safe_load(f)
        if loaded is not None and not isinstance(loaded, dict):
            raise ValueError(f"configuration file {path} must contain a mapping")
        base = loaded or {}
    return OperatorConfig.from_env(base)
