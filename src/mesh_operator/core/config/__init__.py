"""Configuration management with Pydantic validation."""

from mesh_operator.core.config.models import (
    ControllerSettings,
    HelmSettings,
    OperatorConfig,
    load_config,
)

__all__ = [
    "ControllerSettings",
    "HelmSettings",
    "OperatorConfig",
    "load_config",
]
