"""Run command for starting the controllers."""

from __future__ import annotations

import signal
import threading
from pathlib import Path
from types import FrameType

import structlog
import typer
from pydantic import ValidationError
from rich.console import Console

from mesh_operator.controller.manager import ControllerManager
from mesh_operator.core.config.models import load_config
from mesh_operator.integrations.kubernetes.client import KubernetesClient
from mesh_operator.integrations.kubernetes.exceptions import KubernetesError
from mesh_operator.integrations.kubernetes.helm_client import HelmClient

console = Console(stderr=True)
logger = structlog.get_logger()


def run(
    config_file: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Operator configuration file (YAML).",
        exists=True,
        dir_okay=False,
    ),
) -> None:
    """Start the Mesh and MeshRevision controllers and block until signalled."""
    try:
        config = load_config(config_file)
    except (OSError, ValueError, ValidationError) as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(code=1) from e

    try:
        client = KubernetesClient(config.kubernetes)
        helm = HelmClient(
            binary_path=config.helm.binary_path,
            driver=config.helm.driver,
            command_timeout=config.controller.reconcile_timeout_seconds,
        )
    except KubernetesError as e:
        console.print(f"[red]Startup failed:[/red] {e}")
        raise typer.Exit(code=1) from e

    logger.info(
        "operator_starting",
        resource_directory=str(config.resource_directory),
        cni_namespace=config.cni_namespace,
        helm_version=helm.get_version(),
    )

    stop = threading.Event()

    def _handle_signal(signum: int, frame: FrameType | None) -> None:
        logger.info("shutdown_requested", signal=signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    with client:
        ControllerManager(config, client, helm).run(stop)
