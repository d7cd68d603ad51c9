"""Resolve-values command for previewing the settings handed to a revision."""

from __future__ import annotations

from pathlib import Path

import typer
import yaml
from rich.console import Console
from rich.syntax import Syntax

from mesh_operator.services.mesh import profiles
from mesh_operator.services.mesh.exceptions import ProfileError

console = Console()


def resolve_values(
    resource_dir: Path = typer.Option(
        ...,
        "--resource-dir",
        "-r",
        help="Root directory of the packaged versions.",
        file_okay=False,
    ),
    version: str = typer.Option(..., "--version", help="Packaged version to read profiles from."),
    profile: list[str] = typer.Option(
        ["default"],
        "--profile",
        "-p",
        help="Profile to apply, in order. Repeatable.",
    ),
    values_file: Path | None = typer.Option(
        None,
        "--values",
        "-f",
        help="YAML file with user settings applied after the profiles.",
        exists=True,
        dir_okay=False,
    ),
) -> None:
    """Print the settings document produced by merging profiles and user settings."""
    user_values = None
    if values_file is not None:
        try:
            user_values = yaml.safe_load(values_file.read_text())
        except yaml.YAMLError as e:
            console.print(f"[red]Invalid values file:[/red] {e}")
            raise typer.Exit(code=1) from e
        if user_values is not None and not isinstance(user_values, dict):
            console.print(f"[red]Values file {values_file} must contain a mapping[/red]")
            raise typer.Exit(code=1)

    try:
        resolved = profiles.resolve(resource_dir / version / "profiles", profile, user_values)
    except ProfileError as e:
        console.print(f"[red]Profile error:[/red] {e}")
        raise typer.Exit(code=1) from e

    document = yaml.safe_dump(resolved.to_dict(), sort_keys=False, default_flow_style=False)
    console.print(Syntax(document, "yaml"))
