"""Helm post-renderer that stamps ownership onto rendered manifests."""

from __future__ import annotations

import sys

import typer
import yaml
from rich.console import Console

from mesh_operator.integrations.kubernetes.models import OwnerReference
from mesh_operator.services.mesh.ownership import post_render as stamp_stream

console = Console(stderr=True)


def post_render(
    owner_api_version: str = typer.Option(..., "--owner-api-version"),
    owner_kind: str = typer.Option(..., "--owner-kind"),
    owner_name: str = typer.Option(..., "--owner-name"),
    owner_uid: str = typer.Option(..., "--owner-uid"),
    owner_namespace: str = typer.Option("", "--owner-namespace"),
) -> None:
    """Read manifests from stdin and write them to stdout with ownership added."""
    owner = OwnerReference(
        api_version=owner_api_version,
        kind=owner_kind,
        name=owner_name,
        uid=owner_uid,
        controller=True,
        block_owner_deletion=True,
    )
    try:
        output = stamp_stream(sys.stdin.read(), owner, owner_namespace)
    except yaml.YAMLError as e:
        console.print(f"[red]Cannot parse rendered manifests:[/red] {e}")
        raise typer.Exit(code=1) from e
    sys.stdout.write(output)
