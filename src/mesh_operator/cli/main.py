"""Typer application behind the ``mesh-operator`` command."""

from __future__ import annotations

import typer
from rich.console import Console

from mesh_operator import __version__
from mesh_operator.cli.commands import post_render, run, values
from mesh_operator.logging.config import configure_logging

app = typer.Typer(
    name="mesh-operator",
    help="Operator that installs and upgrades service mesh control planes.",
    add_completion=False,
)

console = Console()


def _print_version(value: bool) -> None:
    if value:
        console.print(f"mesh-operator version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=_print_version,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log at INFO.",
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Log at DEBUG with locals in tracebacks.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Write logs as JSON lines.",
    ),
) -> None:
    """Mesh operator - reconcile Mesh and MeshRevision resources."""
    configure_logging(verbose=verbose, debug=debug, json_output=json_logs)


app.command("run")(run.run)
app.command("post-render")(post_render.post_render)
app.command("resolve-values")(values.resolve_values)


if __name__ == "__main__":
    app()
