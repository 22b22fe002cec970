"""
Root Typer application for the isx-spine CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from isx_spine import __version__
from isx_spine.cli.serve import serve
from isx_spine.cli.utils import print_json, print_table

app = Typer(
    name="isx-spine",
    help="isx-spine: operation orchestration engine for the ISX data pipeline.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"isx-spine {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """isx-spine CLI: serve the engine and inspect its step catalog."""


# ── Commands ─────────────────────────────────────────────────────────────


app.command("serve")(serve)


@app.command("types")
def types(
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List operation types (templates and single steps)."""
    from isx_spine.core.settings import get_settings
    from isx_spine.operations.catalog import register_builtin_steps
    from isx_spine.operations.registry import StepRegistry

    registry = register_builtin_steps(StepRegistry(), get_settings().executable_dir)
    rows = [t.to_dict() for t in registry.templates()]
    rows += [
        {
            "id": d.type,
            "name": d.name,
            "description": d.description,
            "category": "step",
            "steps": [d.type],
        }
        for d in registry.definitions()
    ]
    if as_json:
        print_json(rows)
        return
    print_table(rows, title="Operation types", columns=["id", "name", "category", "steps", "description"])


@app.command("version")
def version() -> None:
    """Show the installed version."""
    typer.echo(f"isx-spine {__version__}")
