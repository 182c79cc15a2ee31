"""
Root Typer application for the mission-spine CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from missionspine.core.logging import configure_logging
from missionspine.core.settings import get_settings

app = Typer(
    name="missionspine",
    help="mission-spine: inspect mission executions and sync checkpoints.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from missionspine import __version__

        typer.echo(f"missionspine {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """mission-spine CLI: executions and sync checkpoints."""
    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=False if settings.debug else None)


# ── Sub-command registration ─────────────────────────────────────────────

from missionspine.cli.executions import app as executions_app  # noqa: E402
from missionspine.cli.sync import app as sync_app  # noqa: E402

app.add_typer(executions_app, name="executions", help="Persisted execution states.")
app.add_typer(sync_app, name="sync", help="Incremental sync checkpoints.")
