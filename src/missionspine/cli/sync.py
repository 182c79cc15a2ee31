"""
CLI: ``missionspine sync`` - incremental sync checkpoint commands.
"""

from __future__ import annotations

import asyncio

import typer

from missionspine.cli.utils import console, fail, output_json, output_table, resolve_data_dir
from missionspine.core.errors import StorageError
from missionspine.core.timestamps import to_iso8601
from missionspine.sync.store import FileSyncStore

app = typer.Typer(no_args_is_help=True)


def _store(mission: str, data_dir: str | None) -> FileSyncStore:
    return FileSyncStore(mission, resolve_data_dir(data_dir) / "sync")


@app.command("list")
def list_checkpoints(
    mission: str = typer.Argument(..., help="Mission name"),
    data_dir: str | None = typer.Option(None, "--data-dir"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List the sync checkpoints recorded for a mission."""
    try:
        checkpoints = asyncio.run(_store(mission, data_dir).list())
    except StorageError as e:
        fail(f"{e}. Run 'missionspine sync clear {mission}' to reset it.")
    if json_out:
        output_json([c.to_dict() for c in checkpoints])
        return
    output_table(
        [
            {
                "key": c.key,
                "synced_at": to_iso8601(c.synced_at),
                "records": c.record_count,
                "execution_id": c.execution_id,
            }
            for c in checkpoints
        ],
        title=f"Sync checkpoints: {mission}",
    )


@app.command("clear")
def clear_checkpoints(
    mission: str = typer.Argument(..., help="Mission name"),
    key: str | None = typer.Option(None, "--key", "-k", help="Clear only this checkpoint"),
    data_dir: str | None = typer.Option(None, "--data-dir"),
) -> None:
    """Clear sync checkpoints so the next run fetches everything again."""
    store = _store(mission, data_dir)
    if key:
        try:
            checkpoint = asyncio.run(store.get_checkpoint(key))
        except StorageError as e:
            fail(str(e))
        if checkpoint is None:
            fail(f"Checkpoint not found: {key}")
        asyncio.run(store.clear(key))
        console.print(f"[green]Cleared[/green] {key}")
        return
    asyncio.run(store.clear_all())
    console.print(f"[green]Cleared[/green] all checkpoints for {mission}")
