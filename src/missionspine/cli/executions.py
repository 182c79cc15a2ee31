"""
CLI: ``missionspine executions`` - persisted execution state commands.
"""

from __future__ import annotations

import asyncio

import typer

from missionspine.cli.utils import console, fail, output_dict, output_json, output_table, resolve_data_dir
from missionspine.execution.state import ExecutionState, get_execution_summary, get_progress
from missionspine.execution.store import FileExecutionStore

app = typer.Typer(no_args_is_help=True)


def _store(data_dir: str | None) -> FileExecutionStore:
    return FileExecutionStore(resolve_data_dir(data_dir) / "executions")


def _row(state: ExecutionState) -> dict[str, object]:
    return {
        "id": state.id,
        "mission": state.mission,
        "status": state.status.value,
        "progress": f"{get_progress(state)}%",
        "started_at": state.started_at.isoformat(timespec="seconds"),
        "duration_ms": state.duration_ms,
    }


@app.command("list")
def list_executions(
    mission: str | None = typer.Option(None, "--mission", "-m", help="Only this mission"),
    limit: int = typer.Option(20, "--limit", "-n"),
    data_dir: str | None = typer.Option(None, "--data-dir"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List recent executions, newest first."""
    store = _store(data_dir)
    if mission:
        states = asyncio.run(store.list_by_mission(mission))[:limit]
    else:
        states = asyncio.run(store.list_recent(limit))

    if json_out:
        output_json([s.to_dict() for s in states])
        return
    output_table([_row(s) for s in states], title="Executions")


@app.command("show")
def show_execution(
    execution_id: str = typer.Argument(..., help="Execution ID"),
    data_dir: str | None = typer.Option(None, "--data-dir"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show one execution with per-stage status."""
    state = asyncio.run(_store(data_dir).load(execution_id))
    if state is None:
        fail(f"Execution not found: {execution_id}")

    if json_out:
        output_json(state.to_dict())
        return

    console.print(get_execution_summary(state))
    output_table(
        [
            {
                "#": i,
                "stage": s.action,
                "status": s.status.value,
                "attempt": s.attempt,
                "items": f"{s.items_processed}/{s.items_total}" if s.items_total is not None else None,
                "error": s.error,
            }
            for i, s in enumerate(state.stages)
        ],
        title=f"Execution: {execution_id}",
    )
    if state.checkpoint is not None:
        output_dict(state.checkpoint.to_dict(), title="Checkpoint")


@app.command("resumable")
def resumable(
    mission: str = typer.Argument(..., help="Mission name"),
    data_dir: str | None = typer.Option(None, "--data-dir"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List failed or paused executions of a mission that can be resumed."""
    states = asyncio.run(_store(data_dir).find_resumable(mission))
    if json_out:
        output_json([s.to_dict() for s in states])
        return
    output_table([_row(s) for s in states], title=f"Resumable: {mission}")


@app.command("delete")
def delete_execution(
    execution_id: str = typer.Argument(..., help="Execution ID"),
    data_dir: str | None = typer.Option(None, "--data-dir"),
) -> None:
    """Delete a persisted execution state."""
    store = _store(data_dir)
    if asyncio.run(store.load(execution_id)) is None:
        fail(f"Execution not found: {execution_id}")
    asyncio.run(store.delete(execution_id))
    console.print(f"[green]Deleted[/green] {execution_id}")
