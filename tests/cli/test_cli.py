"""Tests for the missionspine CLI."""

import asyncio
import json

import pytest
from typer.testing import CliRunner

from missionspine import __version__
from missionspine.cli.app import app
from missionspine.core.timestamps import utc_now
from missionspine.execution.state import ExecutionStatus, StageStatus, create_execution_state
from missionspine.execution.store import FileExecutionStore
from missionspine.sync.checkpoints import SyncCheckpoint
from missionspine.sync.store import FileSyncStore

runner = CliRunner()


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "cli-data"


@pytest.fixture
def saved_states(data_dir):
    store = FileExecutionStore(data_dir / "executions")
    done = create_execution_state("orders", ["fetch", "store"])
    done.status = ExecutionStatus.COMPLETED
    failed = create_execution_state("orders", ["fetch", "store"])
    failed.status = ExecutionStatus.FAILED
    failed.stages[0].status = StageStatus.COMPLETED
    failed.stages[1].status = StageStatus.FAILED
    failed.stages[1].error = "HTTP 500"
    other = create_execution_state("users", ["sync"])

    async def save_all():
        for state in (done, failed, other):
            await store.save(state)

    asyncio.run(save_all())
    return {"done": done, "failed": failed, "other": other}


def invoke(*args):
    return runner.invoke(app, list(args))


class TestRoot:
    def test_version(self):
        """--version prints the package version."""
        result = invoke("--version")
        assert result.exit_code == 0
        assert f"missionspine {__version__}" in result.stdout

    def test_help_lists_groups(self):
        """The root help lists the command groups."""
        result = invoke("--help")
        assert result.exit_code == 0
        assert "executions" in result.stdout
        assert "sync" in result.stdout


class TestExecutions:
    def test_list_json(self, data_dir, saved_states):
        """list --json returns every saved execution."""
        result = invoke("executions", "list", "--data-dir", str(data_dir), "--json")
        assert result.exit_code == 0
        ids = {row["id"] for row in json.loads(result.stdout)}
        assert ids == {s.id for s in saved_states.values()}

    def test_list_by_mission(self, data_dir, saved_states):
        """--mission filters by mission name."""
        result = invoke("executions", "list", "-m", "users", "--data-dir", str(data_dir), "--json")
        assert [row["mission"] for row in json.loads(result.stdout)] == ["users"]

    def test_list_table(self, data_dir, saved_states):
        """The default output is a table."""
        result = invoke("executions", "list", "--data-dir", str(data_dir))
        assert result.exit_code == 0
        assert "Executions" in result.stdout

    def test_list_empty(self, data_dir):
        """An empty store prints a placeholder."""
        result = invoke("executions", "list", "--data-dir", str(data_dir))
        assert result.exit_code == 0
        assert "No items" in result.stdout

    def test_show(self, data_dir, saved_states):
        """show --json returns the full state."""
        failed = saved_states["failed"]
        result = invoke("executions", "show", failed.id, "--data-dir", str(data_dir), "--json")
        assert result.exit_code == 0
        payload = json.loads(result.stdout)
        assert payload["status"] == "failed"
        assert payload["stages"][1]["error"] == "HTTP 500"

    def test_show_missing(self, data_dir):
        """Unknown ids exit with an error."""
        result = invoke("executions", "show", "exec_nope", "--data-dir", str(data_dir))
        assert result.exit_code == 1

    def test_resumable(self, data_dir, saved_states):
        """Only failed or paused runs are resumable."""
        result = invoke("executions", "resumable", "orders", "--data-dir", str(data_dir), "--json")
        assert [row["id"] for row in json.loads(result.stdout)] == [saved_states["failed"].id]

    def test_delete(self, data_dir, saved_states):
        """delete removes the state file."""
        target = saved_states["done"].id
        result = invoke("executions", "delete", target, "--data-dir", str(data_dir))
        assert result.exit_code == 0
        assert not (data_dir / "executions" / f"{target}.json").exists()

        again = invoke("executions", "delete", target, "--data-dir", str(data_dir))
        assert again.exit_code == 1


class TestSync:
    @pytest.fixture
    def checkpoints(self, data_dir):
        store = FileSyncStore("orders", data_dir / "sync")

        async def seed():
            await store.record_sync(SyncCheckpoint(key="api:/orders", synced_at=utc_now(), record_count=3))
            await store.record_sync(SyncCheckpoint(key="api:/refunds", synced_at=utc_now(), record_count=0))

        asyncio.run(seed())
        return store

    def test_list(self, data_dir, checkpoints):
        """list --json shows every checkpoint of the mission."""
        result = invoke("sync", "list", "orders", "--data-dir", str(data_dir), "--json")
        assert result.exit_code == 0
        assert sorted(row["key"] for row in json.loads(result.stdout)) == ["api:/orders", "api:/refunds"]

    def test_clear_one(self, data_dir, checkpoints):
        """--key clears a single checkpoint."""
        result = invoke("sync", "clear", "orders", "--key", "api:/orders", "--data-dir", str(data_dir))
        assert result.exit_code == 0
        remaining = json.loads((data_dir / "sync" / "orders.json").read_text())
        assert list(remaining) == ["api:/refunds"]

    def test_clear_unknown_key(self, data_dir, checkpoints):
        """Clearing an unknown key is an error."""
        result = invoke("sync", "clear", "orders", "-k", "api:/nope", "--data-dir", str(data_dir))
        assert result.exit_code == 1

    def test_clear_all(self, data_dir, checkpoints):
        """Without --key every checkpoint is cleared."""
        result = invoke("sync", "clear", "orders", "--data-dir", str(data_dir))
        assert result.exit_code == 0
        assert json.loads((data_dir / "sync" / "orders.json").read_text()) == {}

    def test_corrupt_file_and_reset(self, data_dir):
        """A corrupt sync file is reported, and clear resets it."""
        path = data_dir / "sync" / "orders.json"
        path.parent.mkdir(parents=True)
        path.write_text("[broken")

        listed = invoke("sync", "list", "orders", "--data-dir", str(data_dir))
        assert listed.exit_code == 1
        assert path.read_text() == "[broken"

        cleared = invoke("sync", "clear", "orders", "--data-dir", str(data_dir))
        assert cleared.exit_code == 0
        assert json.loads(path.read_text()) == {}
