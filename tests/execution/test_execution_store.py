"""Tests for execution state persistence."""

import asyncio
import json

import pytest

from missionspine.core.errors import StorageError
from missionspine.execution.state import ExecutionStatus, StageStatus, create_execution_state, update_stage_state
from missionspine.execution.store import FileExecutionStore, MemoryExecutionStore


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryExecutionStore()
    return FileExecutionStore(tmp_path / "executions")


class TestExecutionStoreContract:
    @pytest.mark.asyncio
    async def test_save_and_load(self, store):
        """A saved state loads back equal in content."""
        state = create_execution_state("m", ["a", "b"])
        update_stage_state(state, 0, StageStatus.COMPLETED)
        await store.save(state)

        loaded = await store.load(state.id)
        assert loaded.to_dict() == state.to_dict()

    @pytest.mark.asyncio
    async def test_load_missing(self, store):
        """Unknown ids load as None."""
        assert await store.load("exec_missing") is None

    @pytest.mark.asyncio
    async def test_loaded_copy_is_isolated(self, store):
        """Mutating a loaded state does not touch the stored copy."""
        state = create_execution_state("m", ["a"])
        await store.save(state)

        loaded = await store.load(state.id)
        loaded.stages[0].status = StageStatus.FAILED
        again = await store.load(state.id)
        assert again.stages[0].status == StageStatus.PENDING

    @pytest.mark.asyncio
    async def test_list_recent_newest_first(self, store):
        """list_recent sorts by started_at descending and honours limit."""
        states = [create_execution_state("m", ["a"]) for _ in range(3)]
        for offset, state in enumerate(states):
            state.started_at = state.started_at.replace(year=2020 + offset)
            await store.save(state)

        recent = await store.list_recent(limit=2)
        assert [s.id for s in recent] == [states[2].id, states[1].id]

    @pytest.mark.asyncio
    async def test_by_mission_latest_and_resumable(self, store):
        """Mission queries filter by name and resumable status."""
        done = create_execution_state("orders", ["a"])
        done.status = ExecutionStatus.COMPLETED
        failed = create_execution_state("orders", ["a"])
        failed.status = ExecutionStatus.FAILED
        failed.started_at = done.started_at.replace(year=done.started_at.year + 1)
        other = create_execution_state("users", ["a"])
        other.status = ExecutionStatus.PAUSED
        for state in (done, failed, other):
            await store.save(state)

        assert {s.id for s in await store.list_by_mission("orders")} == {done.id, failed.id}
        assert (await store.find_latest("orders")).id == failed.id
        assert [s.id for s in await store.find_resumable("orders")] == [failed.id]
        assert [s.id for s in await store.find_resumable("users")] == [other.id]

    @pytest.mark.asyncio
    async def test_delete(self, store):
        """Deleted states are gone; deleting twice is harmless."""
        state = create_execution_state("m", ["a"])
        await store.save(state)
        await store.delete(state.id)
        await store.delete(state.id)
        assert await store.load(state.id) is None


class TestFileExecutionStore:
    @pytest.mark.asyncio
    async def test_one_document_per_execution(self, tmp_path):
        """Each execution is a JSON file named after its id, with ISO dates."""
        store = FileExecutionStore(tmp_path)
        state = create_execution_state("m", ["a"])
        await store.save(state)

        document = json.loads((tmp_path / f"{state.id}.json").read_text())
        assert document["mission"] == "m"
        assert document["started_at"] == state.started_at.isoformat()

    @pytest.mark.asyncio
    async def test_corrupt_document_raises_on_load(self, tmp_path):
        """A corrupt document is a StorageError on load and skipped in listings."""
        store = FileExecutionStore(tmp_path)
        (tmp_path / "exec_bad.json").write_text("{not json")
        with pytest.raises(StorageError):
            await store.load("exec_bad")
        assert await store.list_recent() == []

    @pytest.mark.asyncio
    async def test_save_snapshots_before_writing(self, tmp_path, monkeypatch):
        """The document reflects the state at save time, not later mutations."""
        store = FileExecutionStore(tmp_path)
        state = create_execution_state("m", ["a"])
        state.status = ExecutionStatus.RUNNING
        run_in_thread = asyncio.to_thread

        async def mutate_then_write(func, *args):
            state.status = ExecutionStatus.FAILED
            update_stage_state(state, 0, StageStatus.FAILED, "late")
            return await run_in_thread(func, *args)

        monkeypatch.setattr(asyncio, "to_thread", mutate_then_write)
        await store.save(state)
        monkeypatch.undo()

        loaded = await store.load(state.id)
        assert loaded.status == ExecutionStatus.RUNNING
        assert loaded.stages[0].status == StageStatus.PENDING
