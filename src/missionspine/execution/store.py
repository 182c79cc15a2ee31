"""
Execution state stores.

``ExecutionStore`` is the persistence contract the executor relies on for
resumability. Two implementations ship:

- ``FileExecutionStore``: one ``<id>.json`` document per execution under a
  base directory (``<data_dir>/executions`` by default). Datetimes are
  written as ISO-8601 and parsed back into aware datetimes on load.
- ``MemoryExecutionStore``: dict of serialized documents. Saving and loading
  both go through ``to_dict``/``from_dict`` so callers never share objects
  with the store.

Listing methods return newest-first by ``started_at``.

Examples:
    >>> store = MemoryExecutionStore()
    >>> await store.save(state)
    >>> loaded = await store.load(state.id)
    >>> loaded is state
    False
"""

from __future__ import annotations

import asyncio
import copy
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from missionspine.core.errors import StorageError
from missionspine.core.logging import get_logger
from missionspine.execution.state import RESUMABLE_STATUSES, ExecutionState

logger = get_logger(__name__)

DEFAULT_LIST_LIMIT = 50


class ExecutionStore(ABC):
    """Persistence contract for ``ExecutionState``."""

    @abstractmethod
    async def save(self, state: ExecutionState) -> None: ...

    @abstractmethod
    async def load(self, execution_id: str) -> ExecutionState | None: ...

    @abstractmethod
    async def list_recent(self, limit: int = DEFAULT_LIST_LIMIT) -> list[ExecutionState]: ...

    @abstractmethod
    async def delete(self, execution_id: str) -> None: ...

    async def list_by_mission(self, mission: str) -> list[ExecutionState]:
        states = await self.list_recent(limit=0)
        return [s for s in states if s.mission == mission]

    async def find_latest(self, mission: str) -> ExecutionState | None:
        states = await self.list_by_mission(mission)
        return states[0] if states else None

    async def find_resumable(self, mission: str) -> list[ExecutionState]:
        states = await self.list_by_mission(mission)
        return [s for s in states if s.status in RESUMABLE_STATUSES]


def _newest_first(states: list[ExecutionState], limit: int) -> list[ExecutionState]:
    states.sort(key=lambda s: s.started_at, reverse=True)
    return states[:limit] if limit > 0 else states


class FileExecutionStore(ExecutionStore):
    """JSON-file store, one document per execution id.

    Args:
        base_dir: Directory holding ``<id>.json`` files (created on first write)
    """

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)

    def _path(self, execution_id: str) -> Path:
        return self.base_dir / f"{execution_id}.json"

    def _write(self, execution_id: str, document: str) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(execution_id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(document, encoding="utf-8")
        os.replace(tmp, path)

    def _read(self, path: Path) -> ExecutionState | None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read execution state {path.name}", cause=e) from e
        return ExecutionState.from_dict(data)

    async def save(self, state: ExecutionState) -> None:
        # serialize on the loop; sibling actions keep mutating the state
        document = json.dumps(state.to_dict(), indent=2, default=str)
        try:
            await asyncio.to_thread(self._write, state.id, document)
        except OSError as e:
            raise StorageError(f"Cannot save execution state {state.id}", cause=e) from e

    async def load(self, execution_id: str) -> ExecutionState | None:
        return await asyncio.to_thread(self._read, self._path(execution_id))

    def _read_all(self) -> list[ExecutionState]:
        if not self.base_dir.exists():
            return []
        states = []
        for path in sorted(self.base_dir.glob("*.json")):
            try:
                state = self._read(path)
            except (StorageError, KeyError, ValueError) as e:
                logger.warning("execution_store.unreadable", file=str(path), error=str(e))
                continue
            if state is not None:
                states.append(state)
        return states

    async def list_recent(self, limit: int = DEFAULT_LIST_LIMIT) -> list[ExecutionState]:
        states = await asyncio.to_thread(self._read_all)
        return _newest_first(states, limit)

    async def delete(self, execution_id: str) -> None:
        await asyncio.to_thread(self._path(execution_id).unlink, True)


class MemoryExecutionStore(ExecutionStore):
    """In-memory store for tests and dry runs."""

    def __init__(self) -> None:
        self._documents: dict[str, dict[str, Any]] = {}

    async def save(self, state: ExecutionState) -> None:
        self._documents[state.id] = copy.deepcopy(state.to_dict())

    async def load(self, execution_id: str) -> ExecutionState | None:
        document = self._documents.get(execution_id)
        if document is None:
            return None
        return ExecutionState.from_dict(copy.deepcopy(document))

    async def list_recent(self, limit: int = DEFAULT_LIST_LIMIT) -> list[ExecutionState]:
        states = [ExecutionState.from_dict(copy.deepcopy(d)) for d in self._documents.values()]
        return _newest_first(states, limit)

    async def delete(self, execution_id: str) -> None:
        self._documents.pop(execution_id, None)

    def clear(self) -> None:
        self._documents.clear()


__all__ = [
    "ExecutionStore",
    "FileExecutionStore",
    "MemoryExecutionStore",
]
