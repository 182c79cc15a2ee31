"""Store adapter contract.

Missions write records into named stores. The engine only needs
``list``, ``set`` and ``update``; ``get``, ``delete`` and ``clear`` round out
the interface for tests and the CLI. Records are plain dicts keyed by a
string key.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

Record = dict[str, Any]
RecordFilter = Callable[[Record], bool]


class StoreAdapter(ABC):
    """Async key/record store."""

    name: str

    @abstractmethod
    async def get(self, key: str) -> Record | None: ...

    @abstractmethod
    async def set(self, key: str, record: Record) -> None: ...

    @abstractmethod
    async def update(self, key: str, record: Record) -> None:
        """Merge ``record`` into the existing record (insert when absent)."""

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def list(self, where: RecordFilter | None = None) -> list[Record]: ...

    @abstractmethod
    async def clear(self) -> None: ...

    async def count(self) -> int:
        return len(await self.list())
