"""In-memory store adapter."""

from __future__ import annotations

import copy

from missionspine.stores.base import Record, RecordFilter, StoreAdapter


class MemoryStore(StoreAdapter):
    """Dict-backed store; records are deep-copied in and out."""

    def __init__(self, name: str = "memory"):
        self.name = name
        self._records: dict[str, Record] = {}

    async def get(self, key: str) -> Record | None:
        record = self._records.get(key)
        return copy.deepcopy(record) if record is not None else None

    async def set(self, key: str, record: Record) -> None:
        self._records[key] = copy.deepcopy(record)

    async def update(self, key: str, record: Record) -> None:
        existing = self._records.get(key, {})
        self._records[key] = {**existing, **copy.deepcopy(record)}

    async def delete(self, key: str) -> bool:
        return self._records.pop(key, None) is not None

    async def list(self, where: RecordFilter | None = None) -> list[Record]:
        records = [copy.deepcopy(r) for r in self._records.values()]
        if where is not None:
            records = [r for r in records if where(r)]
        return records

    async def clear(self) -> None:
        self._records.clear()

    def keys(self) -> list[str]:
        return list(self._records)
