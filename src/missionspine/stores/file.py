"""JSON-file store adapter.

Every store is one file, ``<base_dir>/<name>.json``, holding an object of
``key → record``. The whole file is rewritten on each mutation, so this is
for development and small datasets only.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

from missionspine.core.errors import StorageError
from missionspine.stores.base import Record, RecordFilter, StoreAdapter


class FileStore(StoreAdapter):
    def __init__(self, name: str, base_dir: str | Path):
        self.name = name
        self.path = Path(base_dir) / f"{name}.json"
        self._records: dict[str, Record] | None = None
        self._lock = asyncio.Lock()
        self._load_lock = asyncio.Lock()

    def _load(self) -> dict[str, Record]:
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            raise StorageError(f"Cannot read store file {self.path}", cause=e) from e

    def _persist(self, records: dict[str, Record]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(records, indent=2, default=str), encoding="utf-8")
        os.replace(tmp, self.path)

    async def _records_view(self) -> dict[str, Record]:
        if self._records is None:
            async with self._load_lock:
                # a concurrent caller may have loaded and mutated it meanwhile
                if self._records is None:
                    self._records = await asyncio.to_thread(self._load)
        return self._records

    async def _flush(self) -> None:
        snapshot = json.loads(json.dumps(self._records or {}, default=str))
        await asyncio.to_thread(self._persist, snapshot)

    async def get(self, key: str) -> Record | None:
        records = await self._records_view()
        record = records.get(key)
        return dict(record) if record is not None else None

    async def set(self, key: str, record: Record) -> None:
        async with self._lock:
            records = await self._records_view()
            records[key] = dict(record)
            await self._flush()

    async def update(self, key: str, record: Record) -> None:
        async with self._lock:
            records = await self._records_view()
            records[key] = {**records.get(key, {}), **record}
            await self._flush()

    async def delete(self, key: str) -> bool:
        async with self._lock:
            records = await self._records_view()
            existed = records.pop(key, None) is not None
            if existed:
                await self._flush()
            return existed

    async def list(self, where: RecordFilter | None = None) -> list[Record]:
        records = [dict(r) for r in (await self._records_view()).values()]
        if where is not None:
            records = [r for r in records if where(r)]
        return records

    async def clear(self) -> None:
        async with self._lock:
            self._records = {}
            await self._flush()
