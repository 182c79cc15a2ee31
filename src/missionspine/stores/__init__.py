"""Store adapters and the store factory."""

from __future__ import annotations

from pathlib import Path

from missionspine.core.errors import ConfigError
from missionspine.stores.base import Record, RecordFilter, StoreAdapter
from missionspine.stores.file import FileStore
from missionspine.stores.memory import MemoryStore


def create_store(
    store_type: str,
    name: str,
    data_dir: str | Path,
    development_mode: bool = True,
) -> StoreAdapter:
    """Build the adapter for a store definition.

    ``nosql`` and ``sql`` stores map to file stores in development mode;
    outside it they need a custom adapter passed to the executor.
    """
    stores_dir = Path(data_dir) / "stores"
    match store_type:
        case "memory":
            return MemoryStore(name)
        case "file":
            return FileStore(name, stores_dir)
        case "nosql" | "sql" if development_mode:
            return FileStore(name, stores_dir)
        case "nosql" | "sql":
            raise ConfigError(
                f"No adapter for {store_type} store '{name}'; pass one via ExecutorConfig.stores"
            )
        case _:
            raise ConfigError(f"Unknown store type: {store_type}")


__all__ = [
    "Record",
    "RecordFilter",
    "StoreAdapter",
    "FileStore",
    "MemoryStore",
    "create_store",
]
