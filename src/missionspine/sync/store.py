"""
Sync checkpoint stores.

``FileSyncStore`` keeps one JSON document per mission
(``<data_dir>/sync/<mission>.json``) mapping checkpoint key → checkpoint.
A missing file starts the mission from scratch (every key reads as
``EPOCH``). A corrupt file raises ``StorageError`` rather than being
overwritten; ``clear_all()`` resets it. ``MemorySyncStore`` is the test double.
"""

from __future__ import annotations

import asyncio
import json
import os
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

from missionspine.core.errors import StorageError
from missionspine.core.logging import get_logger
from missionspine.sync.checkpoints import EPOCH, SyncCheckpoint

logger = get_logger(__name__)


class SyncStore(ABC):
    """Persists sync checkpoints."""

    @abstractmethod
    async def get_checkpoint(self, key: str) -> SyncCheckpoint | None: ...

    @abstractmethod
    async def record_sync(self, checkpoint: SyncCheckpoint) -> None: ...

    @abstractmethod
    async def list(self) -> list[SyncCheckpoint]: ...

    @abstractmethod
    async def clear(self, key: str) -> None: ...

    @abstractmethod
    async def clear_all(self) -> None: ...

    async def get_last_sync(self, key: str) -> datetime:
        """Last sync time for ``key``, or ``EPOCH`` for a fresh sync."""
        checkpoint = await self.get_checkpoint(key)
        return checkpoint.synced_at if checkpoint else EPOCH


class MemorySyncStore(SyncStore):
    def __init__(self) -> None:
        self._checkpoints: dict[str, SyncCheckpoint] = {}

    async def get_checkpoint(self, key: str) -> SyncCheckpoint | None:
        return self._checkpoints.get(key)

    async def record_sync(self, checkpoint: SyncCheckpoint) -> None:
        self._checkpoints[checkpoint.key] = SyncCheckpoint(**vars(checkpoint))

    async def list(self) -> list[SyncCheckpoint]:
        return list(self._checkpoints.values())

    async def clear(self, key: str) -> None:
        self._checkpoints.pop(key, None)

    async def clear_all(self) -> None:
        self._checkpoints.clear()


class FileSyncStore(SyncStore):
    """Sync checkpoints for one mission in a single JSON file.

    Args:
        mission: Mission name (file name stem)
        base_dir: Directory for sync files
    """

    def __init__(self, mission: str, base_dir: str | Path):
        self.mission = mission
        self.path = Path(base_dir) / f"{mission}.json"
        self._checkpoints: dict[str, SyncCheckpoint] | None = None
        self._lock = asyncio.Lock()
        self._load_lock = asyncio.Lock()

    def _load(self) -> dict[str, SyncCheckpoint]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return {key: SyncCheckpoint.from_dict(value) for key, value in raw.items()}
        except FileNotFoundError:
            return {}
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error("sync_store.corrupt", file=str(self.path), error=str(e))
            raise StorageError(f"Cannot read sync file {self.path}", cause=e) from e

    def _persist(self, checkpoints: dict[str, SyncCheckpoint]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".json.tmp")
        payload = {key: cp.to_dict() for key, cp in checkpoints.items()}
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    async def _ensure_loaded(self) -> dict[str, SyncCheckpoint]:
        if self._checkpoints is None:
            async with self._load_lock:
                if self._checkpoints is None:
                    self._checkpoints = await asyncio.to_thread(self._load)
        return self._checkpoints

    async def get_checkpoint(self, key: str) -> SyncCheckpoint | None:
        checkpoints = await self._ensure_loaded()
        return checkpoints.get(key)

    async def record_sync(self, checkpoint: SyncCheckpoint) -> None:
        async with self._lock:
            checkpoints = await self._ensure_loaded()
            checkpoints[checkpoint.key] = checkpoint
            await asyncio.to_thread(self._persist, dict(checkpoints))

    async def list(self) -> list[SyncCheckpoint]:
        checkpoints = await self._ensure_loaded()
        return list(checkpoints.values())

    async def clear(self, key: str) -> None:
        async with self._lock:
            checkpoints = await self._ensure_loaded()
            checkpoints.pop(key, None)
            await asyncio.to_thread(self._persist, dict(checkpoints))

    async def clear_all(self) -> None:
        """Drop every checkpoint; also recovers from an unreadable file."""
        async with self._lock:
            self._checkpoints = {}
            await asyncio.to_thread(self._persist, {})
