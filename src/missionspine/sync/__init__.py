"""Incremental sync checkpoints ("since last sync")."""

from missionspine.sync.checkpoints import (
    EPOCH,
    SinceFormat,
    SyncCheckpoint,
    format_since_date,
    generate_checkpoint_key,
    parse_since_date,
)
from missionspine.sync.store import FileSyncStore, MemorySyncStore, SyncStore

__all__ = [
    "EPOCH",
    "SinceFormat",
    "SyncCheckpoint",
    "format_since_date",
    "generate_checkpoint_key",
    "parse_since_date",
    "FileSyncStore",
    "MemorySyncStore",
    "SyncStore",
]
