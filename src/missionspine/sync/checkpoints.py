"""
Sync checkpoints for incremental "since" fetches.

A sync checkpoint records when a fetch last succeeded so the next run can
ask the API only for what changed (``?since=<last sync>``). Checkpoints are
keyed per fetch: ``source:operation_id`` when the fetch references an
operation, ``source:/path`` otherwise, or an explicit key from the step.
They are independent of ExecutionState: deleting an execution does not
reset incremental sync.

Examples:
    >>> generate_checkpoint_key("github", None, "/repos/?page=2")
    'github:/repos'
    >>> format_since_date(EPOCH, SinceFormat.DATE_ONLY)
    '1970-01-01'
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from missionspine.core.timestamps import from_iso8601, to_iso8601

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

# Year 3000 in unix seconds; numbers above are treated as milliseconds
_SECONDS_CEILING = 32503680000


class SinceFormat(str, Enum):
    ISO = "iso"
    UNIX = "unix"
    UNIX_MS = "unix-ms"
    DATE_ONLY = "date-only"


@dataclass
class SyncCheckpoint:
    """Last successful sync for one key."""

    key: str
    synced_at: datetime
    record_count: int | None = None
    cursor: str | None = None
    mission: str | None = None
    execution_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "synced_at": to_iso8601(self.synced_at),
            "record_count": self.record_count,
            "cursor": self.cursor,
            "mission": self.mission,
            "execution_id": self.execution_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncCheckpoint:
        return cls(
            key=data["key"],
            synced_at=from_iso8601(data["synced_at"]) or EPOCH,
            record_count=data.get("record_count"),
            cursor=data.get("cursor"),
            mission=data.get("mission"),
            execution_id=data.get("execution_id"),
        )


def generate_checkpoint_key(
    source: str,
    operation_id: str | None = None,
    endpoint: str | None = None,
) -> str:
    """Derive the checkpoint key for a fetch."""
    if operation_id:
        return f"{source}:{operation_id}"
    if endpoint:
        normalized = endpoint.split("?", 1)[0].rstrip("/")
        return f"{source}:{normalized}"
    return source


def format_since_date(value: datetime, fmt: SinceFormat | str = SinceFormat.ISO) -> str:
    """Render a sync timestamp the way the API expects it."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    match SinceFormat(fmt):
        case SinceFormat.UNIX:
            return str(int(value.timestamp()))
        case SinceFormat.UNIX_MS:
            return str(int(value.timestamp() * 1000))
        case SinceFormat.DATE_ONLY:
            return value.date().isoformat()
        case _:
            return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_since_date(value: Any) -> datetime | None:
    """Parse a timestamp taken from an API response.

    Accepts datetimes, ISO strings and unix numbers (seconds below year 3000,
    milliseconds above).
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)

    if isinstance(value, bool):
        return None

    if isinstance(value, str):
        try:
            return from_iso8601(value.strip())
        except ValueError:
            return None

    if isinstance(value, (int, float)):
        seconds = value if value < _SECONDS_CEILING else value / 1000
        return datetime.fromtimestamp(seconds, tz=UTC)

    return None
