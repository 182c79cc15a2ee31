"""
Timestamp and identifier helpers (stdlib-only).

All datetimes produced by the engine are timezone-aware UTC. Persisted
documents carry ISO-8601 strings that ``from_iso8601`` turns back into
aware datetimes (naive inputs are assumed UTC).

Execution ids have the shape ``exec_<base36 ms timestamp>_<6 base36>``;
they sort roughly by creation time and stay readable in file names.

Tags:
    timestamps, utc, datetime, ids, stdlib-only
"""

from __future__ import annotations

import random
import time
from datetime import UTC, datetime

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def to_iso8601(dt: datetime | None) -> str | None:
    """Convert datetime to ISO 8601 string."""
    if dt is None:
        return None
    return dt.isoformat()


def from_iso8601(s: str | datetime | None) -> datetime | None:
    """Parse ISO 8601 string to an aware datetime."""
    if s is None:
        return None
    if isinstance(s, datetime):
        dt = s
    else:
        # fromisoformat accepts "Z" from 3.11 on
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def to_base36(value: int) -> str:
    """Encode a non-negative integer in lowercase base36."""
    if value < 0:
        raise ValueError("value must be non-negative")
    if value == 0:
        return "0"
    chars = []
    while value:
        value, rem = divmod(value, 36)
        chars.append(_BASE36[rem])
    return "".join(reversed(chars))


def generate_execution_id() -> str:
    """Generate ``exec_<timestamp-base36>_<random>``."""
    timestamp = to_base36(int(time.time() * 1000))
    suffix = "".join(random.choices(_BASE36, k=6))
    return f"exec_{timestamp}_{suffix}"
