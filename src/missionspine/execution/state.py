"""
Execution state: the durable record of one mission run.

One ``ExecutionState`` exists per run. It holds a ``StageState`` for every
pipeline stage (same order, same length), an optional fine-grained
``Checkpoint``, and an append-only error log. The executor mutates it after
every stage transition and persists it before the next stage starts, which
is what makes ``resume_from`` safe.

Architecture:
    ::

        ExecutionState (status: pending → running → completed | failed)
          ├── stages[i]: StageState (pending → running → completed | failed)
          │                          (pending → skipped)
          ├── checkpoint?: Checkpoint(stage_index, step_index, item_index, variables)
          │                  └── webhook_wait?: WebhookWaitState
          └── errors[]: ExecutionStateError (append-only)

    Resume point:
        checkpoint.stage_index
        else first stage not in {completed, skipped}
        else -1 (nothing left to run)

Examples:
    >>> state = create_execution_state("sync_users", ["fetch_users", "[a, b]"])
    >>> find_resume_point(state)
    0
    >>> update_stage_state(state, 0, StageStatus.COMPLETED)
    >>> get_progress(state)
    50

Tags:
    execution-state, resumability, checkpoint, persistence
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from missionspine.core.timestamps import from_iso8601, generate_execution_id, to_iso8601, utc_now


class ExecutionStatus(str, Enum):
    """Status of a whole run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class StageStatus(str, Enum):
    """Status of one pipeline stage."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


RESUMABLE_STATUSES = frozenset({ExecutionStatus.FAILED, ExecutionStatus.PAUSED})
DONE_STAGE_STATUSES = frozenset({StageStatus.COMPLETED, StageStatus.SKIPPED})


@dataclass
class StageState:
    """State for a single pipeline stage."""

    action: str
    """Stage display name: action name or ``[a, b]`` for parallel stages."""

    status: StageStatus = StageStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    items_processed: int | None = None
    items_total: int | None = None
    attempt: int = 0
    """Retry attempt number (0 = first attempt)."""

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "status": self.status.value,
            "started_at": to_iso8601(self.started_at),
            "completed_at": to_iso8601(self.completed_at),
            "error": self.error,
            "items_processed": self.items_processed,
            "items_total": self.items_total,
            "attempt": self.attempt,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StageState:
        return cls(
            action=data["action"],
            status=StageStatus(data.get("status", "pending")),
            started_at=from_iso8601(data.get("started_at")),
            completed_at=from_iso8601(data.get("completed_at")),
            error=data.get("error"),
            items_processed=data.get("items_processed"),
            items_total=data.get("items_total"),
            attempt=data.get("attempt", 0),
        )


@dataclass
class WebhookWaitState:
    """Webhook wait in progress, kept on the checkpoint for resume."""

    registration_id: str
    path: str
    webhook_url: str
    expected_events: int
    received_events: int
    wait_started_at: datetime
    expires_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "registration_id": self.registration_id,
            "path": self.path,
            "webhook_url": self.webhook_url,
            "expected_events": self.expected_events,
            "received_events": self.received_events,
            "wait_started_at": to_iso8601(self.wait_started_at),
            "expires_at": to_iso8601(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WebhookWaitState:
        return cls(
            registration_id=data["registration_id"],
            path=data["path"],
            webhook_url=data["webhook_url"],
            expected_events=data["expected_events"],
            received_events=data.get("received_events", 0),
            wait_started_at=from_iso8601(data["wait_started_at"]),
            expires_at=from_iso8601(data["expires_at"]),
        )


@dataclass
class Checkpoint:
    """Fine-grained resume marker inside a stage."""

    stage_index: int
    step_index: int = 0
    item_index: int | None = None
    variables: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)
    webhook_wait: WebhookWaitState | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage_index": self.stage_index,
            "step_index": self.step_index,
            "item_index": self.item_index,
            "variables": self.variables,
            "created_at": to_iso8601(self.created_at),
            "webhook_wait": self.webhook_wait.to_dict() if self.webhook_wait else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        wait = data.get("webhook_wait")
        return cls(
            stage_index=data["stage_index"],
            step_index=data.get("step_index", 0),
            item_index=data.get("item_index"),
            variables=data.get("variables") or {},
            created_at=from_iso8601(data.get("created_at")) or utc_now(),
            webhook_wait=WebhookWaitState.from_dict(wait) if wait else None,
        )


@dataclass
class ExecutionStateError:
    """One entry of the append-only error log."""

    stage_index: int
    action: str
    step: str
    message: str
    timestamp: datetime = field(default_factory=utc_now)
    attempt: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage_index": self.stage_index,
            "action": self.action,
            "step": self.step,
            "message": self.message,
            "timestamp": to_iso8601(self.timestamp),
            "attempt": self.attempt,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionStateError:
        return cls(
            stage_index=data["stage_index"],
            action=data["action"],
            step=data.get("step", "unknown"),
            message=data["message"],
            timestamp=from_iso8601(data.get("timestamp")) or utc_now(),
            attempt=data.get("attempt", 0),
        )


@dataclass
class ExecutionState:
    """Complete execution state for a mission run."""

    id: str
    mission: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None
    duration_ms: float | None = None
    stages: list[StageState] = field(default_factory=list)
    checkpoint: Checkpoint | None = None
    errors: list[ExecutionStateError] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "mission": self.mission,
            "status": self.status.value,
            "started_at": to_iso8601(self.started_at),
            "completed_at": to_iso8601(self.completed_at),
            "duration_ms": self.duration_ms,
            "stages": [s.to_dict() for s in self.stages],
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
            "errors": [e.to_dict() for e in self.errors],
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionState:
        checkpoint = data.get("checkpoint")
        return cls(
            id=data["id"],
            mission=data["mission"],
            status=ExecutionStatus(data.get("status", "pending")),
            started_at=from_iso8601(data.get("started_at")) or utc_now(),
            completed_at=from_iso8601(data.get("completed_at")),
            duration_ms=data.get("duration_ms"),
            stages=[StageState.from_dict(s) for s in data.get("stages", [])],
            checkpoint=Checkpoint.from_dict(checkpoint) if checkpoint else None,
            errors=[ExecutionStateError.from_dict(e) for e in data.get("errors", [])],
            metadata=data.get("metadata") or {},
        )


# ── Pure helpers ────────────────────────────────────────────────────────


def create_execution_state(
    mission: str,
    stages: list[str],
    metadata: dict[str, Any] | None = None,
) -> ExecutionState:
    """Create a fresh state with one pending StageState per stage name."""
    return ExecutionState(
        id=generate_execution_id(),
        mission=mission,
        stages=[StageState(action=name) for name in stages],
        metadata=dict(metadata or {}),
    )


def find_resume_point(state: ExecutionState) -> int:
    """Index of the stage to resume from, or -1 when nothing is left."""
    if state.checkpoint is not None:
        return state.checkpoint.stage_index

    for index, stage in enumerate(state.stages):
        if stage.status not in DONE_STAGE_STATUSES:
            return index
    return -1


def can_resume(state: ExecutionState) -> bool:
    return state.status in RESUMABLE_STATUSES


def get_progress(state: ExecutionState) -> int:
    """Percentage of stages that are completed or skipped."""
    total = len(state.stages)
    if total == 0:
        return 100
    done = sum(1 for s in state.stages if s.status in DONE_STAGE_STATUSES)
    return round(100 * done / total)


def get_execution_summary(state: ExecutionState) -> str:
    """One-line human summary of a run."""
    completed = sum(1 for s in state.stages if s.status == StageStatus.COMPLETED)
    failed = sum(1 for s in state.stages if s.status == StageStatus.FAILED)
    pending = sum(1 for s in state.stages if s.status == StageStatus.PENDING)

    summary = (
        f"{state.mission} [{state.id}]: {state.status.value} ({get_progress(state)}%) - "
        f"{completed} completed, {failed} failed, {pending} pending"
    )
    if state.duration_ms is not None:
        summary += f" - {round(state.duration_ms / 1000)}s"
    return summary


def update_stage_state(
    state: ExecutionState,
    stage_index: int,
    status: StageStatus,
    error: str | None = None,
    step: str = "unknown",
) -> None:
    """Transition one stage, maintaining timestamps and the error log.

    ``started_at`` is set the first time a stage becomes running;
    ``completed_at`` is set on completed/failed and cleared otherwise.
    """
    stage = state.stages[stage_index]
    stage.status = status
    now = utc_now()

    if status == StageStatus.RUNNING and stage.started_at is None:
        stage.started_at = now

    if status in (StageStatus.COMPLETED, StageStatus.FAILED):
        stage.completed_at = now
    else:
        stage.completed_at = None

    if error is not None:
        stage.error = error
        state.errors.append(ExecutionStateError(
            stage_index=stage_index,
            action=stage.action,
            step=step,
            message=error,
            timestamp=now,
            attempt=stage.attempt,
        ))
    elif status == StageStatus.COMPLETED:
        stage.error = None


def set_checkpoint(
    state: ExecutionState,
    stage_index: int,
    step_index: int = 0,
    item_index: int | None = None,
    variables: dict[str, Any] | None = None,
    webhook_wait: WebhookWaitState | None = None,
) -> Checkpoint:
    state.checkpoint = Checkpoint(
        stage_index=stage_index,
        step_index=step_index,
        item_index=item_index,
        variables=dict(variables or {}),
        webhook_wait=webhook_wait,
    )
    return state.checkpoint


def clear_checkpoint(state: ExecutionState) -> None:
    state.checkpoint = None


__all__ = [
    "ExecutionStatus",
    "StageStatus",
    "StageState",
    "WebhookWaitState",
    "Checkpoint",
    "ExecutionStateError",
    "ExecutionState",
    "create_execution_state",
    "find_resume_point",
    "can_resume",
    "get_progress",
    "get_execution_summary",
    "update_stage_state",
    "set_checkpoint",
    "clear_checkpoint",
]
