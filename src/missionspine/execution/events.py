"""Mission Events: typed lifecycle stream for observability sinks.

WHY
───
Execution state only shows where a run *is*. The event stream shows how
it got there: every mission, stage, step, fetch, loop and checkpoint
transition, in order, with timing. Sinks (loggers, tracers, progress UIs)
subscribe; the engine never depends on them.

ARCHITECTURE
────────────
::

    MissionEvent
      ├── type          ─ EventType (mission.start, fetch.complete, ...)
      ├── timestamp     ─ when
      ├── execution_id  ─ which run
      ├── mission       ─ which mission
      └── data          ─ event payload (action, duration_ms, error, ...)

    EventEmitter.emit(...) ──▶ subscriber(event) for matching types
                                 (errors in subscribers are logged, never raised)

    Flow results (skip/retry/jump/queue) appear as ``flow`` on
    ``step.complete``; only genuine failures produce ``step.error``.

Related modules:
    state.py            - durable ExecutionState
    orchestration/executor.py - emits mission/stage/step events
    orchestration/fetch.py    - emits fetch/sync events
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from missionspine.core.logging import get_logger
from missionspine.core.timestamps import to_iso8601, utc_now

logger = get_logger(__name__)


class EventType(str, Enum):
    """Every event kind the engine emits."""

    MISSION_START = "mission.start"
    MISSION_COMPLETE = "mission.complete"
    MISSION_FAILED = "mission.failed"
    STAGE_START = "stage.start"
    STAGE_COMPLETE = "stage.complete"
    STEP_START = "step.start"
    STEP_COMPLETE = "step.complete"
    STEP_ERROR = "step.error"
    FETCH_START = "fetch.start"
    FETCH_COMPLETE = "fetch.complete"
    FETCH_ERROR = "fetch.error"
    LOOP_START = "loop.start"
    LOOP_ITERATION = "loop.iteration"
    LOOP_COMPLETE = "loop.complete"
    SYNC_CHECKPOINT = "sync.checkpoint"
    WEBHOOK_REGISTER = "webhook.register"
    WEBHOOK_EVENT = "webhook.event"
    RATE_LIMIT_WAIT = "rate_limit.wait"
    CIRCUIT_OPEN = "circuit.open"
    CIRCUIT_CLOSE = "circuit.close"


@dataclass(frozen=True)
class MissionEvent:
    """One entry of the event stream."""

    type: EventType
    """Event kind"""

    execution_id: str | None
    """Run this event belongs to"""

    mission: str | None
    """Mission name"""

    data: dict[str, Any] = field(default_factory=dict)
    """Event-specific payload"""

    timestamp: datetime = field(default_factory=utc_now)
    """When this event occurred"""

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON/storage."""
        return {
            "type": self.type.value,
            "execution_id": self.execution_id,
            "mission": self.mission,
            "timestamp": to_iso8601(self.timestamp),
            "data": self.data,
        }


EventHandler = Callable[[MissionEvent], Any]


class EventEmitter:
    """Fan-out of ``MissionEvent`` to subscribers.

    Example:
        >>> emitter = EventEmitter()
        >>> seen = []
        >>> unsubscribe = emitter.subscribe(seen.append, types=[EventType.FETCH_COMPLETE])
        >>> emitter.emit(EventType.FETCH_COMPLETE, {"records": 3})
        >>> len(seen)
        1
    """

    def __init__(self, execution_id: str | None = None, mission: str | None = None):
        self.execution_id = execution_id
        self.mission = mission
        self._subscribers: list[tuple[EventHandler, frozenset[EventType] | None]] = []

    def bind(self, execution_id: str | None, mission: str | None) -> None:
        """Set the run identity stamped on subsequent events."""
        self.execution_id = execution_id
        self.mission = mission

    def subscribe(
        self,
        handler: EventHandler,
        types: Iterable[EventType] | None = None,
    ) -> Callable[[], None]:
        """Register ``handler``; returns a function that unsubscribes it."""
        entry = (handler, frozenset(types) if types is not None else None)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def emit(self, event_type: EventType, data: dict[str, Any] | None = None) -> MissionEvent:
        event = MissionEvent(
            type=event_type,
            execution_id=self.execution_id,
            mission=self.mission,
            data=dict(data or {}),
        )
        for handler, types in list(self._subscribers):
            if types is not None and event_type not in types:
                continue
            try:
                handler(event)
            except Exception as e:  # noqa: BLE001 - sinks must not break execution
                logger.warning("event.handler_failed", event_type=event_type.value, error=str(e))
        return event


def log_events(event: MissionEvent) -> None:
    """Subscriber that writes every event to the structured log."""
    level = "warning" if event.type in (EventType.FETCH_ERROR, EventType.STEP_ERROR,
                                         EventType.MISSION_FAILED) else "debug"
    getattr(logger, level)(event.type.value, execution_id=event.execution_id, **event.data)


@dataclass
class ProgressCallbacks:
    """Direct callbacks for progress rendering (CLI spinners, dashboards).

    on_execution_start(execution_id, mission, stage_count, is_resume, metadata)
    on_execution_complete(execution_id, success, duration_ms, errors)
    on_stage_start(index, name, stage_count)
    on_stage_complete(index, name, success, duration_ms, error)
    """

    on_execution_start: Callable[..., Any] | None = None
    on_execution_complete: Callable[..., Any] | None = None
    on_stage_start: Callable[..., Any] | None = None
    on_stage_complete: Callable[..., Any] | None = None


__all__ = [
    "EventType",
    "MissionEvent",
    "EventHandler",
    "EventEmitter",
    "log_events",
    "ProgressCallbacks",
]
