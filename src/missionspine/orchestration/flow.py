"""
Flow results: how a step tells its action what to do next.

Every step handler returns one of these. Most return ``CONTINUE``; match
arms and wait steps are the usual sources of the others. They are values,
not exceptions, so the action loop decides in one place how each is honoured.

    Continue   run the next step
    Skip       end the action, successfully
    Retry      restart the action (bounded by the backoff's max_attempts)
    Jump       run another action, then retry / continue / end this one
    Queue      hand the value to a store or the dead-letter list, end the action
    Abort      fail the action
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from missionspine.execution.retry import RetryConfig

DEAD_LETTER = "dead_letter"


@dataclass(frozen=True)
class Continue:
    kind = "continue"


@dataclass(frozen=True)
class Skip:
    kind = "skip"


@dataclass(frozen=True)
class Retry:
    backoff: RetryConfig | None = None
    kind = "retry"


@dataclass(frozen=True)
class Jump:
    action: str
    then: Literal["retry", "continue"] | None = None
    kind = "jump"


@dataclass(frozen=True)
class Queue:
    target: str | None = None
    value: Any = None
    kind = "queue"

    @property
    def target_name(self) -> str:
        return self.target or DEAD_LETTER


@dataclass(frozen=True)
class Abort:
    message: str | None = None
    kind = "abort"


FlowResult = Continue | Skip | Retry | Jump | Queue | Abort

# Match-arm directives share the union; Queue.value is filled from the matched value.
FlowDirective = FlowResult

CONTINUE = Continue()


def is_continue(result: FlowResult) -> bool:
    return isinstance(result, Continue)


__all__ = [
    "DEAD_LETTER",
    "Continue",
    "Skip",
    "Retry",
    "Jump",
    "Queue",
    "Abort",
    "FlowResult",
    "FlowDirective",
    "CONTINUE",
    "is_continue",
]
