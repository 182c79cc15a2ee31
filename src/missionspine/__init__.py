"""
Mission Spine - execution engine for declarative HTTP API missions.

A mission names its API sources, its stores, and a pipeline of actions.
``MissionExecutor`` runs that pipeline with resumable state, incremental
sync, pagination, rate limiting and circuit breaking.

Example:
    >>> from missionspine import MissionExecutor, ExecutorConfig
    >>> result = await MissionExecutor(ExecutorConfig(dry_run=True)).execute(mission)
    >>> result.success
    True
"""

__version__ = "0.1.0"

from missionspine.orchestration import (  # noqa: E402
    ExecutionResult,
    ExecutorConfig,
    Mission,
    MissionExecutor,
)

__all__ = [
    "__version__",
    "ExecutionResult",
    "ExecutorConfig",
    "Mission",
    "MissionExecutor",
]
