"""
Shared pytest fixtures for mission-spine tests.

This module provides:
- Settings isolation (every test gets its own data directory)
- A recording async sleep so retries and waits never block
- Builders for small missions and executors

Usage:
    async def test_something(make_executor, simple_mission):
        result = await make_executor().execute(simple_mission(...))
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from missionspine.core.settings import reset_settings
from missionspine.execution.store import MemoryExecutionStore
from missionspine.orchestration.executor import ExecutorConfig, MissionExecutor
from missionspine.orchestration.mission import (
    ActionDefinition,
    Mission,
    SourceDefinition,
    Stage,
    StoreDefinition,
)
from missionspine.sync.store import MemorySyncStore

BASE_URL = "https://api.test"


# =============================================================================
# Settings isolation
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point MISSION_DATA_DIR at a temp dir and drop cached settings."""
    monkeypatch.setenv("MISSION_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("MISSION_PERSIST_STATE", raising=False)
    reset_settings()
    yield tmp_path / "data"
    reset_settings()


# =============================================================================
# Time
# =============================================================================


class SleepRecorder:
    """Async stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


class FakeClock:
    """Manually advanced clock (seconds)."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Mission / executor builders
# =============================================================================


@pytest.fixture
def simple_mission() -> Callable[..., Mission]:
    """Build a mission with one source (``api``) and memory stores."""

    def build(
        actions: list[ActionDefinition],
        pipeline: list[Stage] | None = None,
        stores: tuple[str, ...] = ("out",),
        name: str = "test-mission",
        **source_kwargs: Any,
    ) -> Mission:
        if pipeline is None:
            pipeline = [Stage(actions=(a.name,)) for a in actions]
        return Mission(
            name=name,
            sources=(SourceDefinition(name="api", base_url=BASE_URL, **source_kwargs),),
            stores=tuple(StoreDefinition(name=s, store_type="memory") for s in stores),
            actions=tuple(actions),
            pipeline=tuple(pipeline),
        )

    return build


@pytest.fixture
def execution_store() -> MemoryExecutionStore:
    return MemoryExecutionStore()


@pytest.fixture
def make_executor(sleeper, execution_store) -> Callable[..., MissionExecutor]:
    """Executor with memory persistence, memory sync store and no real sleeping."""

    def build(**overrides: Any) -> MissionExecutor:
        options: dict[str, Any] = {
            "persist_state": True,
            "execution_store": execution_store,
            "sync_store": MemorySyncStore(),
            "sleep": sleeper,
        }
        options.update(overrides)
        return MissionExecutor(ExecutorConfig(**options))

    return build
