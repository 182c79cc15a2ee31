"""
Mission executor: walks a mission's pipeline stage by stage.

The executor owns one run. It builds the run's resources (HTTP clients,
store adapters, resilience registries), creates or resumes the durable
ExecutionState, runs each stage (a single action, or several concurrently),
and honours the flow results actions produce.

Manifesto:
    A run must survive a crash between any two stages. State is persisted
    after every stage transition, strictly after the in-memory change and
    before the next stage starts, so resume never loses more than the most
    recent transition and never re-runs a completed stage.

Architecture:
    ::

        execute(mission)
          │  init state (fresh, or resume_from → find_resume_point)
          │  init sources (HttpClient per source) + stores (adapters)
          ▼
        for stage i ≥ resume index:
          guard false ──▶ skipped ── persist
          running ── persist ── stage.start
          ├── sequential: run_action(action, root.child())
          └── parallel:   gather(run_action(a, root.child()) ...)  no fail-fast
          completed | failed ── persist ── stage.complete
          ▼
        completed | failed ── persist ── mission.complete | mission.failed

    run_action honours flow results:
        Continue → next step       Skip  → action ends (success)
        Retry    → restart action  Jump  → run target, then retry/continue/end
        Queue    → store or dead-letter list, action ends
        Abort    → AbortError

Guardrails:
    ❌ DON'T: Raise out of execute() - failures land in ExecutionResult.errors
    ✅ DO:    Persist after every stage transition
    ❌ DON'T: Cancel siblings of a failing parallel action
    ✅ DO:    Give every action its own child scope

Tags:
    executor, pipeline, resume, parallel, flow-control
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx

from missionspine.core.errors import (
    AbortError,
    ConfigError,
    FlowError,
    MissionError,
    StageError,
)
from missionspine.core.logging import LogContext, get_logger
from missionspine.core.settings import get_settings
from missionspine.core.timestamps import utc_now
from missionspine.execution.circuit_breaker import (
    CircuitBreakerCallbacks,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitEvent,
)
from missionspine.execution.events import EventEmitter, EventType, ProgressCallbacks, log_events
from missionspine.execution.rate_limit import (
    AdaptiveRateLimiter,
    RateLimitCallbacks,
    RateLimitConfig,
    RateLimitEvent,
    RateLimitStrategy,
)
from missionspine.execution.retry import RetryConfig, backoff_for
from missionspine.execution.state import (
    ExecutionState,
    ExecutionStatus,
    StageStatus,
    clear_checkpoint,
    create_execution_state,
    find_resume_point,
    update_stage_state,
)
from missionspine.execution.store import ExecutionStore, FileExecutionStore
from missionspine.orchestration.expressions import evaluate
from missionspine.orchestration.flow import (
    Abort,
    Continue,
    FlowResult,
    Jump,
    Queue,
    Retry,
    Skip,
    is_continue,
)
from missionspine.orchestration.http import HttpClient
from missionspine.orchestration.mission import ActionDefinition, AuthConfig, Mission, Stage
from missionspine.orchestration.scope import ExecutionScope, MissionResources
from missionspine.orchestration.step_handlers import (
    ErrorRecord,
    HandlerServices,
    StepContext,
    StepHandlers,
)
from missionspine.stores import StoreAdapter, create_store
from missionspine.sync.store import FileSyncStore, SyncStore
from missionspine.webhooks.registry import WebhookRegistry

logger = get_logger(__name__)

MAX_JUMP_DEPTH = 10


@dataclass
class ExecutorConfig:
    """Options for one ``MissionExecutor``.

    Fields left as ``None`` fall back to ``MissionSettings``.
    """

    dry_run: bool = False
    persist_state: bool | None = None
    resume_from: str | None = None
    data_dir: str | Path | None = None
    development_mode: bool | None = None
    execution_store: ExecutionStore | None = None
    sync_store: SyncStore | None = None
    webhook_registry: WebhookRegistry | None = None
    stores: dict[str, StoreAdapter] = field(default_factory=dict)
    auth: dict[str, AuthConfig] = field(default_factory=dict)
    mock_data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    emitter: EventEmitter | None = None
    callbacks: ProgressCallbacks = field(default_factory=ProgressCallbacks)
    rate_limiter: AdaptiveRateLimiter | None = None
    circuit_breakers: CircuitBreakerRegistry | None = None
    http_transport: httpx.AsyncBaseTransport | None = None
    webhook_base_url: str | None = None
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


@dataclass
class ExecutionResult:
    success: bool
    duration_ms: int
    errors: list[ErrorRecord] = field(default_factory=list)
    stores: dict[str, StoreAdapter] = field(default_factory=dict)
    execution_id: str | None = None
    queued: dict[str, list[Any]] = field(default_factory=dict)
    state: ExecutionState | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "duration_ms": self.duration_ms,
            "execution_id": self.execution_id,
            "errors": [e.to_dict() for e in self.errors],
            "stores": sorted(self.stores),
            "queued": {k: len(v) for k, v in self.queued.items()},
        }


def _message(error: BaseException) -> str:
    if isinstance(error, MissionError):
        return error.message
    return str(error) or type(error).__name__


class MissionExecutor:
    """Runs missions; one ``execute()`` at a time per instance.

    Rate limiter and circuit breaker registries live as long as the
    executor so that consecutive runs share what they learned about a
    source; ``reset()`` clears them.
    """

    def __init__(self, config: ExecutorConfig | None = None):
        self.config = config or ExecutorConfig()
        self.settings = get_settings()
        cfg = self.config

        self.data_dir = Path(cfg.data_dir) if cfg.data_dir is not None else self.settings.data_dir
        self.persist_state = cfg.persist_state if cfg.persist_state is not None else self.settings.persist_state
        self.development_mode = (
            cfg.development_mode if cfg.development_mode is not None else self.settings.development_mode
        )

        if cfg.emitter is not None:
            self.emitter = cfg.emitter
        else:
            self.emitter = EventEmitter()
            self.emitter.subscribe(log_events)

        self.rate_limiter = cfg.rate_limiter or AdaptiveRateLimiter(
            RateLimitConfig(
                strategy=RateLimitStrategy(self.settings.rate_limit_strategy),
                max_wait=self.settings.rate_limit_max_wait,
                notify_at=self.settings.rate_limit_notify_at,
                fallback_rpm=self.settings.rate_limit_fallback_rpm,
            ),
            callbacks=RateLimitCallbacks(on_rate_limited=self._on_rate_limited),
            sleep=cfg.sleep,
        )
        self.circuit_breakers = cfg.circuit_breakers or CircuitBreakerRegistry(
            CircuitBreakerConfig(
                failure_threshold=self.settings.circuit_failure_threshold,
                reset_timeout=self.settings.circuit_reset_timeout,
                success_threshold=self.settings.circuit_success_threshold,
                failure_window=self.settings.circuit_failure_window,
            ),
            callbacks=CircuitBreakerCallbacks(
                on_open=self._on_circuit_open,
                on_close=self._on_circuit_close,
            ),
        )

        self.execution_store: ExecutionStore | None = None
        if self.persist_state:
            self.execution_store = cfg.execution_store or FileExecutionStore(self.data_dir / "executions")

        self.webhook_registry = cfg.webhook_registry or WebhookRegistry(
            cfg.webhook_base_url or self.settings.webhook_base_url
        )

        self.state: ExecutionState | None = None
        self.errors: list[ErrorRecord] = []
        self.queued: dict[str, list[Any]] = {}
        self.handlers: StepHandlers | None = None
        self._mission: Mission | None = None
        self._resources: MissionResources | None = None

    def reset(self) -> None:
        """Forget everything the resilience registries learned."""
        self.rate_limiter.reset()
        self.circuit_breakers.reset()

    # ── Resilience callbacks → events ─────────────────────────────────────

    def _on_rate_limited(self, event: RateLimitEvent) -> None:
        self.emitter.emit(EventType.RATE_LIMIT_WAIT, {
            "source": event.source,
            "endpoint": event.endpoint,
            "wait_seconds": event.wait_seconds,
            "strategy": event.strategy.value,
        })

    def _on_circuit_open(self, event: CircuitEvent) -> None:
        self.emitter.emit(EventType.CIRCUIT_OPEN, {
            "source": event.source,
            "failures": event.failures,
            "reason": event.reason,
        })

    def _on_circuit_close(self, event: CircuitEvent) -> None:
        self.emitter.emit(EventType.CIRCUIT_CLOSE, {"source": event.source})

    # ── Execute ───────────────────────────────────────────────────────────

    async def execute(self, mission: Mission) -> ExecutionResult:
        """Run ``mission`` to completion or first stage failure. Never raises."""
        started = self.config.clock()
        self.errors = []
        self.queued = {}
        self._mission = mission

        state, is_resume = await self._initialize_state(mission)
        self.state = state
        self.emitter.bind(state.id, mission.name)

        async with LogContext(execution_id=state.id, mission=mission.name):
            self.emitter.emit(EventType.MISSION_START, {
                "stages": len(mission.pipeline),
                "is_resume": is_resume,
                "dry_run": self.config.dry_run,
            })
            logger.info("mission.start", stages=len(mission.pipeline), is_resume=is_resume)
            self._fire(
                self.config.callbacks.on_execution_start,
                execution_id=state.id,
                mission=mission.name,
                stage_count=len(mission.pipeline),
                is_resume=is_resume,
                metadata=self.config.metadata,
            )

            failure: Exception | None = None
            try:
                resources = self._initialize_resources(mission)
                self._resources = resources
                self.handlers = StepHandlers(HandlerServices(
                    mission_name=mission.name,
                    execution_id=state.id,
                    emitter=self.emitter,
                    state=state,
                    sync_store=self._sync_store(mission),
                    webhook_registry=self.webhook_registry,
                    persist=self._persist,
                    dry_run=self.config.dry_run,
                    mock_data=self.config.mock_data,
                    max_pages=self.settings.max_pagination_pages,
                    webhook_timeout_ms=self.settings.webhook_timeout_ms,
                    errors=self.errors,
                ))
                await self._run_pipeline(mission, state, ExecutionScope(resources))
            except Exception as e:
                failure = e
                if self.handlers is None or not self.handlers.is_recorded(e):
                    self.errors.append(ErrorRecord(
                        action="mission",
                        step="execute",
                        message=_message(e),
                        error_type=type(e).__name__,
                    ))
            finally:
                await self._close_sources()

            duration_ms = int((self.config.clock() - started) * 1000)
            state.status = ExecutionStatus.FAILED if failure is not None else ExecutionStatus.COMPLETED
            state.completed_at = utc_now()
            state.duration_ms = duration_ms
            try:
                await self._persist()
            except Exception as e:
                logger.error("state.persist_failed", error=str(e))
                self.errors.append(ErrorRecord(action="mission", step="persist", message=_message(e)))

            success = len(self.errors) == 0
            if success:
                self.emitter.emit(EventType.MISSION_COMPLETE, {"duration_ms": duration_ms})
                logger.info("mission.complete", duration_ms=duration_ms)
            else:
                self.emitter.emit(EventType.MISSION_FAILED, {
                    "duration_ms": duration_ms,
                    "errors": [e.to_dict() for e in self.errors],
                })
                logger.error("mission.failed", duration_ms=duration_ms, errors=len(self.errors))
            self._fire(
                self.config.callbacks.on_execution_complete,
                execution_id=state.id,
                success=success,
                duration_ms=duration_ms,
                errors=list(self.errors),
            )

        return ExecutionResult(
            success=success,
            duration_ms=duration_ms,
            errors=list(self.errors),
            stores=dict(self._resources.stores) if self._resources else {},
            execution_id=state.id,
            queued=self.queued,
            state=state,
        )

    def _fire(self, callback: Callable[..., Any] | None, **kwargs: Any) -> None:
        if callback is None:
            return
        try:
            callback(**kwargs)
        except Exception as e:  # noqa: BLE001 - progress UIs must not break a run
            logger.warning("callback.failed", callback=getattr(callback, "__name__", repr(callback)), error=str(e))

    # ── Initialization ────────────────────────────────────────────────────

    async def _initialize_state(self, mission: Mission) -> tuple[ExecutionState, bool]:
        stage_names = [stage.name for stage in mission.pipeline]

        if self.config.resume_from and self.execution_store is not None:
            previous = None
            try:
                previous = await self.execution_store.load(self.config.resume_from)
            except Exception as e:
                logger.warning("resume.load_failed", execution_id=self.config.resume_from, error=str(e))

            if previous is not None and previous.mission == mission.name and len(previous.stages) == len(stage_names):
                previous.status = ExecutionStatus.RUNNING
                previous.completed_at = None
                await self._persist_state(previous)
                logger.info("resume.start", execution_id=previous.id, resume_index=find_resume_point(previous))
                return previous, True
            logger.warning("resume.not_found", execution_id=self.config.resume_from)
        elif self.config.resume_from:
            logger.warning("resume.no_store", execution_id=self.config.resume_from)

        state = create_execution_state(mission.name, stage_names, self.config.metadata)
        state.status = ExecutionStatus.RUNNING
        await self._persist_state(state)
        return state, False

    def _initialize_resources(self, mission: Mission) -> MissionResources:
        sources: dict[str, HttpClient] = {}
        for source in mission.sources:
            base_url = source.resolved_base_url()
            if not base_url:
                raise ConfigError(f"Source {source.name} has no base URL")
            if source.rate_limit is not None:
                self.rate_limiter.configure(source.name, source.rate_limit)
            if source.circuit_breaker is not None:
                self.circuit_breakers.configure(source.name, source.circuit_breaker)

            sources[source.name] = HttpClient(
                base_url,
                source=source.name,
                headers=dict(source.headers),
                auth=self.config.auth.get(source.name, source.auth),
                rate_limiter=self.rate_limiter,
                circuit_breakers=self.circuit_breakers,
                timeout=self.settings.http_timeout,
                max_attempts=self.settings.http_max_attempts,
                transport=self.config.http_transport,
                sleep=self.config.sleep,
            )
            logger.debug("source.initialized", source=source.name, base_url=base_url)

        stores: dict[str, StoreAdapter] = {}
        for store in mission.stores:
            custom = self.config.stores.get(store.name)
            if custom is not None:
                stores[store.name] = custom
            else:
                stores[store.name] = create_store(
                    store.store_type, store.target_name, self.data_dir, self.development_mode
                )
            logger.debug("store.initialized", store=store.name, custom=custom is not None)

        return MissionResources(mission=mission, sources=sources, stores=stores)

    def _sync_store(self, mission: Mission) -> SyncStore:
        return self.config.sync_store or FileSyncStore(mission.name, self.data_dir / "sync")

    async def _close_sources(self) -> None:
        if self._resources is None:
            return
        for client in self._resources.sources.values():
            await client.aclose()

    async def _persist_state(self, state: ExecutionState) -> None:
        if self.execution_store is not None:
            await self.execution_store.save(state)

    async def _persist(self) -> None:
        if self.state is not None:
            await self._persist_state(self.state)

    # ── Pipeline ──────────────────────────────────────────────────────────

    async def _run_pipeline(self, mission: Mission, state: ExecutionState, root: ExecutionScope) -> None:
        resume_index = find_resume_point(state)
        if resume_index < 0:
            logger.info("pipeline.nothing_to_run")
            return
        if resume_index > 0:
            logger.info("pipeline.resume", stage_index=resume_index, stage=mission.pipeline[resume_index].name)

        for index, stage in enumerate(mission.pipeline):
            if index < resume_index:
                logger.debug("stage.already_done", stage_index=index, stage=stage.name)
                continue
            await self._run_stage(index, stage, mission, state, root)

    async def _run_stage(
        self,
        index: int,
        stage: Stage,
        mission: Mission,
        state: ExecutionState,
        root: ExecutionScope,
    ) -> None:
        name = stage.name
        total = len(mission.pipeline)

        if stage.condition is not None and not evaluate(stage.condition, root):
            update_stage_state(state, index, StageStatus.SKIPPED)
            clear_checkpoint(state)
            await self._persist()
            self.emitter.emit(EventType.STAGE_COMPLETE, {
                "index": index, "stage": name, "success": True, "skipped": True,
            })
            logger.info("stage.skipped", stage_index=index, stage=name)
            return

        update_stage_state(state, index, StageStatus.RUNNING)
        await self._persist()
        self.emitter.emit(EventType.STAGE_START, {"index": index, "stage": name, "parallel": stage.is_parallel})
        logger.info("stage.start", stage_index=index, stage=name)
        self._fire(self.config.callbacks.on_stage_start, index=index, name=name, stage_count=total)
        started = self.config.clock()

        try:
            if stage.is_parallel:
                await self._run_parallel(index, stage, mission, root)
            else:
                action = self._require_action(mission, stage.actions[0])
                await self.run_action(action, root, index)
        except Exception as e:
            message = _message(e)
            step = e.context.step if isinstance(e, MissionError) and e.context.step else "unknown"
            update_stage_state(state, index, StageStatus.FAILED, error=message, step=step)
            await self._persist()
            duration_ms = int((self.config.clock() - started) * 1000)
            self.emitter.emit(EventType.STAGE_COMPLETE, {
                "index": index, "stage": name, "success": False, "error": message, "duration_ms": duration_ms,
            })
            logger.error("stage.failed", stage_index=index, stage=name, error=message)
            self._fire(
                self.config.callbacks.on_stage_complete,
                index=index, name=name, success=False, duration_ms=duration_ms, error=message,
            )
            raise

        update_stage_state(state, index, StageStatus.COMPLETED)
        clear_checkpoint(state)
        await self._persist()
        duration_ms = int((self.config.clock() - started) * 1000)
        self.emitter.emit(EventType.STAGE_COMPLETE, {
            "index": index, "stage": name, "success": True, "duration_ms": duration_ms,
        })
        logger.info("stage.complete", stage_index=index, stage=name, duration_ms=duration_ms)
        self._fire(
            self.config.callbacks.on_stage_complete,
            index=index, name=name, success=True, duration_ms=duration_ms, error=None,
        )

    async def _run_parallel(self, index: int, stage: Stage, mission: Mission, root: ExecutionScope) -> None:
        actions = [self._require_action(mission, name) for name in stage.actions]
        results = await asyncio.gather(
            *(self.run_action(action, root, index) for action in actions),
            return_exceptions=True,
        )

        failures: list[tuple[str, Exception]] = []
        for action, result in zip(actions, results):
            if isinstance(result, Exception):
                failures.append((action.name, result))
            elif isinstance(result, BaseException):
                raise result

        if failures:
            detail = "; ".join(f"{name}: {_message(error)}" for name, error in failures)
            error = StageError(f"Parallel stage failed: {detail}", actions=[name for name, _ in failures])
            if self.handlers is not None and all(self.handlers.is_recorded(e) for _, e in failures):
                self.handlers.mark_recorded(error)
            raise error

    def _require_action(self, mission: Mission, name: str) -> ActionDefinition:
        action = mission.get_action(name)
        if action is None:
            raise ConfigError(f"Action not found: {name}")
        return action

    # ── Actions and flow results ──────────────────────────────────────────

    async def run_action(
        self,
        action: ActionDefinition,
        parent: ExecutionScope,
        stage_index: int | None = None,
        *,
        depth: int = 0,
    ) -> None:
        """Run ``action`` in a fresh child of ``parent``, honouring flow results."""
        if depth > MAX_JUMP_DEPTH:
            raise FlowError(f"Jump depth exceeded ({MAX_JUMP_DEPTH}) at action {action.name}")

        logger.debug("action.start", action=action.name, stage_index=stage_index)
        scope = parent.child()
        attempt = 1
        start = 0

        while True:
            result, position = await self._run_steps_from(action, scope, stage_index, start)

            match result:
                case Continue() | Skip():
                    logger.debug("action.complete", action=action.name, flow=result.kind)
                    return

                case Queue():
                    await self._enqueue(result, scope)
                    return

                case Abort(message=message):
                    raise AbortError(message)

                case Retry(backoff=backoff):
                    attempt = await self._next_attempt(action, attempt, backoff, stage_index)
                    scope = parent.child()
                    start = 0

                case Jump(action=target_name, then=then):
                    target = self._mission.get_action(target_name) if self._mission else None
                    if target is None:
                        raise FlowError(f"Unknown jump target: {target_name}")
                    logger.info("action.jump", action=action.name, target=target_name, then=then)
                    await self.run_action(target, parent, stage_index, depth=depth + 1)

                    if then == "retry":
                        attempt = await self._next_attempt(action, attempt, None, stage_index)
                        scope = parent.child()
                        start = 0
                    elif then == "continue":
                        start = position + 1
                    else:
                        return

                case _:
                    raise FlowError(f"Unknown flow result: {result!r}")

    async def _run_steps_from(
        self,
        action: ActionDefinition,
        scope: ExecutionScope,
        stage_index: int | None,
        start: int,
    ) -> tuple[FlowResult, int]:
        for position in range(start, len(action.steps)):
            ctx = StepContext(action=action.name, stage_index=stage_index, step_index=position)
            result = await self.handlers.run_step(action.steps[position], scope, ctx)
            if not is_continue(result):
                return result, position
        return Continue(), len(action.steps)

    async def _next_attempt(
        self,
        action: ActionDefinition,
        attempt: int,
        backoff: RetryConfig | None,
        stage_index: int | None,
    ) -> int:
        strategy = backoff_for(backoff)
        if not strategy.should_retry(attempt):
            raise FlowError(f"Retry limit exceeded for action {action.name}")

        delay = strategy.next_delay(attempt)
        if self.state is not None and stage_index is not None:
            self.state.stages[stage_index].attempt = attempt
        logger.info("action.retry", action=action.name, attempt=attempt + 1, delay=round(delay, 3))
        await self.config.sleep(delay)
        return attempt + 1

    async def _enqueue(self, flow: Queue, scope: ExecutionScope) -> None:
        store = scope.stores.get(flow.target) if flow.target else None
        if store is None:
            self.queued.setdefault(flow.target_name, []).append(flow.value)
            logger.info("action.queued", target=flow.target_name)
            return

        value = flow.value
        record = dict(value) if isinstance(value, Mapping) else {"value": value}
        key = str(record["id"]) if record.get("id") is not None else uuid.uuid4().hex
        await store.set(key, record)
        logger.info("action.queued", target=flow.target, key=key)


__all__ = [
    "MAX_JUMP_DEPTH",
    "ExecutorConfig",
    "ExecutionResult",
    "MissionExecutor",
]
