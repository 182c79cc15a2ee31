"""
Step handlers: one coroutine per step kind.

``StepHandlers.run_step`` is the single entry point the executor (and the
bodies of ``for`` loops and ``match`` arms) use to run a step. It wraps the
kind-specific handler with the bookkeeping every step shares:

    step.start ──▶ dispatch (exhaustive match on the Step union)
                    │
                    ├── returns FlowResult ──▶ step.complete(flow=<kind>)
                    └── raises ──▶ error recorded {action, step, message}
                                   step.error emitted, exception re-raised

Handlers never swap a shared "current context": the scope they run in is
an argument, and nested bodies get child scopes.

Tags:
    steps, handlers, dispatch, flow-control
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, assert_never

from missionspine.core.errors import (
    EvaluationError,
    MissionError,
    NoMatchError,
    StepError,
    ValidationError,
)
from missionspine.core.logging import get_logger
from missionspine.execution.events import EventEmitter, EventType
from missionspine.execution.state import (
    ExecutionState,
    WebhookWaitState,
    set_checkpoint,
)
from missionspine.orchestration.expressions import Identifier, evaluate
from missionspine.orchestration.fetch import FetchOrchestrator
from missionspine.orchestration.flow import CONTINUE, FlowResult, Queue, Retry, is_continue
from missionspine.orchestration.pagination import MAX_PAGINATION_PAGES
from missionspine.orchestration.schema_matcher import WILDCARD, find_matching_schema, matches_schema
from missionspine.orchestration.scope import ExecutionScope
from missionspine.orchestration.steps import (
    ApplyStep,
    FetchStep,
    ForStep,
    LetStep,
    MapStep,
    MatchStep,
    Severity,
    Step,
    StoreStep,
    ValidateStep,
    WaitStep,
    step_kind,
)
from missionspine.sync.store import SyncStore
from missionspine.webhooks.registry import DEFAULT_TIMEOUT_MS, WebhookRegistrationRequest, WebhookRegistry

logger = get_logger(__name__)


@dataclass
class ErrorRecord:
    """One entry of ``ExecutionResult.errors``."""

    action: str
    step: str
    message: str
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result = {"action": self.action, "step": self.step, "message": self.message}
        if self.error_type:
            result["error_type"] = self.error_type
        return result


@dataclass(frozen=True)
class StepContext:
    """Where a step runs: its action, stage and top-level step index."""

    action: str
    stage_index: int | None = None
    step_index: int = 0


@dataclass
class HandlerServices:
    """Run-wide collaborators shared by every handler."""

    mission_name: str
    execution_id: str | None = None
    emitter: EventEmitter = field(default_factory=EventEmitter)
    state: ExecutionState | None = None
    sync_store: SyncStore | None = None
    webhook_registry: WebhookRegistry | None = None
    persist: Callable[[], Awaitable[None]] | None = None
    dry_run: bool = False
    mock_data: dict[str, Any] = field(default_factory=dict)
    max_pages: int = MAX_PAGINATION_PAGES
    webhook_timeout_ms: int = DEFAULT_TIMEOUT_MS
    errors: list[ErrorRecord] = field(default_factory=list)


class StepHandlers:
    """Dispatches steps to their handlers and records step failures."""

    def __init__(self, services: HandlerServices):
        self.services = services
        self._recorded: list[BaseException] = []

    # ── Bookkeeping ───────────────────────────────────────────────────────

    def is_recorded(self, error: BaseException) -> bool:
        return any(error is seen for seen in self._recorded)

    def mark_recorded(self, error: BaseException) -> None:
        if not self.is_recorded(error):
            self._recorded.append(error)

    def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        self.services.emitter.emit(event_type, data)

    async def run_step(self, step: Step, scope: ExecutionScope, ctx: StepContext) -> FlowResult:
        kind = step_kind(step)
        self._emit(EventType.STEP_START, {"action": ctx.action, "step": kind, "index": ctx.step_index})
        started = time.monotonic()

        try:
            result = await self.execute_step(step, scope, ctx)
        except Exception as e:
            error = e if isinstance(e, MissionError) else StepError(str(e) or type(e).__name__, cause=e)
            if error.context.step is None:
                error.with_context(action=ctx.action, step=kind, stage_index=ctx.stage_index)
            if not self.is_recorded(error):
                self.services.errors.append(ErrorRecord(
                    action=ctx.action,
                    step=kind,
                    message=error.message,
                    error_type=type(error).__name__,
                ))
                self.mark_recorded(error)
                self._emit(EventType.STEP_ERROR, {"action": ctx.action, "step": kind, "error": error.message})
                logger.error("step.error", action=ctx.action, step=kind, error=error.message)
            if error is e:
                raise
            raise error from e

        self._emit(EventType.STEP_COMPLETE, {
            "action": ctx.action,
            "step": kind,
            "flow": result.kind,
            "duration_ms": int((time.monotonic() - started) * 1000),
        })
        return result

    async def run_steps(self, steps: tuple[Step, ...], scope: ExecutionScope, ctx: StepContext) -> FlowResult:
        """Run a nested body; the first non-continue result stops it."""
        for step in steps:
            result = await self.run_step(step, scope, ctx)
            if not is_continue(result):
                return result
        return CONTINUE

    async def execute_step(self, step: Step, scope: ExecutionScope, ctx: StepContext) -> FlowResult:
        match step:
            case FetchStep():
                return await self._execute_fetch(step, scope, ctx)
            case ForStep():
                return await self._execute_for(step, scope, ctx)
            case MapStep():
                return self._execute_map(step, scope)
            case ValidateStep():
                return self._execute_validate(step, scope, ctx)
            case StoreStep():
                return await self._execute_store(step, scope)
            case MatchStep():
                return await self._execute_match(step, scope, ctx)
            case LetStep():
                scope.set(step.name, evaluate(step.value, scope))
                return CONTINUE
            case ApplyStep():
                return self._execute_apply(step, scope)
            case WaitStep():
                return await self._execute_wait(step, scope, ctx)
            case _:
                assert_never(step)

    # ── fetch ─────────────────────────────────────────────────────────────

    async def _execute_fetch(self, step: FetchStep, scope: ExecutionScope, ctx: StepContext) -> FlowResult:
        services = self.services
        orchestrator = FetchOrchestrator(
            scope,
            mission_name=services.mission_name,
            execution_id=services.execution_id,
            sync_store=services.sync_store,
            emitter=services.emitter,
            dry_run=services.dry_run,
            mock_data=services.mock_data,
            max_pages=services.max_pages,
        )
        result = await orchestrator.execute(step)
        scope.response = result.data

        if result.checkpoint_key and not services.dry_run:
            await orchestrator.record_checkpoint(result.checkpoint_key, step, result.data)
        return CONTINUE

    # ── for ───────────────────────────────────────────────────────────────

    async def _collection(self, step: ForStep, scope: ExecutionScope) -> Any:
        if isinstance(step.collection, Identifier):
            name = step.collection.name
            store = scope.stores.get(name)
            if store is not None:
                return await store.list()
            if scope.has(name):
                return scope.get(name)
        return evaluate(step.collection, scope)

    async def _execute_for(self, step: ForStep, scope: ExecutionScope, ctx: StepContext) -> FlowResult:
        collection = await self._collection(step, scope)
        if not isinstance(collection, list):
            raise StepError(f"Cannot iterate over non-array: {type(collection).__name__}")

        if step.where is not None:
            items = [
                item for item in collection
                if evaluate(step.where, scope.child(**{step.variable: item}), item)
            ]
        else:
            items = list(collection)

        total = len(items)
        self._emit(EventType.LOOP_START, {
            "action": ctx.action,
            "variable": step.variable,
            "total": total,
            "filtered": len(collection) - total,
        })
        self._track_items(ctx, processed=0, total=total)

        result: FlowResult = CONTINUE
        processed = 0
        for index, item in enumerate(items):
            self._emit(EventType.LOOP_ITERATION, {"variable": step.variable, "index": index, "total": total})
            item_scope = scope.child(**{step.variable: item})
            self._checkpoint(ctx, item_index=index, variables=scope.snapshot())

            result = await self.run_steps(step.steps, item_scope, ctx)
            processed += 1
            self._track_items(ctx, processed=processed, total=total)
            if not is_continue(result):
                logger.debug("loop.interrupted", variable=step.variable, index=index, flow=result.kind)
                break

        self._emit(EventType.LOOP_COMPLETE, {
            "variable": step.variable,
            "total": total,
            "processed": processed,
            "flow": result.kind,
        })
        return result

    def _track_items(self, ctx: StepContext, *, processed: int, total: int) -> None:
        state = self.services.state
        if state is None or ctx.stage_index is None:
            return
        stage = state.stages[ctx.stage_index]
        stage.items_processed = processed
        stage.items_total = total

    def _checkpoint(self, ctx: StepContext, **kwargs: Any) -> None:
        state = self.services.state
        if state is None or ctx.stage_index is None:
            return
        set_checkpoint(state, ctx.stage_index, ctx.step_index, **kwargs)

    # ── map / validate / store ────────────────────────────────────────────

    def _execute_map(self, step: MapStep, scope: ExecutionScope) -> FlowResult:
        source = evaluate(step.source, scope)
        scope.response = {m.field: evaluate(m.expression, scope, source) for m in step.mappings}
        logger.debug("map.complete", target_schema=step.target_schema, fields=len(step.mappings))
        return CONTINUE

    def _execute_validate(self, step: ValidateStep, scope: ExecutionScope, ctx: StepContext) -> FlowResult:
        target = evaluate(step.target, scope)

        for constraint in step.constraints:
            if evaluate(constraint.condition, scope, target):
                continue
            message = constraint.message or f"Validation failed: {constraint.field or constraint.condition!r}"
            if constraint.severity == Severity.ERROR:
                raise ValidationError(message).with_context(action=ctx.action, step="validate")
            logger.warning("validate.warning", action=ctx.action, message=message)

        return CONTINUE

    async def _execute_store(self, step: StoreStep, scope: ExecutionScope) -> FlowResult:
        store = scope.stores.get(step.target)
        if store is None:
            raise StepError(f"Store not found: {step.target}")

        source = evaluate(step.source, scope)
        items = source if isinstance(source, list) else [source]

        for item in items:
            record = dict(item) if isinstance(item, Mapping) else {"value": item}
            if step.options.key is not None:
                key = str(evaluate(step.options.key, scope, record))
            elif record.get("id") is not None:
                key = str(record["id"])
            else:
                key = uuid.uuid4().hex

            if step.options.partial:
                record["_partial"] = True

            if step.options.upsert:
                await store.update(key, record)
            else:
                await store.set(key, record)

        logger.debug("store.complete", store=step.target, records=len(items))
        return CONTINUE

    # ── match / apply ─────────────────────────────────────────────────────

    async def _execute_match(self, step: MatchStep, scope: ExecutionScope, ctx: StepContext) -> FlowResult:
        value = evaluate(step.target, scope) if step.target is not None else scope.response
        schemas = scope.mission.schema_map

        for arm in step.arms:
            if arm.schema != WILDCARD and find_matching_schema(value, [arm.schema], schemas) is None:
                continue
            if arm.guard is not None and not evaluate(arm.guard, scope, value):
                continue

            logger.debug("match.arm", action=ctx.action, schema=arm.schema, guarded=arm.guard is not None)

            if arm.flow is not None:
                if isinstance(arm.flow, Queue):
                    return Queue(target=arm.flow.target, value=value)
                return arm.flow

            if arm.steps:
                scope.response = value
                return await self.run_steps(arm.steps, scope, ctx)
            return CONTINUE

        raise NoMatchError(value)

    def _execute_apply(self, step: ApplyStep, scope: ExecutionScope) -> FlowResult:
        transform = scope.mission.get_transform(step.transform)
        if transform is None:
            raise StepError(f"Transform not found: {step.transform}")

        source = evaluate(step.source, scope) if step.source is not None else scope.response
        schemas = scope.mission.schema_map

        for variant in transform.variants:
            if variant.source_schema not in (None, WILDCARD):
                schema = schemas.get(variant.source_schema)
                if schema is None:
                    logger.warning("apply.unknown_schema", transform=transform.name, schema=variant.source_schema)
                    continue
                if not matches_schema(source, schema):
                    continue
            if variant.guard is not None and not evaluate(variant.guard, scope, source):
                continue

            mapped = {m.field: evaluate(m.expression, scope, source) for m in variant.mappings}
            if step.as_var:
                scope.set(step.as_var, mapped)
            else:
                scope.response = mapped
            return CONTINUE

        raise StepError(f"No matching transform variant in {transform.name}")

    # ── wait ──────────────────────────────────────────────────────────────

    async def _execute_wait(self, step: WaitStep, scope: ExecutionScope, ctx: StepContext) -> FlowResult:
        registry = self.services.webhook_registry
        if registry is None:
            raise StepError("Wait step needs a webhook registry")

        timeout_ms = step.timeout_ms or self.services.webhook_timeout_ms
        registration = registry.register(WebhookRegistrationRequest(
            execution_id=self.services.execution_id or "ephemeral",
            path=step.path,
            timeout_ms=timeout_ms,
            expected_events=step.expected_events,
        ))
        try:
            self._emit(EventType.WEBHOOK_REGISTER, {
                "registration_id": registration.id,
                "path": registration.path,
                "url": registration.url,
                "timeout_ms": timeout_ms,
                "expected_events": step.expected_events,
            })
            scope.response = {
                "webhookId": registration.id,
                "webhookUrl": registration.url,
                "webhookPath": registration.path,
            }

            self._checkpoint(ctx, variables=scope.snapshot(), webhook_wait=WebhookWaitState(
                registration_id=registration.id,
                path=registration.path,
                webhook_url=registration.url,
                expected_events=registration.expected_events,
                received_events=0,
                wait_started_at=registration.created_at,
                expires_at=registration.expires_at,
            ))
            if self.services.persist is not None:
                await self.services.persist()

            result = await registry.wait_for_events(registration.id, timeout_ms)
            events = result.events

            if result.timed_out:
                logger.warning("webhook.timeout", path=registration.path, received=len(events))
                if step.retry_on_timeout:
                    return Retry()
                if not events:
                    raise StepError(
                        f"Webhook timeout: no events received within {timeout_ms}ms"
                    )

            if step.filter is not None:
                events = [e for e in events if self._event_passes(step, scope, e.body)]

            self._emit(EventType.WEBHOOK_EVENT, {
                "registration_id": registration.id,
                "received": len(events),
                "timed_out": result.timed_out,
            })
            bodies = [e.body for e in events]
            scope.response = bodies[0] if len(bodies) == 1 else bodies

            if step.store_to:
                await self._store_events(step, scope, events)
            return CONTINUE
        finally:
            registry.unregister(registration.id)

    def _event_passes(self, step: WaitStep, scope: ExecutionScope, body: Any) -> bool:
        event_scope = scope.child()
        event_scope.response = body
        try:
            return bool(evaluate(step.filter, event_scope, body))
        except EvaluationError as e:
            logger.debug("webhook.filter_failed", error=str(e))
            return True

    async def _store_events(self, step: WaitStep, scope: ExecutionScope, events: list[Any]) -> None:
        store = scope.stores.get(step.store_to)
        if store is None:
            logger.warning("webhook.store_missing", store=step.store_to)
            return
        for event in events:
            record = dict(event.body) if isinstance(event.body, Mapping) else {"value": event.body}
            if step.store_key is not None:
                event_scope = scope.child()
                event_scope.response = event.body
                key = str(evaluate(step.store_key, event_scope, event.body))
            else:
                key = event.id
            await store.set(key, record)


__all__ = [
    "ErrorRecord",
    "StepContext",
    "HandlerServices",
    "StepHandlers",
]
