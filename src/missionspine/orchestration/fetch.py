"""
Fetch orchestration: one ``fetch`` step from target to data.

Architecture:
    ::

        FetchStep
          │ resolve target      operation ref → resolver (method, path)
          │                     or explicit method + interpolated path
          │ resolve since       sync store last sync → ?since=... (or expression)
          ▼
        HttpClient.request   (circuit breaker per attempt, rate limiter wait, retries)
          │  single request, or pagination loop:
          │    strategy params + since params → page → until? → items → has_more?
          ▼
        FetchResult(data, checkpoint_key) ──▶ record_checkpoint() after the step

Events:
    fetch.start, fetch.complete (status, duration, pages, records),
    fetch.error (retryable guess from the message), sync.checkpoint.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from missionspine.core.errors import ConfigError, is_retryable_message
from missionspine.core.logging import get_logger
from missionspine.core.timestamps import to_iso8601, utc_now
from missionspine.execution.events import EventEmitter, EventType
from missionspine.orchestration.expressions import evaluate, interpolate_path
from missionspine.orchestration.http import HttpClient, HttpRequest
from missionspine.orchestration.pagination import (
    MAX_PAGINATION_PAGES,
    PaginationContext,
    create_strategy,
    extract_nested_value,
)
from missionspine.orchestration.scope import ExecutionScope
from missionspine.orchestration.steps import FetchStep, SinceType
from missionspine.sync.checkpoints import (
    SyncCheckpoint,
    format_since_date,
    generate_checkpoint_key,
    parse_since_date,
)
from missionspine.sync.store import SyncStore

logger = get_logger(__name__)


@dataclass
class FetchResult:
    data: Any
    checkpoint_key: str | None = None


@dataclass(frozen=True)
class FetchTarget:
    source: str
    method: str
    path: str
    operation_id: str | None = None


def count_records(data: Any) -> int | None:
    """Length of a list response, or of the first list field of a dict."""
    if isinstance(data, list):
        return len(data)
    if isinstance(data, Mapping):
        for value in data.values():
            if isinstance(value, list):
                return len(value)
    return None


class FetchOrchestrator:
    """Runs fetch steps for one action scope."""

    def __init__(
        self,
        scope: ExecutionScope,
        *,
        sources: dict[str, HttpClient] | None = None,
        mission_name: str | None = None,
        execution_id: str | None = None,
        sync_store: SyncStore | None = None,
        emitter: EventEmitter | None = None,
        dry_run: bool = False,
        mock_data: dict[str, Any] | None = None,
        max_pages: int = MAX_PAGINATION_PAGES,
    ):
        self.scope = scope
        self.sources = sources if sources is not None else scope.sources
        self.mission_name = mission_name or scope.mission.name
        self.execution_id = execution_id
        self.sync_store = sync_store
        self.emitter = emitter
        self.dry_run = dry_run
        self.mock_data = mock_data or {}
        self.max_pages = max_pages

    def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self.emitter is not None:
            self.emitter.emit(event_type, data)

    # ── Target / since resolution ─────────────────────────────────────────

    def resolve_target(self, step: FetchStep) -> FetchTarget:
        if step.operation is not None:
            ref = step.operation
            source_def = self.scope.mission.get_source(ref.source)
            if source_def is None:
                raise ConfigError(f"Source not found: {ref.source}")
            if source_def.operations is None:
                raise ConfigError(f"Source '{ref.source}' has no operation resolver")
            operation = source_def.operations.get_operation(ref.operation_id)
            if operation is None:
                raise ConfigError(f"Unknown operation '{ref.operation_id}' on source '{ref.source}'")
            return FetchTarget(
                source=ref.source,
                method=operation.method.upper(),
                path=interpolate_path(operation.path, self.scope),
                operation_id=ref.operation_id,
            )

        source = step.source
        if source is None:
            if not self.sources:
                raise ConfigError("No sources defined; add a source before fetching")
            source = next(iter(self.sources))

        if isinstance(step.path, str):
            path = interpolate_path(step.path, self.scope)
        elif step.path is not None:
            value = evaluate(step.path, self.scope)
            path = "" if value is None else str(value)
        else:
            raise ConfigError("Fetch step needs a path or an operation reference")

        return FetchTarget(source=source, method=(step.method or "GET").upper(), path=path)

    async def resolve_since(self, step: FetchStep, target: FetchTarget) -> tuple[dict[str, str], str | None]:
        """Query params for incremental sync, plus the checkpoint key."""
        if step.since is None or self.sync_store is None:
            return {}, None

        since = step.since
        key = since.key or generate_checkpoint_key(target.source, target.operation_id, target.path)

        if since.type == SinceType.LAST_SYNC:
            last_sync = await self.sync_store.get_last_sync(key)
            value = format_since_date(last_sync, since.format)
            logger.debug("fetch.since", param=since.param, value=value, key=key)
            return {since.param: value}, key

        if since.expression is not None:
            value = evaluate(since.expression, self.scope)
            return {since.param: "" if value is None else str(value)}, key

        return {}, key

    def _static_query(self, step: FetchStep) -> dict[str, str]:
        query = {}
        for name, expr in step.query.items():
            value = evaluate(expr, self.scope)
            if value is not None:
                query[name] = str(value)
        return query

    def _headers(self, step: FetchStep) -> dict[str, str]:
        return {name: str(evaluate(expr, self.scope)) for name, expr in step.headers.items()}

    # ── Execution ─────────────────────────────────────────────────────────

    async def execute(self, step: FetchStep) -> FetchResult:
        target = self.resolve_target(step)
        client = self.sources.get(target.source)
        if client is None and not self.dry_run:
            raise ConfigError(f"Source not found: {target.source}")

        since_query, checkpoint_key = await self.resolve_since(step, target)
        query = {**self._static_query(step), **since_query}

        self._emit(EventType.FETCH_START, {
            "source": target.source,
            "method": target.method,
            "path": target.path,
            "operation_id": target.operation_id,
            "paginated": step.paginate is not None,
            "incremental": step.since is not None,
        })
        logger.info("fetch.start", source=target.source, method=target.method, path=target.path)

        if self.dry_run:
            mock_key = target.operation_id or target.path
            if mock_key in self.mock_data:
                data = self.mock_data[mock_key]
            else:
                data = {"_dryRun": True, "method": target.method, "path": target.path, "query": query}
            logger.info("fetch.dry_run", source=target.source, path=target.path)
            return FetchResult(data=data, checkpoint_key=None)

        started = time.monotonic()
        try:
            if step.paginate is not None:
                data, pages, status = await self._execute_paginated(step, client, target, query)
            else:
                body = evaluate(step.body, self.scope) if step.body is not None else None
                response = await client.request(
                    HttpRequest(
                        method=target.method,
                        path=target.path,
                        query=query or None,
                        body=body,
                        headers=self._headers(step),
                    ),
                    step.retry,
                )
                data, pages, status = response.data, 1, response.status
        except Exception as e:
            self._fetch_error(target, e)
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        records = count_records(data) or 0
        self._emit(EventType.FETCH_COMPLETE, {
            "source": target.source,
            "method": target.method,
            "path": target.path,
            "status": status,
            "duration_ms": duration_ms,
            "pages": pages,
            "records": records,
        })
        logger.info("fetch.complete", source=target.source, path=target.path,
                    status=status, pages=pages, records=records, duration_ms=duration_ms)
        return FetchResult(data=data, checkpoint_key=checkpoint_key)

    def _fetch_error(self, target: FetchTarget, error: Exception) -> None:
        message = str(error)
        self._emit(EventType.FETCH_ERROR, {
            "source": target.source,
            "path": target.path,
            "error": message,
            "retryable": is_retryable_message(message),
        })
        logger.warning("fetch.error", source=target.source, path=target.path, error=message)

    async def _execute_paginated(
        self,
        step: FetchStep,
        client: HttpClient,
        target: FetchTarget,
        base_query: dict[str, str],
    ) -> tuple[list[Any], int, int]:
        paginate = step.paginate
        strategy = create_strategy(paginate)
        ctx = PaginationContext(page=0, page_size=paginate.page_size)
        items: list[Any] = []
        status = 200

        while True:
            query = {**base_query, **strategy.build_query(ctx)}
            logger.debug("fetch.page", source=target.source, path=target.path, page=ctx.page + 1)
            response = await client.request(
                HttpRequest(method=target.method, path=target.path, query=query, headers=self._headers(step)),
                step.retry,
            )
            status = response.status
            self.scope.response = response.data

            if step.until is not None and evaluate(step.until, self.scope, response.data):
                ctx.page += 1
                break

            page = strategy.extract_results(response.data, ctx)
            items.extend(page.items)
            if page.next_cursor:
                ctx.cursor = page.next_cursor
            ctx.page += 1

            if not page.has_more:
                break
            if ctx.page >= self.max_pages:
                logger.warning("fetch.page_limit", source=target.source, path=target.path, limit=self.max_pages)
                break

        return items, ctx.page, status

    async def record_checkpoint(self, key: str, step: FetchStep, data: Any) -> SyncCheckpoint | None:
        """Store the sync checkpoint for a successful incremental fetch."""
        if self.sync_store is None:
            return None

        synced_at = utc_now()
        if step.since is not None and step.since.update_from and isinstance(data, Mapping):
            parsed = parse_since_date(extract_nested_value(data, step.since.update_from))
            if parsed is not None:
                synced_at = parsed

        checkpoint = SyncCheckpoint(
            key=key,
            synced_at=synced_at,
            record_count=count_records(data),
            mission=self.mission_name,
            execution_id=self.execution_id,
        )
        await self.sync_store.record_sync(checkpoint)

        self._emit(EventType.SYNC_CHECKPOINT, {
            "key": key,
            "synced_at": to_iso8601(synced_at),
            "records": checkpoint.record_count or 0,
        })
        logger.info("sync.checkpoint", key=key, synced_at=to_iso8601(synced_at))
        return checkpoint


__all__ = [
    "FetchResult",
    "FetchTarget",
    "FetchOrchestrator",
    "count_records",
]
