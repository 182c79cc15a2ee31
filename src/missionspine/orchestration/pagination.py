"""
Pagination strategies.

A strategy answers two questions per page: which query parameters request
it, and which items (and which cursor) came back. The fetch orchestrator
drives the loop; strategies hold no state beyond a cache of where items
were found in the previous page.

    offset   ?<param>=page*page_size        has_more = len(items) >= page_size
    page     ?<param>=page+1                has_more = len(items) >= page_size
    cursor   ?<param>=<cursor> (when known) has_more = next cursor found

Items come from ``items_path`` when configured, else from the first
list-valued field of the response in key order.

Example:
    >>> strategy = create_strategy(PaginationConfig(PaginationType.OFFSET, "offset", page_size=3))
    >>> strategy.build_query(PaginationContext(page=2, page_size=3))
    {'offset': '6'}
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, assert_never

from missionspine.core.errors import ConfigError
from missionspine.orchestration.steps import PaginationConfig, PaginationType

MAX_PAGINATION_PAGES = 100


@dataclass
class PaginationContext:
    page: int = 0
    page_size: int = 100
    cursor: str | None = None


@dataclass
class PageResult:
    items: list[Any] = field(default_factory=list)
    has_more: bool = False
    next_cursor: str | None = None


def extract_nested_value(data: Any, path: str) -> Any:
    """Walk a dotted path through nested mappings; ``None`` when missing."""
    value = data
    for part in path.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


class PaginationStrategy(ABC):
    """Base for the three pagination kinds."""

    def __init__(self, config: PaginationConfig):
        self.config = config
        self._items_key: str | None = None

    def reset_cache(self) -> None:
        self._items_key = None

    @abstractmethod
    def build_query(self, ctx: PaginationContext) -> dict[str, str]: ...

    @abstractmethod
    def extract_results(self, response: Any, ctx: PaginationContext) -> PageResult: ...

    def extract_items(self, response: Any) -> list[Any]:
        if not isinstance(response, Mapping):
            return []

        if self.config.items_path:
            items = extract_nested_value(response, self.config.items_path)
            return items if isinstance(items, list) else []

        if self._items_key is not None and isinstance(response.get(self._items_key), list):
            return response[self._items_key]

        for key, value in response.items():
            if isinstance(value, list):
                self._items_key = key
                return value
        return []


class OffsetPaginationStrategy(PaginationStrategy):
    def build_query(self, ctx: PaginationContext) -> dict[str, str]:
        return {self.config.param: str(ctx.page * ctx.page_size)}

    def extract_results(self, response: Any, ctx: PaginationContext) -> PageResult:
        items = self.extract_items(response)
        return PageResult(items=items, has_more=bool(items) and len(items) >= ctx.page_size)


class PageNumberPaginationStrategy(PaginationStrategy):
    def build_query(self, ctx: PaginationContext) -> dict[str, str]:
        # 1-indexed on the wire
        return {self.config.param: str(ctx.page + 1)}

    def extract_results(self, response: Any, ctx: PaginationContext) -> PageResult:
        items = self.extract_items(response)
        return PageResult(items=items, has_more=bool(items) and len(items) >= ctx.page_size)


class CursorPaginationStrategy(PaginationStrategy):
    def build_query(self, ctx: PaginationContext) -> dict[str, str]:
        if ctx.cursor:
            return {self.config.param: ctx.cursor}
        return {}

    def extract_results(self, response: Any, ctx: PaginationContext) -> PageResult:
        if not isinstance(response, Mapping):
            return PageResult()

        items = self.extract_items(response)
        next_cursor = None
        if self.config.cursor_path:
            value = extract_nested_value(response, self.config.cursor_path)
            if value not in (None, "", False):
                next_cursor = str(value)
        return PageResult(items=items, has_more=next_cursor is not None, next_cursor=next_cursor)


def create_strategy(config: PaginationConfig) -> PaginationStrategy:
    try:
        kind = PaginationType(config.type)
    except ValueError as e:
        raise ConfigError(f"Unknown pagination type: {config.type}") from e

    match kind:
        case PaginationType.OFFSET:
            return OffsetPaginationStrategy(config)
        case PaginationType.PAGE:
            return PageNumberPaginationStrategy(config)
        case PaginationType.CURSOR:
            return CursorPaginationStrategy(config)
        case _:
            assert_never(kind)


__all__ = [
    "MAX_PAGINATION_PAGES",
    "PaginationContext",
    "PageResult",
    "PaginationStrategy",
    "OffsetPaginationStrategy",
    "PageNumberPaginationStrategy",
    "CursorPaginationStrategy",
    "create_strategy",
    "extract_nested_value",
]
