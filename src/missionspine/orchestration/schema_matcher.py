"""
Schema matching for ``match`` and ``apply`` steps.

Matching is open-world: a value matches when every required field is present
with a compatible type; extra fields never disqualify it. Nested objects
are checked only for being objects.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import Any

from missionspine.core.timestamps import from_iso8601
from missionspine.orchestration.mission import FieldKind, FieldType, SchemaDefinition

WILDCARD = "_"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_date(value: Any) -> bool:
    if isinstance(value, (datetime, date)):
        return True
    if isinstance(value, str):
        try:
            return from_iso8601(value) is not None
        except ValueError:
            return False
    return False


def matches_primitive(value: Any, type_name: str) -> bool:
    match type_name:
        case "string":
            return isinstance(value, str)
        case "int" | "integer":
            if isinstance(value, float):
                return value.is_integer()
            return _is_number(value)
        case "decimal" | "number" | "float" | "double":
            return _is_number(value)
        case "boolean" | "bool":
            return isinstance(value, bool)
        case "date" | "datetime":
            return _is_date(value)
        case _:
            # "any" and unknown names
            return True


def matches_field_type(value: Any, field_type: FieldType) -> bool:
    match field_type.kind:
        case FieldKind.PRIMITIVE:
            return matches_primitive(value, field_type.name)
        case FieldKind.COLLECTION | FieldKind.TUPLE:
            return isinstance(value, list)
        case FieldKind.REFERENCE:
            return isinstance(value, Mapping)
        case FieldKind.RANGE:
            return _is_number(value)
        case _:
            # union, generator and expression types cannot be checked statically
            return True


def matches_schema(value: Any, schema: SchemaDefinition) -> bool:
    """True when ``value`` carries every required field of ``schema``."""
    if not isinstance(value, Mapping):
        return False

    for field_def in schema.fields:
        if field_def.name not in value:
            if field_def.optional:
                continue
            return False
        field_value = value[field_def.name]
        if field_value is None and field_def.optional:
            continue
        if not matches_field_type(field_value, field_def.type):
            return False
    return True


def find_matching_schema(
    value: Any,
    names: Iterable[str],
    schemas: Mapping[str, SchemaDefinition],
) -> str | None:
    """First name in ``names`` whose schema matches; ``_`` matches anything.

    Names without a schema definition are skipped.
    """
    for name in names:
        if name == WILDCARD:
            return WILDCARD
        schema = schemas.get(name)
        if schema is not None and matches_schema(value, schema):
            return name
    return None


__all__ = [
    "WILDCARD",
    "matches_primitive",
    "matches_field_type",
    "matches_schema",
    "find_matching_schema",
]
