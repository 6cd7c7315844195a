"""
Tagged-union value type shared by configuration, parameters, variables and
node outputs.

Workflow documents carry heterogeneous values (strings, numbers, flags,
timestamps, nested lists and maps). Rather than passing raw ``Any`` around
and inspecting types at every use site, values are wrapped once in a
:class:`Value` whose ``kind`` says what it holds. Conversions between kinds go
through the explicit coercion functions below, which are best-effort and
never raise: an unconvertible value yields the caller's default.

Example:
    >>> v = Value.of("42")
    >>> v.kind
    <ValueKind.STRING: 'string'>
    >>> as_int(v)
    42
    >>> as_bool(v, default=False)
    False
    >>> Value.of({"rows": [1, 2]}).to_python()
    {'rows': [1, 2]}
"""

from __future__ import annotations

import json
import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from spindle.core.timestamps import from_iso8601


class ValueKind(str, Enum):
    """Discriminator of a :class:`Value`."""

    NULL = "null"
    STRING = "string"
    INT = "int"
    FLOAT = "float"
    BOOL = "bool"
    TIMESTAMP = "timestamp"
    LIST = "list"
    MAP = "map"


# Parameter type names used by definitions and templates, keyed by kind.
PARAMETER_TYPE_NAMES: dict[ValueKind, str] = {
    ValueKind.STRING: "string",
    ValueKind.INT: "integer",
    ValueKind.FLOAT: "number",
    ValueKind.BOOL: "boolean",
    ValueKind.TIMESTAMP: "datetime",
}


@dataclass(frozen=True)
class Value:
    """An immutable, kind-tagged value.

    ``data`` holds the payload for the kind: ``str``, ``int``, ``float``,
    ``bool``, timezone-aware ``datetime``, ``tuple[Value, ...]`` for lists,
    ``dict[str, Value]`` for maps, ``None`` for null.
    """

    kind: ValueKind
    data: Any = None

    @classmethod
    def of(cls, raw: Any) -> Value:
        """Wrap a plain Python value (recursively for lists and maps)."""
        if isinstance(raw, Value):
            return raw
        if raw is None:
            return NULL
        if isinstance(raw, bool):
            return cls(ValueKind.BOOL, raw)
        if isinstance(raw, int):
            return cls(ValueKind.INT, raw)
        if isinstance(raw, float):
            return cls(ValueKind.FLOAT, raw)
        if isinstance(raw, str):
            return cls(ValueKind.STRING, raw)
        if isinstance(raw, datetime):
            return cls(ValueKind.TIMESTAMP, raw if raw.tzinfo else raw.replace(tzinfo=UTC))
        if isinstance(raw, date):
            return cls(ValueKind.TIMESTAMP, datetime(raw.year, raw.month, raw.day, tzinfo=UTC))
        if isinstance(raw, Mapping):
            return cls(ValueKind.MAP, {str(k): cls.of(v) for k, v in raw.items()})
        if isinstance(raw, Sequence) and not isinstance(raw, (bytes, bytearray)):
            return cls(ValueKind.LIST, tuple(cls.of(item) for item in raw))
        raise TypeError(f"Cannot represent {type(raw).__name__} as a Value")

    @property
    def is_null(self) -> bool:
        return self.kind == ValueKind.NULL

    @property
    def is_numeric(self) -> bool:
        return self.kind in (ValueKind.INT, ValueKind.FLOAT)

    def to_python(self) -> Any:
        """Unwrap to plain Python (lists and dicts, datetimes kept)."""
        if self.kind == ValueKind.LIST:
            return [item.to_python() for item in self.data]
        if self.kind == ValueKind.MAP:
            return {key: item.to_python() for key, item in self.data.items()}
        return self.data

    def to_json(self) -> Any:
        """Unwrap to JSON-compatible Python (timestamps become ISO strings)."""
        if self.kind == ValueKind.TIMESTAMP:
            return self.data.isoformat()
        if self.kind == ValueKind.LIST:
            return [item.to_json() for item in self.data]
        if self.kind == ValueKind.MAP:
            return {key: item.to_json() for key, item in self.data.items()}
        return self.data

    def get(self, key: str) -> Value | None:
        """Field lookup for map values; ``None`` for other kinds or missing keys."""
        if self.kind != ValueKind.MAP:
            return None
        return self.data.get(key)

    def __str__(self) -> str:
        return as_string(self, default="")


NULL = Value(ValueKind.NULL, None)


def wrap_mapping(raw: Mapping[str, Any] | None) -> dict[str, Value]:
    """Wrap every value of a plain mapping."""
    return {str(k): Value.of(v) for k, v in (raw or {}).items()}


def unwrap_mapping(values: Mapping[str, Value]) -> dict[str, Any]:
    """Inverse of :func:`wrap_mapping` (plain Python values)."""
    return {k: v.to_python() for k, v in values.items()}


def jsonable_mapping(values: Mapping[str, Value]) -> dict[str, Any]:
    """Like :func:`unwrap_mapping` but JSON-safe."""
    return {k: v.to_json() for k, v in values.items()}


def infer_type_name(value: Value) -> str:
    """Parameter type name for a value: string|integer|number|boolean|datetime|object."""
    return PARAMETER_TYPE_NAMES.get(value.kind, "object")


# =============================================================================
# COERCION
# =============================================================================


def as_string(value: Value, default: str | None = None) -> str | None:
    """Render any non-null value as text."""
    kind = value.kind
    if kind == ValueKind.STRING:
        return value.data
    if kind == ValueKind.BOOL:
        return "true" if value.data else "false"
    if kind in (ValueKind.INT, ValueKind.FLOAT):
        return str(value.data)
    if kind == ValueKind.TIMESTAMP:
        return value.data.isoformat()
    if kind in (ValueKind.LIST, ValueKind.MAP):
        return json.dumps(value.to_json(), sort_keys=True)
    return default


def as_int(value: Value, default: int | None = None) -> int | None:
    kind = value.kind
    if kind == ValueKind.INT:
        return value.data
    if kind == ValueKind.BOOL:
        return int(value.data)
    if kind == ValueKind.FLOAT:
        return int(value.data) if math.isfinite(value.data) else default
    if kind == ValueKind.STRING:
        text = value.data.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            return default
        return int(number) if math.isfinite(number) and number.is_integer() else default
    return default


def as_float(value: Value, default: float | None = None) -> float | None:
    kind = value.kind
    if kind in (ValueKind.INT, ValueKind.FLOAT, ValueKind.BOOL):
        return float(value.data)
    if kind == ValueKind.STRING:
        try:
            return float(value.data.strip())
        except ValueError:
            return default
    return default


_TRUE_WORDS = frozenset({"true", "yes", "on", "1"})
_FALSE_WORDS = frozenset({"false", "no", "off", "0"})


def as_bool(value: Value, default: bool | None = None) -> bool | None:
    kind = value.kind
    if kind == ValueKind.BOOL:
        return value.data
    if kind in (ValueKind.INT, ValueKind.FLOAT):
        return value.data != 0
    if kind == ValueKind.STRING:
        word = value.data.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    return default


def as_timestamp(value: Value, default: datetime | None = None) -> datetime | None:
    kind = value.kind
    if kind == ValueKind.TIMESTAMP:
        return value.data
    if kind == ValueKind.STRING:
        try:
            parsed = from_iso8601(value.data.strip())
        except ValueError:
            return default
        if parsed is not None and parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed
    if kind in (ValueKind.INT, ValueKind.FLOAT):
        try:
            return datetime.fromtimestamp(value.data, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return default
    return default


def as_list(value: Value, default: list[Value] | None = None) -> list[Value] | None:
    if value.kind == ValueKind.LIST:
        return list(value.data)
    return default


def as_map(value: Value, default: dict[str, Value] | None = None) -> dict[str, Value] | None:
    if value.kind == ValueKind.MAP:
        return dict(value.data)
    return default


_COERCIONS: dict[ValueKind, Callable[[Value, Any], Any]] = {
    ValueKind.STRING: as_string,
    ValueKind.INT: as_int,
    ValueKind.FLOAT: as_float,
    ValueKind.BOOL: as_bool,
    ValueKind.TIMESTAMP: as_timestamp,
    ValueKind.LIST: as_list,
    ValueKind.MAP: as_map,
}


def coerce(value: Value, kind: ValueKind, default: Any = None) -> Any:
    """Convert ``value`` to the Python type of ``kind``, or return ``default``."""
    if kind == ValueKind.NULL:
        return None
    return _COERCIONS[kind](value, default)


__all__ = [
    "NULL",
    "PARAMETER_TYPE_NAMES",
    "Value",
    "ValueKind",
    "as_bool",
    "as_float",
    "as_int",
    "as_list",
    "as_map",
    "as_string",
    "as_timestamp",
    "coerce",
    "infer_type_name",
    "jsonable_mapping",
    "unwrap_mapping",
    "wrap_mapping",
]
