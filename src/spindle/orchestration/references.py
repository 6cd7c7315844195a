"""``${...}`` references inside node configuration and conditions.

Two forms are recognised:

- ``${parameters.name}`` — a workflow parameter (input binding or declared default)
- ``${nodeId.field}``     — a field of a finished node's output (``status`` and
  ``error`` are always available)

``variables`` is also a valid root, addressing the execution's state variables.

The validator scans references statically, the engine resolves them against
the run's reference context just before dispatching a node, and the condition
evaluator looks paths up through :func:`lookup_path`.
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping

from spindle.core.errors import NodeExecutionError
from spindle.core.values import Value, ValueKind, as_string

REFERENCE_PATTERN = re.compile(r"\$\{\s*([A-Za-z_][\w-]*(?:\.[\w-]+)*)\s*\}")

PARAMETERS_ROOT = "parameters"
VARIABLES_ROOT = "variables"
RESERVED_ROOTS = frozenset({PARAMETERS_ROOT, VARIABLES_ROOT})


class UnresolvedReferenceError(NodeExecutionError):
    """A configuration reference points at nothing. Not retryable."""

    default_retryable = False

    def __init__(self, path: str, node_id: str | None = None):
        self.path = path
        super().__init__(f"Unresolved reference '${{{path}}}'", node_id=node_id)


def find_references(text: str) -> list[str]:
    """Paths of every ``${...}`` reference in ``text``."""
    return REFERENCE_PATTERN.findall(text)


def iter_references(value: Value) -> Iterator[str]:
    """Reference paths in a value, descending into lists and maps."""
    if value.kind == ValueKind.STRING:
        yield from find_references(value.data)
    elif value.kind == ValueKind.LIST:
        for item in value.data:
            yield from iter_references(item)
    elif value.kind == ValueKind.MAP:
        for item in value.data.values():
            yield from iter_references(item)


def pure_reference(value: Value) -> str | None:
    """The path if ``value`` is a string consisting of exactly one reference."""
    if value.kind != ValueKind.STRING:
        return None
    match = REFERENCE_PATTERN.fullmatch(value.data.strip())
    return match.group(1) if match else None


def split_path(path: str) -> tuple[str, list[str]]:
    root, *rest = path.split(".")
    return root, rest


def lookup_path(root: Mapping[str, Value], path: str) -> Value | None:
    """Walk ``path`` through the context; ``None`` when any segment is missing."""
    head, segments = split_path(path)
    current = root.get(head)
    for segment in segments:
        if current is None:
            return None
        if current.kind == ValueKind.MAP:
            current = current.data.get(segment)
        elif current.kind == ValueKind.LIST and segment.isdigit():
            index = int(segment)
            current = current.data[index] if index < len(current.data) else None
        else:
            return None
    return current


def resolve_value(
    value: Value,
    context: Mapping[str, Value],
    node_id: str | None = None,
) -> Value:
    """Substitute references in ``value``.

    A string that is exactly one reference takes the referenced value with
    its kind intact; references embedded in longer text are interpolated as
    text. Lists and maps are resolved element-wise.

    Raises:
        UnresolvedReferenceError: If a referenced path does not exist.
    """
    if value.kind == ValueKind.LIST:
        return Value(ValueKind.LIST, tuple(resolve_value(v, context, node_id) for v in value.data))
    if value.kind == ValueKind.MAP:
        return Value(
            ValueKind.MAP,
            {k: resolve_value(v, context, node_id) for k, v in value.data.items()},
        )
    if value.kind != ValueKind.STRING:
        return value

    path = pure_reference(value)
    if path is not None:
        resolved = lookup_path(context, path)
        if resolved is None:
            raise UnresolvedReferenceError(path, node_id=node_id)
        return resolved

    def _interpolate(match: re.Match[str]) -> str:
        resolved = lookup_path(context, match.group(1))
        if resolved is None:
            raise UnresolvedReferenceError(match.group(1), node_id=node_id)
        return as_string(resolved, default="") or ""

    return Value(ValueKind.STRING, REFERENCE_PATTERN.sub(_interpolate, value.data))


def resolve_configuration(
    configuration: Mapping[str, Value],
    context: Mapping[str, Value],
    node_id: str | None = None,
) -> dict[str, Value]:
    return {key: resolve_value(value, context, node_id) for key, value in configuration.items()}
