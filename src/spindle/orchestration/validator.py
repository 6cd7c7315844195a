"""Workflow definition validator — structural checks before anything runs.

Validation happens when a definition is created (``WorkflowCatalog.create``)
and before template instantiation; it never runs mid-execution. A definition
that passes is assumed structurally stable by the engine.

Checks, in order:

========================  ========  ==========================================
Code                      Severity  Meaning
========================  ========  ==========================================
MISSING_NAME              error     Definition has no name
NO_NODES                  error     Definition has no nodes
INVALID_RETRY_POLICY      error     max_attempts < 1, negative delays, ...
INVALID_TIMEOUT           error     Timeout duration <= 0
UNSUPPORTED_CONDITION_…   error     Condition grammar other than ``simple``
DUPLICATE_NODE_ID         error     Two nodes share an id
INVALID_DEPENDENCY        error     Dependency names an unknown node
SELF_DEPENDENCY           error     Node depends on itself
INVALID_EDGE_FROM / _TO   error     Edge endpoint names an unknown node
UNKNOWN_NODE_REFERENCE    warning   ``${node.field}`` names an unknown node
CYCLE_DETECTED            error     Dependency cycle (lists the node ids)
NO_START_NODE             error     No node of type ``start``
UNREACHABLE_NODE          error     Node not reachable from a start node
NO_END_NODE               warning   No node of type ``end``
UNUSED_PARAMETER          warning   Declared parameter never referenced
UNKNOWN_PARAMETER         warning   ``${parameters.x}`` for an undeclared x
INVALID_CONDITION         error     Node/edge condition does not parse
========================  ========  ==========================================

Example::

    result = validate_definition(definition)
    if not result.is_valid:
        for issue in result.errors:
            print(issue)
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from spindle.core.errors import ConditionEvaluationError
from spindle.core.logging import get_logger
from spindle.orchestration.conditions import ConditionEvaluator, parse_condition, referenced_paths
from spindle.orchestration.graph import SUPPORTED_GRAMMARS, Node, WorkflowDefinition
from spindle.orchestration.references import (
    PARAMETERS_ROOT,
    RESERVED_ROOTS,
    iter_references,
    split_path,
)

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Result model
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationIssue:
    """A single validation finding.

    Attributes:
        code: Stable identifier (e.g. ``"CYCLE_DETECTED"``).
        severity: ``error`` or ``warning``.
        message: Human-readable description.
        node_id: Offending node (if one).
        node_ids: All involved nodes (cycles list every member).
    """

    code: str
    severity: Severity
    message: str
    node_id: str | None = None
    node_ids: tuple[str, ...] = ()

    def __str__(self) -> str:
        location = f" in node '{self.node_id}'" if self.node_id else ""
        return f"[{self.code}] {self.severity.value.upper()}{location}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.node_id:
            result["node_id"] = self.node_id
        if self.node_ids:
            result["node_ids"] = list(self.node_ids)
        return result


@dataclass
class ValidationResult:
    """Aggregated ``{is_valid, errors, warnings}`` outcome."""

    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not any(i.severity == Severity.ERROR for i in self.issues)

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.ERROR]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.WARNING]

    def error(self, code: str, message: str, node_id: str | None = None, node_ids: tuple[str, ...] = ()) -> None:
        self.issues.append(ValidationIssue(code, Severity.ERROR, message, node_id, node_ids))

    def warning(self, code: str, message: str, node_id: str | None = None, node_ids: tuple[str, ...] = ()) -> None:
        self.issues.append(ValidationIssue(code, Severity.WARNING, message, node_id, node_ids))

    def extend(self, other: ValidationResult) -> None:
        self.issues.extend(other.issues)

    def codes(self) -> list[str]:
        return [i.code for i in self.issues]

    def summary(self) -> str:
        status = "VALID" if self.is_valid else "INVALID"
        return f"{status}: {len(self.errors)} errors, {len(self.warnings)} warnings"

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": [i.to_dict() for i in self.errors],
            "warnings": [i.to_dict() for i in self.warnings],
        }

    def __str__(self) -> str:
        return "\n".join([self.summary()] + [f"  {i}" for i in self.issues])


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------

def _check_schema(definition: WorkflowDefinition, result: ValidationResult) -> None:
    if not definition.name or not definition.name.strip():
        result.error("MISSING_NAME", "Workflow name is required")
    if not definition.nodes:
        result.error("NO_NODES", "Workflow must contain at least one node")

    for node in definition.nodes:
        retry = node.retry
        if retry is not None:
            if retry.max_attempts < 1:
                result.error("INVALID_RETRY_POLICY", "max_attempts must be >= 1", node.id)
            if retry.initial_delay < 0 or retry.max_delay < 0:
                result.error("INVALID_RETRY_POLICY", "Retry delays must be non-negative", node.id)
            if retry.backoff_multiplier < 1:
                result.error("INVALID_RETRY_POLICY", "backoff_multiplier must be >= 1", node.id)
        if node.timeout is not None and node.timeout.duration <= 0:
            result.error("INVALID_TIMEOUT", "Timeout duration must be positive", node.id)
        if node.condition is not None and node.condition.grammar not in SUPPORTED_GRAMMARS:
            result.error(
                "UNSUPPORTED_CONDITION_GRAMMAR",
                f"Condition grammar '{node.condition.grammar}' is not supported",
                node.id,
            )


def _check_unique_ids(definition: WorkflowDefinition, result: ValidationResult) -> None:
    counts = Counter(node.id for node in definition.nodes)
    for node_id, count in counts.items():
        if count > 1:
            result.error("DUPLICATE_NODE_ID", f"Node id '{node_id}' is used {count} times", node_id)


def _check_references(definition: WorkflowDefinition, result: ValidationResult) -> None:
    known = set(definition.node_ids)

    for node in definition.nodes:
        for dep in node.dependencies:
            if dep == node.id:
                result.error("SELF_DEPENDENCY", f"Node '{node.id}' depends on itself", node.id)
            elif dep not in known:
                result.error("INVALID_DEPENDENCY", f"Dependency '{dep}' does not exist", node.id)

    for edge in definition.edges:
        if edge.source not in known:
            result.error("INVALID_EDGE_FROM", f"Edge source '{edge.source}' does not exist", edge.target)
        if edge.target not in known:
            result.error("INVALID_EDGE_TO", f"Edge target '{edge.target}' does not exist", edge.source)

    for node in definition.nodes:
        for path in _node_paths(node):
            root, _ = split_path(path)
            if root not in RESERVED_ROOTS and root not in known:
                result.warning(
                    "UNKNOWN_NODE_REFERENCE",
                    f"Reference '${{{path}}}' names an unknown node",
                    node.id,
                )
    for edge in definition.edges:
        for path in _condition_paths(edge.condition):
            root, _ = split_path(path)
            if root not in RESERVED_ROOTS and root not in known:
                result.warning(
                    "UNKNOWN_NODE_REFERENCE",
                    f"Reference '${{{path}}}' names an unknown node",
                    edge.target,
                )


def _check_cycles(definition: WorkflowDefinition, result: ValidationResult) -> bool:
    cycle = definition.find_cycle()
    if cycle is None:
        return True
    result.error(
        "CYCLE_DETECTED",
        f"Dependency cycle detected: {' -> '.join(cycle + [cycle[0]])}",
        node_ids=tuple(cycle),
    )
    return False


def _check_reachability(definition: WorkflowDefinition, result: ValidationResult) -> None:
    starts = definition.start_nodes()
    if not starts:
        result.error("NO_START_NODE", "Workflow must contain a node of type 'start'")
    else:
        reachable = definition.reachable_from(starts)
        for node in definition.nodes:
            if node.id not in reachable:
                result.error(
                    "UNREACHABLE_NODE",
                    f"Node '{node.id}' is not reachable from a start node",
                    node.id,
                )
    if not definition.end_nodes():
        result.warning("NO_END_NODE", "Workflow has no node of type 'end'")


def _check_parameters(definition: WorkflowDefinition, result: ValidationResult) -> None:
    referenced: set[str] = set()
    for node in definition.nodes:
        for path in _node_paths(node):
            root, rest = split_path(path)
            if root != PARAMETERS_ROOT or not rest:
                continue
            name = rest[0]
            referenced.add(name)
            if name not in definition.parameters:
                result.warning(
                    "UNKNOWN_PARAMETER",
                    f"Reference to undeclared parameter '{name}'",
                    node.id,
                )
    for edge in definition.edges:
        for path in _condition_paths(edge.condition):
            root, rest = split_path(path)
            if root == PARAMETERS_ROOT and rest:
                referenced.add(rest[0])
                if rest[0] not in definition.parameters:
                    result.warning(
                        "UNKNOWN_PARAMETER",
                        f"Reference to undeclared parameter '{rest[0]}'",
                        edge.target,
                    )

    for name in definition.parameters:
        if name not in referenced:
            result.warning("UNUSED_PARAMETER", f"Parameter '{name}' is never referenced")


def _check_conditions(definition: WorkflowDefinition, result: ValidationResult) -> None:
    evaluator = ConditionEvaluator()
    for node in definition.nodes:
        if node.condition is not None and node.condition.grammar in SUPPORTED_GRAMMARS:
            problem = evaluator.check(node.condition.expression)
            if problem:
                result.error("INVALID_CONDITION", problem, node.id)
    for edge in definition.edges:
        if edge.condition:
            problem = evaluator.check(edge.condition)
            if problem:
                result.error(
                    "INVALID_CONDITION",
                    f"Edge {edge.source} -> {edge.target}: {problem}",
                    edge.target,
                )


def _condition_paths(expression: str | None) -> list[str]:
    if not expression:
        return []
    try:
        return referenced_paths(parse_condition(expression))
    except ConditionEvaluationError:
        # reported by _check_conditions
        return []


def _node_paths(node: Node) -> list[str]:
    paths: list[str] = []
    for value in node.configuration.values():
        paths.extend(iter_references(value))
    if node.condition is not None:
        paths.extend(_condition_paths(node.condition.expression))
    return paths


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def validate_definition(definition: WorkflowDefinition) -> ValidationResult:
    """Run every structural check and return the aggregated result."""
    result = ValidationResult()
    _check_schema(definition, result)
    _check_unique_ids(definition, result)
    _check_references(definition, result)
    if _check_cycles(definition, result):
        _check_reachability(definition, result)
    _check_parameters(definition, result)
    _check_conditions(definition, result)

    logger.debug(
        "definition.validated",
        workflow=definition.name,
        workflow_id=definition.id,
        valid=result.is_valid,
        errors=len(result.errors),
        warnings=len(result.warnings),
    )
    return result


def optimize_definition(definition: WorkflowDefinition) -> WorkflowDefinition:
    """Drop nodes that cannot be reached from any start node.

    Definitions without a start node are returned unchanged.
    """
    starts = definition.start_nodes()
    if not starts:
        return definition
    reachable = definition.reachable_from(starts)
    unreachable = [nid for nid in definition.node_ids if nid not in reachable]
    if not unreachable:
        return definition
    logger.info("definition.optimized", workflow=definition.name, removed=unreachable)
    return definition.without_nodes(unreachable)
