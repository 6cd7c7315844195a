"""Workflow documents — JSON/YAML ↔ WorkflowDefinition.

Documents are checked against pydantic models (``extra="forbid"``) and then
converted into the frozen graph dataclasses. Structural problems that the
validator reports with codes (duplicate ids, dangling references, cycles) are
*not* rejected here, so ``validate_definition`` can report all of them at once.

Document shape (YAML shown, JSON is identical)::

    name: orders.nightly
    version: 1
    parameters:
      - name: region
        type: string
        default: eu
    nodes:
      - id: start
        type: start
      - id: load
        type: action
        dependencies: [start]
        configuration:
          table: orders
          region: ${parameters.region}
        retry: {maxAttempts: 3, initialDelay: 1, maxDelay: 30, backoffMultiplier: 2}
        timeout: {duration: 60, onTimeout: retry}
      - id: end
        type: end
        dependencies: [load]
    edges:
      - {from: load, to: end, condition: "${load.rows} > 0"}

Text starting with ``{`` is parsed as JSON, anything else as YAML.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from spindle.core.errors import DefinitionParseError
from spindle.core.values import Value, jsonable_mapping
from spindle.orchestration.graph import (
    Edge,
    Node,
    NodeCondition,
    NodeType,
    OnTimeout,
    ParameterSpec,
    RetryPolicy,
    TimeoutPolicy,
    WorkflowDefinition,
)


class _DocumentModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class RetrySpec(_DocumentModel):
    """Retry section of a node (delays in seconds)."""

    max_attempts: int = Field(default=3, alias="maxAttempts")
    initial_delay: float = Field(default=1.0, alias="initialDelay")
    max_delay: float = Field(default=300.0, alias="maxDelay")
    backoff_multiplier: float = Field(default=2.0, alias="backoffMultiplier")

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            backoff_multiplier=self.backoff_multiplier,
        )


class TimeoutSpec(_DocumentModel):
    """Timeout section of a node (duration in seconds)."""

    duration: float
    on_timeout: OnTimeout = Field(default=OnTimeout.FAIL, alias="onTimeout")


class ConditionSpec(_DocumentModel):
    expression: str = Field(..., min_length=1)
    grammar: str = "simple"


class ParameterDocSpec(_DocumentModel):
    name: str = Field(..., min_length=1)
    type: str = "string"
    default: Any = None
    required: bool = False
    description: str = ""


class NodeSpec(_DocumentModel):
    """A node entry of the ``nodes`` list."""

    id: str = Field(..., min_length=1)
    name: str = ""
    type: NodeType = NodeType.ACTION
    description: str = ""
    configuration: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    condition: ConditionSpec | None = None
    retry: RetrySpec | None = None
    timeout: TimeoutSpec | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("condition", mode="before")
    @classmethod
    def _condition_shorthand(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"expression": value}
        return value

    @field_validator("timeout", mode="before")
    @classmethod
    def _timeout_shorthand(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return {"duration": value}
        return value

    def to_node(self) -> Node:
        return Node(
            id=self.id,
            name=self.name,
            type=self.type,
            description=self.description,
            configuration=self.configuration,
            dependencies=tuple(self.dependencies),
            condition=(
                NodeCondition(self.condition.expression, self.condition.grammar)
                if self.condition
                else None
            ),
            retry=self.retry.to_policy() if self.retry else None,
            timeout=(
                TimeoutPolicy(self.timeout.duration, self.timeout.on_timeout)
                if self.timeout
                else None
            ),
            metadata=self.metadata,
        )


class EdgeSpec(_DocumentModel):
    source: str = Field(..., alias="from", min_length=1)
    target: str = Field(..., alias="to", min_length=1)
    condition: str | None = None


class WorkflowDocument(_DocumentModel):
    """Top-level workflow document."""

    id: str | None = None
    name: str = ""
    version: int = Field(default=1, ge=1)
    description: str = ""
    parameters: list[ParameterDocSpec] = Field(default_factory=list)
    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("parameters", mode="before")
    @classmethod
    def _parameter_mapping(cls, value: Any) -> Any:
        # ``{region: {type: string}}`` is accepted as well as the list form
        if isinstance(value, Mapping):
            return [{"name": name, **(spec or {})} for name, spec in value.items()]
        return value

    def to_definition(self) -> WorkflowDefinition:
        extra: dict[str, Any] = {}
        if self.id:
            extra["id"] = self.id
        return WorkflowDefinition(
            name=self.name,
            version=self.version,
            description=self.description,
            parameters={
                p.name: ParameterSpec(
                    name=p.name,
                    type=p.type,
                    default=Value.of(p.default),
                    required=p.required,
                    description=p.description,
                )
                for p in self.parameters
            },
            nodes=tuple(n.to_node() for n in self.nodes),
            edges=tuple(Edge(e.source, e.target, e.condition) for e in self.edges),
            metadata=self.metadata,
            **extra,
        )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_document(text: str) -> dict[str, Any]:
    """Parse JSON (text starting with ``{``) or YAML into a mapping.

    Raises:
        DefinitionParseError: If the text is not a well-formed mapping.
    """
    stripped = text.lstrip()
    try:
        if stripped.startswith("{"):
            data = json.loads(stripped)
        else:
            data = yaml.safe_load(stripped)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise DefinitionParseError(f"Workflow document is not valid JSON/YAML: {exc}", cause=exc) from exc
    if not isinstance(data, dict):
        raise DefinitionParseError("Workflow document must be a mapping at the top level")
    return data


def parse_definition(source: str | Mapping[str, Any]) -> WorkflowDefinition:
    """Build a WorkflowDefinition from document text or an already-loaded mapping.

    Raises:
        DefinitionParseError: On malformed text or schema violations.
    """
    data = load_document(source) if isinstance(source, str) else dict(source)
    try:
        document = WorkflowDocument.model_validate(data)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise DefinitionParseError(f"Invalid workflow document: {problems}", cause=exc) from exc
    return document.to_definition()


def load_definition_file(path: str | Path) -> WorkflowDefinition:
    return parse_definition(Path(path).read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# Dumping
# ---------------------------------------------------------------------------

def _node_to_dict(node: Node) -> dict[str, Any]:
    data: dict[str, Any] = {"id": node.id, "name": node.name, "type": node.type.value}
    if node.description:
        data["description"] = node.description
    if node.configuration:
        data["configuration"] = jsonable_mapping(node.configuration)
    if node.dependencies:
        data["dependencies"] = list(node.dependencies)
    if node.condition is not None:
        data["condition"] = {
            "expression": node.condition.expression,
            "grammar": node.condition.grammar,
        }
    if node.retry is not None:
        data["retry"] = {
            "maxAttempts": node.retry.max_attempts,
            "initialDelay": node.retry.initial_delay,
            "maxDelay": node.retry.max_delay,
            "backoffMultiplier": node.retry.backoff_multiplier,
        }
    if node.timeout is not None:
        data["timeout"] = {
            "duration": node.timeout.duration,
            "onTimeout": node.timeout.on_timeout.value,
        }
    if node.metadata:
        data["metadata"] = dict(node.metadata)
    return data


def definition_to_dict(definition: WorkflowDefinition, include_id: bool = True) -> dict[str, Any]:
    """JSON-safe document for a definition (inverse of :func:`parse_definition`)."""
    data: dict[str, Any] = {}
    if include_id:
        data["id"] = definition.id
    data["name"] = definition.name
    data["version"] = definition.version
    if definition.description:
        data["description"] = definition.description
    if definition.parameters:
        data["parameters"] = [
            {
                "name": p.name,
                "type": p.type,
                "default": p.default.to_json(),
                "required": p.required,
                "description": p.description,
            }
            for p in definition.parameters.values()
        ]
    data["nodes"] = [_node_to_dict(node) for node in definition.nodes]
    if definition.edges:
        data["edges"] = [
            {"from": e.source, "to": e.target, **({"condition": e.condition} if e.condition else {})}
            for e in definition.edges
        ]
    if definition.metadata:
        data["metadata"] = dict(definition.metadata)
    return data


def dump_definition(
    definition: WorkflowDefinition,
    format: Literal["yaml", "json"] = "yaml",
    include_id: bool = True,
) -> str:
    data = definition_to_dict(definition, include_id=include_id)
    if format == "json":
        return json.dumps(data, indent=2)
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
