"""Workflow graph model — definitions, nodes, edges and execution policies.

A ``WorkflowDefinition`` is the immutable blueprint of a workflow: it declares
**what** runs and under which conditions, never **how** (that is the engine's
job). A changed workflow is a new definition with a new version.

ARCHITECTURE
────────────
::

    WorkflowDefinition   ── id, name, version, parameters, nodes, edges
      ├── parameters{}     ── name → ParameterSpec (type, default, required)
      ├── nodes[]          ── ordered Node objects, unique ids
      │     ├── configuration  ── name → Value (may embed ${...} references)
      │     ├── dependencies   ── ids that must be terminal first
      │     ├── condition      ── NodeCondition (own gate)
      │     ├── retry          ── RetryPolicy
      │     └── timeout        ── TimeoutPolicy
      └── edges[]          ── Edge(source → target, optional condition)

    A node's *predecessors* are its dependencies plus the source of every
    edge that targets it. Scheduling, cycle detection and reachability all
    work on predecessors.

Example::

    definition = WorkflowDefinition(
        name="nightly.load",
        nodes=(
            Node("start", type=NodeType.START),
            Node("load", dependencies=("start",), configuration={"table": "orders"}),
            Node("end", type=NodeType.END, dependencies=("load",)),
        ),
    )
    definition.topological_order()   # ['start', 'load', 'end']

Tags:
    spindle, orchestration, workflow, DAG, nodes, edges

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import cached_property
from typing import Any

from spindle.core.errors import DefinitionError
from spindle.core.timestamps import generate_id
from spindle.core.values import NULL, Value, wrap_mapping
from spindle.execution.retry import ExponentialBackoff, NoRetry, RetryStrategy


class NodeType(str, Enum):
    """Kind of step a node performs. The engine dispatches executors by type."""

    START = "start"
    END = "end"
    ACTION = "action"
    CONDITION = "condition"
    TRANSFORM = "transform"
    WAIT = "wait"
    AGENT = "agent"
    NOTIFICATION = "notification"


class OnTimeout(str, Enum):
    """What happens when a node attempt outlives its timeout."""

    RETRY = "retry"  # counts as a failed attempt
    FAIL = "fail"  # node Failed, execution TimedOut


SUPPORTED_GRAMMARS = frozenset({"simple"})


@dataclass(frozen=True)
class RetryPolicy:
    """Per-node retry configuration (delays in seconds)."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 300.0
    backoff_multiplier: float = 2.0

    def delay_for(self, retry_index: int) -> float:
        """Backoff before retry ``retry_index`` (0-based)."""
        return min(self.initial_delay * (self.backoff_multiplier ** retry_index), self.max_delay)

    def to_strategy(self) -> RetryStrategy:
        return ExponentialBackoff(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            multiplier=self.backoff_multiplier,
        )


@dataclass(frozen=True)
class TimeoutPolicy:
    """Per-node watchdog configuration."""

    duration: float
    on_timeout: OnTimeout = OnTimeout.FAIL

    def __post_init__(self) -> None:
        if not isinstance(self.on_timeout, OnTimeout):
            object.__setattr__(self, "on_timeout", OnTimeout(self.on_timeout))


@dataclass(frozen=True)
class NodeCondition:
    """Guard expression on a node; ``grammar`` tags the expression language."""

    expression: str
    grammar: str = "simple"


@dataclass(frozen=True)
class ParameterSpec:
    """A declared workflow parameter."""

    name: str
    type: str = "string"
    default: Value = NULL
    required: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "default", Value.of(self.default))


@dataclass(frozen=True)
class Node:
    """A single typed step of a workflow."""

    id: str
    name: str = ""
    type: NodeType = NodeType.ACTION
    description: str = ""
    configuration: Mapping[str, Value] = field(default_factory=dict)
    dependencies: tuple[str, ...] = ()
    condition: NodeCondition | None = None
    retry: RetryPolicy | None = None
    timeout: TimeoutPolicy | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name:
            object.__setattr__(self, "name", self.id)
        if not isinstance(self.type, NodeType):
            object.__setattr__(self, "type", NodeType(self.type))
        object.__setattr__(self, "configuration", wrap_mapping(self.configuration))
        object.__setattr__(self, "dependencies", tuple(self.dependencies))
        if isinstance(self.condition, str):
            object.__setattr__(self, "condition", NodeCondition(self.condition))

    def retry_strategy(self) -> RetryStrategy:
        """Strategy for the engine's retry loop (single attempt without a policy)."""
        return self.retry.to_strategy() if self.retry else NoRetry()


@dataclass(frozen=True)
class Edge:
    """Link ``source → target``; ``condition`` further gates the target."""

    source: str
    target: str
    condition: str | None = None


@dataclass(frozen=True)
class WorkflowDefinition:
    """Immutable workflow blueprint.

    Construction does not validate; run
    :func:`spindle.orchestration.validator.validate_definition` (the catalog
    does this) before executing.
    """

    name: str
    nodes: tuple[Node, ...] = ()
    edges: tuple[Edge, ...] = ()
    parameters: Mapping[str, ParameterSpec] = field(default_factory=dict)
    id: str = field(default_factory=generate_id)
    version: int = 1
    description: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(self.nodes))
        object.__setattr__(self, "edges", tuple(self.edges))
        params = self.parameters
        if not isinstance(params, Mapping):
            params = {p.name: p for p in params}
        object.__setattr__(self, "parameters", dict(params))

    # =========================================================================
    # Accessors
    # =========================================================================

    @cached_property
    def _node_map(self) -> dict[str, Node]:
        return {node.id: node for node in self.nodes}

    @property
    def node_ids(self) -> list[str]:
        return [node.id for node in self.nodes]

    def get_node(self, node_id: str) -> Node | None:
        return self._node_map.get(node_id)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._node_map

    def incoming_edges(self, node_id: str) -> list[Edge]:
        return [edge for edge in self.edges if edge.target == node_id]

    def outgoing_edges(self, node_id: str) -> list[Edge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def start_nodes(self) -> list[str]:
        return [node.id for node in self.nodes if node.type == NodeType.START]

    def end_nodes(self) -> list[str]:
        return [node.id for node in self.nodes if node.type == NodeType.END]

    # =========================================================================
    # Graph structure
    # =========================================================================

    @cached_property
    def _predecessor_map(self) -> dict[str, tuple[str, ...]]:
        result: dict[str, list[str]] = {node.id: [] for node in self.nodes}
        for node in self.nodes:
            for dep in node.dependencies:
                if dep not in result[node.id]:
                    result[node.id].append(dep)
        for edge in self.edges:
            preds = result.get(edge.target)
            if preds is not None and edge.source not in preds:
                preds.append(edge.source)
        return {node_id: tuple(preds) for node_id, preds in result.items()}

    def predecessors(self, node_id: str) -> tuple[str, ...]:
        """Dependencies plus edge sources, in declaration order, no duplicates."""
        return self._predecessor_map.get(node_id, ())

    def successors(self, node_id: str) -> list[str]:
        return [nid for nid, preds in self._predecessor_map.items() if node_id in preds]

    def dependency_graph(self) -> dict[str, list[str]]:
        """Adjacency list (predecessor -> dependents) over known node ids."""
        graph: dict[str, list[str]] = defaultdict(list)
        for node_id, preds in self._predecessor_map.items():
            for pred in preds:
                if pred in self._node_map and pred != node_id:
                    graph[pred].append(node_id)
        return dict(graph)

    def find_cycle(self) -> list[str] | None:
        """Return the node ids of one dependency cycle, or None (Kahn's algorithm).

        Self-dependencies and references to unknown ids are ignored here;
        the validator reports those separately.
        """
        adjacency = self.dependency_graph()
        in_degree: dict[str, int] = {node_id: 0 for node_id in self._node_map}
        for dependents in adjacency.values():
            for dependent in dependents:
                in_degree[dependent] += 1

        queue: deque[str] = deque(nid for nid, deg in in_degree.items() if deg == 0)
        while queue:
            current = queue.popleft()
            for neighbor in adjacency.get(current, ()):
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        remaining = {nid for nid, deg in in_degree.items() if deg > 0}
        if not remaining:
            return None

        # Every remaining node has a remaining predecessor; walking backwards
        # must revisit a node, and the revisited stretch is a cycle.
        path: list[str] = []
        index: dict[str, int] = {}
        current = next(nid for nid in self._node_map if nid in remaining)
        while current not in index:
            index[current] = len(path)
            path.append(current)
            current = next(
                p for p in self.predecessors(current) if p in remaining and p != current
            )
        cycle = path[index[current]:]
        cycle.reverse()
        return cycle

    def topological_order(self) -> list[str]:
        """Node ids in dependency order (ties keep declaration order).

        Raises:
            DefinitionError: If the graph contains a cycle.
        """
        cycle = self.find_cycle()
        if cycle is not None:
            raise DefinitionError(
                f"Dependency cycle detected among nodes: {cycle}",
                code="CYCLE_DETECTED",
            ).with_context(workflow_id=self.id, cycle=cycle)

        adjacency = self.dependency_graph()
        in_degree: dict[str, int] = {node_id: 0 for node_id in self._node_map}
        for dependents in adjacency.values():
            for dependent in dependents:
                in_degree[dependent] += 1

        queue: deque[str] = deque(nid for nid in self._node_map if in_degree[nid] == 0)
        result: list[str] = []
        while queue:
            current = queue.popleft()
            result.append(current)
            for neighbor in adjacency.get(current, ()):
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)
        return result

    def reachable_from(self, roots: Iterable[str]) -> set[str]:
        """All node ids reachable from ``roots`` following dependents."""
        adjacency = self.dependency_graph()
        seen: set[str] = set()
        queue: deque[str] = deque(r for r in roots if r in self._node_map)
        while queue:
            current = queue.popleft()
            if current in seen:
                continue
            seen.add(current)
            queue.extend(adjacency.get(current, ()))
        return seen

    def reachable_from_start(self) -> set[str]:
        return self.reachable_from(self.start_nodes())

    # =========================================================================
    # Derivation
    # =========================================================================

    def without_nodes(self, node_ids: Iterable[str]) -> WorkflowDefinition:
        """Copy with the given nodes (and every edge/dependency touching them) removed."""
        drop = set(node_ids)
        nodes = tuple(
            replace(node, dependencies=tuple(d for d in node.dependencies if d not in drop))
            for node in self.nodes
            if node.id not in drop
        )
        edges = tuple(e for e in self.edges if e.source not in drop and e.target not in drop)
        return replace(self, nodes=nodes, edges=edges)

    def __repr__(self) -> str:
        return (
            f"WorkflowDefinition(name={self.name!r}, id={self.id!r}, "
            f"version={self.version}, nodes={len(self.nodes)}, edges={len(self.edges)})"
        )
