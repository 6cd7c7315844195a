"""Execution records — one run of a definition and its per-node ledger.

``Execution`` and ``NodeExecution`` are what the engine hands to the
persistence collaborator and what callers inspect afterwards. Status changes
go through :func:`validate_execution_transition` so illegal moves (for
example ``completed → running``) fail loudly instead of corrupting a record.

Valid execution transition graph::

    PENDING   → RUNNING | CANCELLED
    RUNNING   → PAUSED | COMPLETED | FAILED | CANCELLED | TIMED_OUT
    PAUSED    → RUNNING | CANCELLED | TIMED_OUT | FAILED
    COMPLETED, FAILED, CANCELLED, TIMED_OUT → (terminal)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from spindle.core.errors import ExecutionStateError
from spindle.core.timestamps import generate_id, to_iso8601, utc_now
from spindle.core.values import Value, jsonable_mapping, wrap_mapping


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_EXECUTION_STATUSES


TERMINAL_EXECUTION_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
    ExecutionStatus.TIMED_OUT,
})


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.SKIPPED)


class SkipReason(str, Enum):
    DEPENDENCY_FAILED = "dependency_failed"
    EDGE_CONDITION_FALSE = "edge_condition_false"
    UPSTREAM_SKIPPED = "upstream_skipped"
    CONDITION_FALSE = "condition_false"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


EXECUTION_VALID_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({
        ExecutionStatus.RUNNING,
        ExecutionStatus.CANCELLED,
    }),
    ExecutionStatus.RUNNING: frozenset({
        ExecutionStatus.PAUSED,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.TIMED_OUT,
    }),
    ExecutionStatus.PAUSED: frozenset({
        ExecutionStatus.RUNNING,
        ExecutionStatus.CANCELLED,
        ExecutionStatus.TIMED_OUT,
        ExecutionStatus.FAILED,
    }),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
    ExecutionStatus.TIMED_OUT: frozenset(),
}


def validate_execution_transition(current: ExecutionStatus, target: ExecutionStatus) -> None:
    """Raise :class:`ExecutionStateError` if *current → target* is illegal."""
    if target not in EXECUTION_VALID_TRANSITIONS.get(current, frozenset()):
        raise ExecutionStateError(
            f"Invalid ExecutionStatus transition: {current.value} → {target.value}"
        )


@dataclass
class NodeExecution:
    """The per-node record of one node's attempt(s) within an Execution."""

    node_id: str
    node_type: str = "action"
    status: NodeStatus = NodeStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    attempts: int = 0
    output: dict[str, Value] = field(default_factory=dict)
    error_message: str | None = None
    skip_reason: SkipReason | None = None
    timed_out: bool = False

    @property
    def retry_count(self) -> int:
        return max(0, self.attempts - 1)

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def output_python(self) -> dict[str, Any]:
        return {key: value.to_python() for key, value in self.output.items()}

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "node_type": self.node_type,
            "status": self.status.value,
            "started_at": to_iso8601(self.started_at),
            "completed_at": to_iso8601(self.completed_at),
            "attempts": self.attempts,
            "retry_count": self.retry_count,
            "output": jsonable_mapping(self.output),
            "error_message": self.error_message,
            "skip_reason": self.skip_reason.value if self.skip_reason else None,
            "timed_out": self.timed_out,
        }


@dataclass
class Execution:
    """One run of a WorkflowDefinition with concrete inputs.

    Example:
        >>> execution = Execution.create("wf-1", inputs={"region": "eu"})
        >>> execution.status
        <ExecutionStatus.PENDING: 'pending'>
    """

    id: str
    workflow_id: str
    workflow_name: str = ""
    owner_id: str | None = None
    inputs: dict[str, Value] = field(default_factory=dict)
    configuration: dict[str, Value] = field(default_factory=dict)
    status: ExecutionStatus = ExecutionStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    node_executions: dict[str, NodeExecution] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        workflow_id: str,
        inputs: dict[str, Any] | None = None,
        configuration: dict[str, Any] | None = None,
        owner_id: str | None = None,
        workflow_name: str = "",
    ) -> Execution:
        """Create a new execution in PENDING status."""
        return cls(
            id=generate_id(),
            workflow_id=workflow_id,
            workflow_name=workflow_name,
            owner_id=owner_id,
            inputs=wrap_mapping(inputs),
            configuration=wrap_mapping(configuration),
        )

    def transition_to(self, target: ExecutionStatus) -> None:
        validate_execution_transition(self.status, target)
        self.status = target

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def node(self, node_id: str) -> NodeExecution:
        return self.node_executions[node_id]

    def nodes_with_status(self, status: NodeStatus) -> list[str]:
        return [nid for nid, ne in self.node_executions.items() if ne.status == status]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "owner_id": self.owner_id,
            "inputs": jsonable_mapping(self.inputs),
            "configuration": jsonable_mapping(self.configuration),
            "status": self.status.value,
            "created_at": to_iso8601(self.created_at),
            "started_at": to_iso8601(self.started_at),
            "completed_at": to_iso8601(self.completed_at),
            "error_message": self.error_message,
            "node_executions": {
                nid: ne.to_dict() for nid, ne in self.node_executions.items()
            },
        }


@dataclass(frozen=True)
class ExecutionState:
    """The inspectable, resumable workbench of a run.

    Distinct from the NodeExecution ledger: this is what the state store
    versions, snapshots and restores. Instances are never mutated; every
    store write produces a new one with fresh containers.
    """

    execution_id: str
    data: dict[str, Value] = field(default_factory=dict)
    variables: dict[str, Value] = field(default_factory=dict)
    current_node: str | None = None
    completed_nodes: tuple[str, ...] = ()
    pending_nodes: tuple[str, ...] = ()
    last_updated: datetime = field(default_factory=utc_now)
    version: int = 0
    is_snapshot: bool = False
    snapshot_created_at: datetime | None = None
    restored_at: datetime | None = None
    restored_from_version: int | None = None

    def content(self) -> dict[str, Any]:
        """The working data without bookkeeping stamps (for comparisons)."""
        return {
            "data": dict(self.data),
            "variables": dict(self.variables),
            "current_node": self.current_node,
            "completed_nodes": self.completed_nodes,
            "pending_nodes": self.pending_nodes,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "data": jsonable_mapping(self.data),
            "variables": jsonable_mapping(self.variables),
            "current_node": self.current_node,
            "completed_nodes": list(self.completed_nodes),
            "pending_nodes": list(self.pending_nodes),
            "last_updated": to_iso8601(self.last_updated),
            "version": self.version,
            "is_snapshot": self.is_snapshot,
            "snapshot_created_at": to_iso8601(self.snapshot_created_at),
            "restored_at": to_iso8601(self.restored_at),
            "restored_from_version": self.restored_from_version,
        }
