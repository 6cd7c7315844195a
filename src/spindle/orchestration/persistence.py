"""Persistence contracts — typed repository interfaces plus in-memory backends.

The engine, state store and template service never talk to storage directly;
they call through these protocols. Durable (SQL, document store, ...) backends
live outside this package and only have to satisfy the method signatures.

The ``InMemory*`` classes are complete, thread-safe implementations used for
single-process deployments, the CLI and tests. They store deep copies, so
callers mutating a returned object never change what is stored.

ARCHITECTURE
────────────
::

    WorkflowEngine ──► ExecutionRepository   create / update / save_node_execution
                                              get / list_active / stats / metrics
    ExecutionStateStore ──► StateRepository  save / save_snapshot / load_current
                                              load_version / history / delete
    TemplateService ──► TemplateRepository   save / get / delete / list
                                              increment_usage
"""

from __future__ import annotations

import copy
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from spindle.core.errors import StateNotFoundError
from spindle.core.timestamps import utc_now
from spindle.orchestration.models import (
    Execution,
    ExecutionState,
    ExecutionStatus,
    NodeExecution,
)

if TYPE_CHECKING:
    from spindle.orchestration.templates import Template


@dataclass(frozen=True)
class ExecutionStats:
    """Aggregate numbers for one workflow over a time window."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    running: int = 0
    avg_duration_seconds: float | None = None
    last_execution: datetime | None = None

    @property
    def success_rate(self) -> float:
        finished = self.successful + self.failed
        return (self.successful / finished) if finished else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "running": self.running,
            "avg_duration_seconds": self.avg_duration_seconds,
            "success_rate": self.success_rate,
            "last_execution": self.last_execution.isoformat() if self.last_execution else None,
        }


@dataclass(frozen=True)
class MetricRecord:
    execution_id: str
    name: str
    value: float
    unit: str | None = None
    tags: dict[str, str] = field(default_factory=dict)
    recorded_at: datetime = field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

@runtime_checkable
class ExecutionRepository(Protocol):
    """Execution records and metrics."""

    def create_execution(self, execution: Execution) -> None: ...

    def update_execution(self, execution: Execution) -> None: ...

    def save_node_execution(self, execution_id: str, node_execution: NodeExecution) -> None: ...

    def get_execution(self, execution_id: str) -> Execution | None: ...

    def list_active_executions(self, owner_id: str | None = None) -> list[Execution]: ...

    def get_execution_stats(
        self,
        workflow_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> ExecutionStats: ...

    def record_metric(
        self,
        execution_id: str,
        name: str,
        value: float,
        unit: str | None = None,
        tags: dict[str, str] | None = None,
    ) -> None: ...


@runtime_checkable
class StateRepository(Protocol):
    """Versioned ExecutionState storage.

    ``save`` replaces the current state and appends it to history;
    ``save_snapshot`` only appends. Versions are assigned by the caller.
    """

    def save(self, state: ExecutionState) -> None: ...

    def save_snapshot(self, state: ExecutionState) -> None: ...

    def load_current(self, execution_id: str) -> ExecutionState | None: ...

    def load_version(self, execution_id: str, version: int) -> ExecutionState | None: ...

    def history(self, execution_id: str, limit: int | None = None) -> list[ExecutionState]: ...

    def latest_version(self, execution_id: str) -> int: ...

    def delete(self, execution_id: str) -> None: ...


@runtime_checkable
class TemplateRepository(Protocol):
    def save(self, template: Template) -> None: ...

    def get(self, template_id: str) -> Template | None: ...

    def delete(self, template_id: str) -> bool: ...

    def list(self) -> list[Template]: ...

    def increment_usage(self, template_id: str) -> int: ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------

class InMemoryExecutionRepository:
    """Thread-safe in-process execution store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._executions: dict[str, Execution] = {}
        self._metrics: list[MetricRecord] = []

    def create_execution(self, execution: Execution) -> None:
        with self._lock:
            self._executions[execution.id] = copy.deepcopy(execution)

    def update_execution(self, execution: Execution) -> None:
        with self._lock:
            self._executions[execution.id] = copy.deepcopy(execution)

    def save_node_execution(self, execution_id: str, node_execution: NodeExecution) -> None:
        with self._lock:
            stored = self._executions.get(execution_id)
            if stored is None:
                raise KeyError(f"Unknown execution: {execution_id}")
            stored.node_executions[node_execution.node_id] = copy.deepcopy(node_execution)

    def get_execution(self, execution_id: str) -> Execution | None:
        with self._lock:
            stored = self._executions.get(execution_id)
            return copy.deepcopy(stored) if stored is not None else None

    def list_active_executions(self, owner_id: str | None = None) -> list[Execution]:
        with self._lock:
            return [
                copy.deepcopy(e)
                for e in self._executions.values()
                if not e.is_terminal and (owner_id is None or e.owner_id == owner_id)
            ]

    def get_execution_stats(
        self,
        workflow_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> ExecutionStats:
        with self._lock:
            matching = [
                e
                for e in self._executions.values()
                if e.workflow_id == workflow_id
                and (since is None or e.created_at >= since)
                and (until is None or e.created_at <= until)
            ]
        durations = [e.duration_seconds for e in matching if e.duration_seconds is not None]
        return ExecutionStats(
            total=len(matching),
            successful=sum(1 for e in matching if e.status == ExecutionStatus.COMPLETED),
            failed=sum(
                1
                for e in matching
                if e.status in (ExecutionStatus.FAILED, ExecutionStatus.TIMED_OUT)
            ),
            running=sum(
                1
                for e in matching
                if e.status in (ExecutionStatus.RUNNING, ExecutionStatus.PAUSED)
            ),
            avg_duration_seconds=(sum(durations) / len(durations)) if durations else None,
            last_execution=max((e.created_at for e in matching), default=None),
        )

    def record_metric(
        self,
        execution_id: str,
        name: str,
        value: float,
        unit: str | None = None,
        tags: dict[str, str] | None = None,
    ) -> None:
        with self._lock:
            self._metrics.append(MetricRecord(execution_id, name, value, unit, dict(tags or {})))

    def list_metrics(self, execution_id: str, name: str | None = None) -> list[MetricRecord]:
        with self._lock:
            return [
                m
                for m in self._metrics
                if m.execution_id == execution_id and (name is None or m.name == name)
            ]


class InMemoryStateRepository:
    """Keeps the current state plus the full version history per execution."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current: dict[str, ExecutionState] = {}
        self._history: dict[str, list[ExecutionState]] = defaultdict(list)

    def save(self, state: ExecutionState) -> None:
        with self._lock:
            self._current[state.execution_id] = state
            self._history[state.execution_id].append(state)

    def save_snapshot(self, state: ExecutionState) -> None:
        with self._lock:
            if state.execution_id not in self._current:
                raise StateNotFoundError(f"No state for execution {state.execution_id}")
            self._history[state.execution_id].append(state)

    def load_current(self, execution_id: str) -> ExecutionState | None:
        with self._lock:
            return self._current.get(execution_id)

    def load_version(self, execution_id: str, version: int) -> ExecutionState | None:
        with self._lock:
            for state in self._history.get(execution_id, ()):
                if state.version == version:
                    return state
        return None

    def history(self, execution_id: str, limit: int | None = None) -> list[ExecutionState]:
        with self._lock:
            entries = list(reversed(self._history.get(execution_id, ())))
        return entries[:limit] if limit is not None else entries

    def latest_version(self, execution_id: str) -> int:
        with self._lock:
            entries = self._history.get(execution_id)
            return max((s.version for s in entries), default=0) if entries else 0

    def delete(self, execution_id: str) -> None:
        with self._lock:
            self._current.pop(execution_id, None)
            self._history.pop(execution_id, None)


class InMemoryTemplateRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._templates: dict[str, Template] = {}

    def save(self, template: Template) -> None:
        with self._lock:
            self._templates[template.id] = copy.deepcopy(template)

    def get(self, template_id: str) -> Template | None:
        with self._lock:
            stored = self._templates.get(template_id)
            return copy.deepcopy(stored) if stored is not None else None

    def delete(self, template_id: str) -> bool:
        with self._lock:
            return self._templates.pop(template_id, None) is not None

    def list(self) -> list[Template]:
        with self._lock:
            return [copy.deepcopy(t) for t in self._templates.values()]

    def increment_usage(self, template_id: str) -> int:
        with self._lock:
            template = self._templates[template_id]
            template.usage_count += 1
            return template.usage_count
