"""Workflow engine — dependency-driven scheduler for WorkflowDefinitions.

Executes a definition as a DAG of typed nodes: every tick computes the ready
set (unattempted nodes whose predecessors are all terminal), gates each ready
node on failures, edge conditions and its own condition, and dispatches the
eligible ones concurrently on a ``ThreadPoolExecutor``.

ARCHITECTURE
────────────
::

    WorkflowEngine.execute(definition, inputs)      (blocking)
    WorkflowEngine.submit(definition, inputs)       → ExecutionHandle
        │
        ├─ _start        Execution PENDING → RUNNING, state initialized
        ├─ _schedule     tick loop
        │    ├─ observe cancel / deadline / pause
        │    ├─ ready set + gating  → Skipped(reason) | dispatch
        │    └─ wait(FIRST_COMPLETED, poll interval) → record outcomes
        └─ _finish       terminal status, metrics, cache invalidation

    worker thread per dispatched node:
        resolve ${...} → executor.execute(config, state)
        watchdog (run_with_timeout) + RetryContext backoff

Gating, first match wins:

1. a predecessor Failed and no conditioned edge from it evaluates true
   → ``dependency_failed``
2. an edge from a Completed predecessor has a false condition
   → ``edge_condition_false``
3. every predecessor Skipped → ``upstream_skipped``
4. the node's own condition is false → ``condition_false``

Terminal status, first match wins: cancel observed → CANCELLED; deadline
elapsed or a node timed out with ``on_timeout=fail`` → TIMED_OUT; a node
failure with no true conditioned edge leading to a completed target →
FAILED; otherwise COMPLETED.

All NodeExecution, ExecutionState and repository writes happen on the
scheduler thread. Workers only run the attempt loop and return an outcome.

Example::

    engine = WorkflowEngine()
    engine.executors.register(NodeType.ACTION, lambda config, state: {"rows": 10})
    execution = engine.execute(definition, inputs={"region": "eu"})
    assert execution.status == ExecutionStatus.COMPLETED
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from spindle.core.errors import (
    DefinitionError,
    ExecutionStateError,
    NodeExecutionError,
    NodeTimeoutError,
    StateStoreError,
    WorkflowNotFoundError,
)
from spindle.core.logging import LogContext, get_logger
from spindle.core.settings import get_settings
from spindle.core.timestamps import to_iso8601, utc_now
from spindle.core.values import Value, ValueKind, jsonable_mapping, unwrap_mapping, wrap_mapping
from spindle.execution.retry import RetryContext
from spindle.execution.timeout import Deadline, TimeoutExpired, run_with_timeout
from spindle.orchestration.actions import (
    CONDITION_CONTEXT_KEY,
    CONDITION_EXPRESSION_KEY,
    ActionExecutor,
    ActionExecutorRegistry,
    ActionResult,
)
from spindle.orchestration.catalog import WorkflowCatalog
from spindle.orchestration.conditions import ConditionEvaluator
from spindle.orchestration.graph import Edge, Node, NodeType, OnTimeout, WorkflowDefinition
from spindle.orchestration.models import (
    Execution,
    ExecutionState,
    ExecutionStatus,
    NodeExecution,
    NodeStatus,
    SkipReason,
)
from spindle.orchestration.persistence import (
    ExecutionRepository,
    ExecutionStats,
    InMemoryExecutionRepository,
    InMemoryStateRepository,
)
from spindle.orchestration.references import PARAMETERS_ROOT, VARIABLES_ROOT, resolve_configuration
from spindle.orchestration.state import ExecutionStateStore

logger = get_logger(__name__)

SleepFunc = Callable[[float], None]

RETRYABLE_EXECUTION_STATUSES = frozenset({
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
    ExecutionStatus.TIMED_OUT,
})


@dataclass
class _NodeOutcome:
    """What a worker reports back to the scheduler for one node."""

    node_id: str
    success: bool = False
    output: dict[str, Value] = field(default_factory=dict)
    error: str | None = None
    attempts: int = 0
    delays: list[float] = field(default_factory=list)
    timed_out: bool = False
    completed_at: datetime | None = None


@dataclass
class _Run:
    """Scheduler-side bookkeeping for one in-flight execution."""

    execution: Execution
    definition: WorkflowDefinition
    parameters: Value
    order: list[str]
    deadline: Deadline | None = None
    lock: threading.RLock = field(default_factory=threading.RLock)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    wake: threading.Event = field(default_factory=threading.Event)
    edge_results: dict[tuple[str, str], bool] = field(default_factory=dict)
    timed_out_node: str | None = None
    state_error: StateStoreError | None = None
    scheduler_error: Exception | None = None


class ExecutionHandle:
    """Handle to an execution running on a background thread."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        self._done = threading.Event()
        self._result: Execution | None = None
        self._error: BaseException | None = None
        self._thread: threading.Thread | None = None

    def done(self) -> bool:
        return self._done.is_set()

    def result(self, timeout: float | None = None) -> Execution:
        """Block until the execution is terminal.

        Raises:
            TimeoutError: If it does not finish within ``timeout`` seconds.
        """
        if not self._done.wait(timeout):
            raise TimeoutError(f"Execution {self.execution_id} still running after {timeout}s")
        if self._error is not None:
            raise self._error
        assert self._result is not None
        return self._result

    def _set_result(self, execution: Execution) -> None:
        self._result = execution
        self._done.set()

    def _set_error(self, error: BaseException) -> None:
        self._error = error
        self._done.set()


class WorkflowEngine:
    """Runs workflow definitions.

    Args:
        executors: NodeType → executor registry (built-ins only by default)
        state_store: Versioned state store (in-memory by default)
        executions: Execution persistence collaborator (in-memory by default)
        catalog: Optional catalog for ``start``/``retry_execution`` by workflow id
        evaluator: Condition evaluator for node and edge conditions
        max_concurrency: Worker threads per execution
        poll_interval: Seconds between checks for cancel/pause/deadline
        sleep: Backoff sleep; by default an interruptible wait that ends
            early when the execution is cancelled
    """

    def __init__(
        self,
        executors: ActionExecutorRegistry | None = None,
        state_store: ExecutionStateStore | None = None,
        executions: ExecutionRepository | None = None,
        catalog: WorkflowCatalog | None = None,
        evaluator: ConditionEvaluator | None = None,
        max_concurrency: int | None = None,
        poll_interval: float | None = None,
        sleep: SleepFunc | None = None,
    ):
        settings = get_settings()
        self._sleep = sleep
        self.executors = executors or ActionExecutorRegistry.default(
            sleep=sleep or time.sleep
        )
        self.state_store = state_store or ExecutionStateStore(InMemoryStateRepository())
        self.executions = executions or InMemoryExecutionRepository()
        self.catalog = catalog
        self.evaluator = evaluator or ConditionEvaluator()
        self.max_concurrency = max_concurrency or settings.max_concurrency
        self.poll_interval = poll_interval or settings.poll_interval_seconds
        self.default_timeout = settings.default_workflow_timeout_seconds

        self._runs: dict[str, _Run] = {}
        self._definitions: dict[str, WorkflowDefinition] = {}
        self._lock = threading.Lock()

    # =========================================================================
    # Public API
    # =========================================================================

    def execute(
        self,
        definition: WorkflowDefinition,
        inputs: Mapping[str, Any] | None = None,
        configuration: Mapping[str, Any] | None = None,
        owner_id: str | None = None,
        timeout: float | None = None,
    ) -> Execution:
        """Run ``definition`` to completion on the calling thread."""
        run = self._start(definition, inputs, configuration, owner_id, timeout)
        return self._drive(run)

    def submit(
        self,
        definition: WorkflowDefinition,
        inputs: Mapping[str, Any] | None = None,
        configuration: Mapping[str, Any] | None = None,
        owner_id: str | None = None,
        timeout: float | None = None,
    ) -> ExecutionHandle:
        """Start ``definition`` on a background thread.

        The execution is already RUNNING (and controllable through
        ``pause``/``resume``/``cancel``) when this returns.
        """
        run = self._start(definition, inputs, configuration, owner_id, timeout)
        handle = ExecutionHandle(run.execution.id)

        def _target() -> None:
            try:
                handle._set_result(self._drive(run))
            except BaseException as exc:
                handle._set_error(exc)

        handle._thread = threading.Thread(
            target=_target,
            name=f"spindle-exec-{run.execution.id[-8:]}",
            daemon=True,
        )
        handle._thread.start()
        return handle

    def start(
        self,
        workflow_id: str,
        inputs: Mapping[str, Any] | None = None,
        configuration: Mapping[str, Any] | None = None,
        owner_id: str | None = None,
        timeout: float | None = None,
    ) -> ExecutionHandle:
        """Submit a catalogued definition by id."""
        return self.submit(self._definition_for(workflow_id), inputs, configuration, owner_id, timeout)

    def pause(self, execution_id: str) -> Execution:
        """Stop dispatching new nodes; running nodes finish.

        Raises:
            ExecutionStateError: Unknown, terminal or not-running execution.
        """
        run = self._active_run(execution_id)
        with run.lock:
            self._transition(run, ExecutionStatus.PAUSED)
        logger.info("workflow.paused", execution_id=execution_id)
        return self.get_execution(execution_id)

    def resume(self, execution_id: str) -> Execution:
        run = self._active_run(execution_id)
        with run.lock:
            if run.execution.status != ExecutionStatus.PAUSED:
                raise ExecutionStateError(
                    f"Execution {execution_id} is not paused (status: {run.execution.status.value})"
                )
            self._transition(run, ExecutionStatus.RUNNING)
        run.wake.set()
        logger.info("workflow.resumed", execution_id=execution_id)
        return self.get_execution(execution_id)

    def cancel(self, execution_id: str) -> None:
        """Request cancellation; observed by the scheduler between ticks."""
        run = self._active_run(execution_id)
        run.cancel_event.set()
        run.wake.set()
        logger.info("workflow.cancel_requested", execution_id=execution_id)

    def get_execution(self, execution_id: str) -> Execution:
        execution = self.executions.get_execution(execution_id)
        if execution is None:
            raise ExecutionStateError(f"Unknown execution: {execution_id}").with_context(
                execution_id=execution_id
            )
        return execution

    def list_active_executions(self, owner_id: str | None = None) -> list[Execution]:
        return self.executions.list_active_executions(owner_id)

    def get_execution_stats(
        self,
        workflow_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> ExecutionStats:
        return self.executions.get_execution_stats(workflow_id, since, until)

    def retry_execution(self, execution_id: str, timeout: float | None = None) -> Execution:
        """Run the definition of a failed/cancelled/timed-out execution again.

        The new execution gets the previous inputs and configuration and a
        fresh id; the previous record is untouched.
        """
        previous = self.get_execution(execution_id)
        if previous.status not in RETRYABLE_EXECUTION_STATUSES:
            raise ExecutionStateError(
                f"Execution {execution_id} cannot be retried from status {previous.status.value}"
            ).with_context(execution_id=execution_id)
        definition = self._definition_for(previous.workflow_id)
        logger.info("workflow.retry", execution_id=execution_id, workflow_id=previous.workflow_id)
        return self.execute(
            definition,
            inputs=unwrap_mapping(previous.inputs),
            configuration=unwrap_mapping(previous.configuration),
            owner_id=previous.owner_id,
            timeout=timeout,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def _definition_for(self, workflow_id: str) -> WorkflowDefinition:
        with self._lock:
            definition = self._definitions.get(workflow_id)
        if definition is not None:
            return definition
        if self.catalog is not None:
            return self.catalog.get(workflow_id)
        raise WorkflowNotFoundError(workflow_id)

    def _active_run(self, execution_id: str) -> _Run:
        with self._lock:
            run = self._runs.get(execution_id)
        if run is None or run.execution.is_terminal:
            status = self.executions.get_execution(execution_id)
            detail = f"already {status.status.value}" if status is not None else "unknown"
            raise ExecutionStateError(
                f"Execution {execution_id} is {detail}"
            ).with_context(execution_id=execution_id)
        return run

    def _bind_parameters(
        self,
        definition: WorkflowDefinition,
        inputs: Mapping[str, Any] | None,
    ) -> dict[str, Value]:
        bound = {name: spec.default for name, spec in definition.parameters.items()}
        bound.update(wrap_mapping(inputs))
        missing = [
            name
            for name, spec in definition.parameters.items()
            if spec.required and bound[name].is_null
        ]
        if missing:
            raise DefinitionError(
                f"Missing required parameter(s): {', '.join(sorted(missing))}",
                code="MISSING_REQUIRED_PARAMETER",
            ).with_context(workflow_id=definition.id)
        return bound

    def _start(
        self,
        definition: WorkflowDefinition,
        inputs: Mapping[str, Any] | None,
        configuration: Mapping[str, Any] | None,
        owner_id: str | None,
        timeout: float | None,
    ) -> _Run:
        order = definition.topological_order()
        parameters = self._bind_parameters(definition, inputs)

        execution = Execution.create(
            definition.id,
            inputs=dict(inputs or {}),
            configuration=dict(configuration or {}),
            owner_id=owner_id,
            workflow_name=definition.name,
        )
        for node in definition.nodes:
            execution.node_executions[node.id] = NodeExecution(node.id, node.type.value)

        timeout = timeout if timeout is not None else self.default_timeout
        run = _Run(
            execution=execution,
            definition=definition,
            parameters=Value(ValueKind.MAP, parameters),
            order=order,
            deadline=Deadline(timeout) if timeout else None,
        )

        self.executions.create_execution(execution)
        execution.transition_to(ExecutionStatus.RUNNING)
        execution.started_at = utc_now()
        self.executions.update_execution(execution)
        self.state_store.initialize_state(
            execution.id,
            {
                "workflowId": definition.id,
                "status": execution.status.value,
                "inputs": jsonable_mapping(execution.inputs),
                "configuration": jsonable_mapping(execution.configuration),
            },
        )

        with self._lock:
            self._runs[execution.id] = run
            self._definitions[definition.id] = definition

        logger.info(
            "workflow.start",
            workflow=definition.name,
            workflow_id=definition.id,
            execution_id=execution.id,
            node_count=len(definition.nodes),
            timeout_seconds=timeout,
        )
        return run

    def _drive(self, run: _Run) -> Execution:
        with LogContext(execution_id=run.execution.id, workflow=run.definition.name):
            stop: ExecutionStatus | None = None
            pool = ThreadPoolExecutor(
                max_workers=self.max_concurrency,
                thread_name_prefix=f"spindle-{run.execution.id[-8:]}",
            )
            futures: dict[Future[_NodeOutcome], str] = {}
            try:
                stop = self._schedule(run, pool, futures)
            except StateStoreError as exc:
                logger.error("workflow.state_store_failed", error=exc.message)
                run.state_error = exc
            except Exception as exc:
                logger.exception("workflow.scheduler_failed", error=str(exc))
                run.scheduler_error = exc
            finally:
                if stop == ExecutionStatus.CANCELLED and futures:
                    done, _ = wait(list(futures))
                    with run.lock:
                        for future in done:
                            self._record_outcome(run, futures.pop(future), future, schedule=False)
                pool.shutdown(wait=False, cancel_futures=True)
            try:
                return self._finish(run, stop, abandoned=set(futures.values()))
            finally:
                with self._lock:
                    self._runs.pop(run.execution.id, None)

    # =========================================================================
    # Scheduling
    # =========================================================================

    def _schedule(
        self,
        run: _Run,
        pool: ThreadPoolExecutor,
        futures: dict[Future[_NodeOutcome], str],
    ) -> ExecutionStatus | None:
        """Tick until nothing is left to run; returns the stop reason, if any."""
        attempted: set[str] = set()
        while True:
            with run.lock:
                if run.cancel_event.is_set():
                    return ExecutionStatus.CANCELLED
                if run.deadline is not None and run.deadline.is_expired():
                    logger.warning("workflow.deadline_expired", timeout_seconds=run.deadline.timeout_seconds)
                    return ExecutionStatus.TIMED_OUT
                if run.timed_out_node is not None:
                    return ExecutionStatus.TIMED_OUT

                paused = run.execution.status == ExecutionStatus.PAUSED
                if not paused:
                    self._dispatch_ready(run, pool, futures, attempted)
                    if not futures:
                        return None

            if not futures:
                run.wake.wait(self.poll_interval)
                run.wake.clear()
                continue

            done, _ = wait(list(futures), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
            with run.lock:
                for future in done:
                    self._record_outcome(run, futures.pop(future), future)

    def _dispatch_ready(
        self,
        run: _Run,
        pool: ThreadPoolExecutor,
        futures: dict[Future[_NodeOutcome], str],
        attempted: set[str],
    ) -> None:
        definition = run.definition
        nodes = run.execution.node_executions
        progressed = True
        # Skips can make further nodes ready within the same tick.
        while progressed:
            progressed = False
            for node_id in run.order:
                if node_id in attempted:
                    continue
                if not all(nodes[p].status.is_terminal for p in definition.predecessors(node_id)):
                    continue
                attempted.add(node_id)
                node = definition.get_node(node_id)
                context = self._reference_context(run)
                reason = self._gate(run, node, context)
                if reason is not None:
                    self._skip(run, node_id, reason)
                    progressed = True
                    continue
                self._dispatch(run, pool, futures, node, context)

    def _gate(self, run: _Run, node: Node, context: dict[str, Value]) -> SkipReason | None:
        definition = run.definition
        nodes = run.execution.node_executions
        predecessors = definition.predecessors(node.id)
        incoming = definition.incoming_edges(node.id)

        for pred in predecessors:
            if nodes[pred].status == NodeStatus.FAILED:
                conditioned = [e for e in incoming if e.source == pred and e.condition]
                if not any(self._edge_passes(run, e, context) for e in conditioned):
                    return SkipReason.DEPENDENCY_FAILED

        for edge in incoming:
            if edge.condition and nodes[edge.source].status == NodeStatus.COMPLETED:
                if not self._edge_passes(run, edge, context):
                    return SkipReason.EDGE_CONDITION_FALSE

        if predecessors and all(nodes[p].status == NodeStatus.SKIPPED for p in predecessors):
            return SkipReason.UPSTREAM_SKIPPED

        if node.condition is not None:
            if not self.evaluator.evaluate(
                node.condition.expression, context, grammar=node.condition.grammar
            ):
                return SkipReason.CONDITION_FALSE
        return None

    def _edge_passes(self, run: _Run, edge: Edge, context: dict[str, Value]) -> bool:
        key = (edge.source, edge.target)
        if key not in run.edge_results:
            run.edge_results[key] = self.evaluator.evaluate(edge.condition, context)
        return run.edge_results[key]

    def _reference_context(self, run: _Run) -> dict[str, Value]:
        """``parameters``, ``variables`` and one map per finished node."""
        state = self.state_store.get_current_state(run.execution.id)
        context: dict[str, Value] = {
            PARAMETERS_ROOT: run.parameters,
            VARIABLES_ROOT: Value(ValueKind.MAP, dict(state.variables) if state else {}),
        }
        for node_id, record in run.execution.node_executions.items():
            if record.status.is_terminal:
                context[node_id] = Value(
                    ValueKind.MAP,
                    {
                        **record.output,
                        "status": Value.of(record.status.value),
                        "error": Value.of(record.error_message),
                    },
                )
        return context

    def _node_configuration(self, run: _Run, node: Node) -> dict[str, Value]:
        """Node configuration with per-node overrides from the execution configuration."""
        override = run.execution.configuration.get(node.id)
        if override is None or override.kind != ValueKind.MAP:
            return dict(node.configuration)
        return {**node.configuration, **override.data}

    def _skip(self, run: _Run, node_id: str, reason: SkipReason) -> None:
        record = run.execution.node_executions[node_id]
        record.status = NodeStatus.SKIPPED
        record.skip_reason = reason
        record.completed_at = utc_now()
        self.executions.save_node_execution(run.execution.id, record)
        logger.info("node.skipped", node_id=node_id, reason=reason.value)

    def _dispatch(
        self,
        run: _Run,
        pool: ThreadPoolExecutor,
        futures: dict[Future[_NodeOutcome], str],
        node: Node,
        context: dict[str, Value],
    ) -> None:
        execution_id = run.execution.id
        record = run.execution.node_executions[node.id]
        record.status = NodeStatus.RUNNING
        record.started_at = utc_now()
        self.executions.save_node_execution(execution_id, record)

        self.state_store.update_current_node(execution_id, node.id)
        state = self.state_store.add_pending_node(execution_id, node.id)

        configuration = self._node_configuration(run, node)
        future = pool.submit(self._invoke_node, run, node, configuration, context, state)
        futures[future] = node.id
        logger.info("node.dispatch", node_id=node.id, node_type=node.type.value)

    # =========================================================================
    # Node invocation (worker threads)
    # =========================================================================

    def _invoke_node(
        self,
        run: _Run,
        node: Node,
        configuration: dict[str, Value],
        context: dict[str, Value],
        state: ExecutionState,
    ) -> _NodeOutcome:
        outcome = _NodeOutcome(node.id)
        retry = RetryContext(node.retry_strategy())
        executor = self.executors.get(node.type)

        while True:
            retry.begin_attempt()
            try:
                if executor is None:
                    raise NodeExecutionError(
                        f"No executor registered for node type '{node.type.value}'",
                        node_id=node.id,
                        retryable=False,
                    )
                config = self._resolved_configuration(node, configuration, context)
                result = ActionResult.from_value(self._attempt(node, executor, config, state))
                if not result.success:
                    raise NodeExecutionError(result.error or "Action failed", node_id=node.id)
                outcome.output = wrap_mapping({
                    **result.output,
                    "executedAt": utc_now(),
                    "nodeId": node.id,
                    "nodeType": node.type.value,
                })
                outcome.success = True
                break
            except TimeoutExpired as exc:
                error = NodeTimeoutError(node.id, exc.timeout, cause=exc)
                logger.warning(
                    "node.timeout",
                    execution_id=run.execution.id,
                    node_id=node.id,
                    attempt=retry.attempts,
                    timeout_seconds=exc.timeout,
                    on_timeout=node.timeout.on_timeout.value if node.timeout else None,
                )
                if node.timeout is not None and node.timeout.on_timeout == OnTimeout.FAIL:
                    outcome.error = error.message
                    outcome.timed_out = True
                    break
                retry.record_failure(error)
            except Exception as exc:
                retry.record_failure(exc)

            if run.cancel_event.is_set() or not retry.should_retry():
                outcome.error = _error_message(retry.last_error)
                break
            delay = retry.next_delay()
            logger.info(
                "node.retry",
                execution_id=run.execution.id,
                node_id=node.id,
                attempt=retry.attempts,
                delay_seconds=delay,
                error=_error_message(retry.last_error),
            )
            self._backoff(run, delay)
            if run.cancel_event.is_set():
                outcome.error = f"Cancelled during retry backoff: {_error_message(retry.last_error)}"
                break

        outcome.attempts = retry.attempts
        outcome.delays = list(retry.delays)
        outcome.completed_at = utc_now()
        return outcome

    def _resolved_configuration(
        self,
        node: Node,
        configuration: dict[str, Value],
        context: dict[str, Value],
    ) -> dict[str, Any]:
        """Resolve references; a condition node keeps its expression verbatim."""
        if node.type != NodeType.CONDITION:
            return unwrap_mapping(resolve_configuration(configuration, context, node.id))
        expression = configuration.get(CONDITION_EXPRESSION_KEY)
        rest = {k: v for k, v in configuration.items() if k != CONDITION_EXPRESSION_KEY}
        config = unwrap_mapping(resolve_configuration(rest, context, node.id))
        if expression is not None:
            config[CONDITION_EXPRESSION_KEY] = expression.to_python()
        config[CONDITION_CONTEXT_KEY] = context
        return config

    def _attempt(
        self,
        node: Node,
        executor: ActionExecutor,
        config: dict[str, Any],
        state: ExecutionState,
    ) -> Any:
        if node.timeout is None:
            return executor.execute(config, state)
        return run_with_timeout(
            executor.execute,
            node.timeout.duration,
            operation=f"node:{node.id}",
            args=(config, state),
        )

    def _backoff(self, run: _Run, delay: float) -> None:
        if self._sleep is None:
            run.cancel_event.wait(delay)
        else:
            self._sleep(delay)

    # =========================================================================
    # Recording
    # =========================================================================

    def _record_outcome(
        self,
        run: _Run,
        node_id: str,
        future: Future[_NodeOutcome],
        schedule: bool = True,
    ) -> None:
        execution_id = run.execution.id
        try:
            outcome = future.result()
        except Exception as exc:
            logger.error("node.dispatch_failed", node_id=node_id, error=str(exc))
            outcome = _NodeOutcome(node_id, error=str(exc), attempts=1, completed_at=utc_now())

        record = run.execution.node_executions[node_id]
        record.attempts = outcome.attempts
        record.completed_at = outcome.completed_at or utc_now()
        if outcome.success:
            record.status = NodeStatus.COMPLETED
            record.output = outcome.output
            self.state_store.mark_node_completed(execution_id, node_id)
            logger.info(
                "node.complete",
                node_id=node_id,
                attempts=outcome.attempts,
                duration_seconds=record.duration_seconds,
            )
        else:
            record.status = NodeStatus.FAILED
            record.error_message = outcome.error
            record.timed_out = outcome.timed_out
            self.state_store.remove_pending_node(execution_id, node_id)
            if outcome.timed_out and schedule:
                run.timed_out_node = node_id
            logger.warning(
                "node.failed",
                node_id=node_id,
                attempts=outcome.attempts,
                timed_out=outcome.timed_out,
                error=outcome.error,
            )

        self.executions.save_node_execution(execution_id, record)
        tags = {"node_id": node_id, "status": record.status.value}
        if record.duration_seconds is not None:
            self.executions.record_metric(
                execution_id, "node.duration_ms", record.duration_seconds * 1000, "ms", tags
            )
        self.executions.record_metric(execution_id, "node.attempts", float(outcome.attempts), None, tags)

    def _transition(self, run: _Run, target: ExecutionStatus) -> None:
        """Change status, persist the record, mirror it into state (caller holds run.lock)."""
        run.execution.transition_to(target)
        self.executions.update_execution(run.execution)
        if run.state_error is None:
            self.state_store.update_state(run.execution.id, {"status": target.value})

    def _finish(self, run: _Run, stop: ExecutionStatus | None, abandoned: set[str]) -> Execution:
        execution = run.execution
        definition = run.definition
        with run.lock:
            skip_reason = {
                ExecutionStatus.CANCELLED: SkipReason.CANCELLED,
                ExecutionStatus.TIMED_OUT: SkipReason.TIMED_OUT,
            }.get(stop, SkipReason.UPSTREAM_SKIPPED)
            for node_id in run.order:
                record = execution.node_executions[node_id]
                stranded = node_id in abandoned or run.scheduler_error is not None
                if stranded and record.status == NodeStatus.RUNNING:
                    record.status = NodeStatus.FAILED
                    record.timed_out = stop == ExecutionStatus.TIMED_OUT
                    record.error_message = "Abandoned while running: execution stopped"
                    record.completed_at = utc_now()
                    self.executions.save_node_execution(execution.id, record)
                elif record.status == NodeStatus.PENDING:
                    self._skip(run, node_id, skip_reason)

            status, error_message = self._terminal_status(run, stop)
            if execution.status == ExecutionStatus.PAUSED and status == ExecutionStatus.COMPLETED:
                execution.transition_to(ExecutionStatus.RUNNING)
            execution.transition_to(status)
            execution.completed_at = utc_now()
            execution.error_message = error_message
            self.executions.update_execution(execution)

            if run.state_error is None:
                try:
                    self.state_store.update_state(
                        execution.id,
                        {"status": status.value, "completedAt": to_iso8601(execution.completed_at)},
                    )
                except StateStoreError as exc:
                    logger.error("workflow.state_store_failed", error=exc.message)
            self.state_store.invalidate(execution.id)

            if execution.duration_seconds is not None:
                self.executions.record_metric(
                    execution.id,
                    "execution.duration_ms",
                    execution.duration_seconds * 1000,
                    "ms",
                    {"workflow_id": definition.id, "status": status.value},
                )

        logger.info(
            "workflow.complete",
            workflow=definition.name,
            execution_id=execution.id,
            status=status.value,
            duration_seconds=execution.duration_seconds,
            completed=len(execution.nodes_with_status(NodeStatus.COMPLETED)),
            failed=len(execution.nodes_with_status(NodeStatus.FAILED)),
            skipped=len(execution.nodes_with_status(NodeStatus.SKIPPED)),
        )
        return self.get_execution(execution.id)

    def _terminal_status(
        self,
        run: _Run,
        stop: ExecutionStatus | None,
    ) -> tuple[ExecutionStatus, str | None]:
        if run.state_error is not None:
            return ExecutionStatus.FAILED, f"State store failure: {run.state_error.message}"
        if run.scheduler_error is not None:
            return ExecutionStatus.FAILED, f"Scheduler failure: {_error_message(run.scheduler_error)}"
        if stop == ExecutionStatus.CANCELLED:
            return ExecutionStatus.CANCELLED, "Execution cancelled"
        if stop == ExecutionStatus.TIMED_OUT:
            if run.timed_out_node is not None:
                return ExecutionStatus.TIMED_OUT, f"Node '{run.timed_out_node}' timed out"
            return (
                ExecutionStatus.TIMED_OUT,
                f"Workflow timed out after {run.deadline.timeout_seconds}s" if run.deadline else "Workflow timed out",
            )

        unhandled = [
            node_id
            for node_id in run.order
            if run.execution.node_executions[node_id].status == NodeStatus.FAILED
            and not self._failure_handled(run, node_id)
        ]
        if unhandled:
            first = run.execution.node_executions[unhandled[0]]
            return ExecutionStatus.FAILED, f"Node '{unhandled[0]}' failed: {first.error_message}"
        return ExecutionStatus.COMPLETED, None

    def _failure_handled(self, run: _Run, node_id: str) -> bool:
        """True if a conditioned edge out of ``node_id`` held and its target completed."""
        nodes = run.execution.node_executions
        return any(
            edge.condition
            and run.edge_results.get((edge.source, edge.target)) is True
            and nodes[edge.target].status == NodeStatus.COMPLETED
            for edge in run.definition.outgoing_edges(node_id)
        )


def _error_message(error: BaseException | None) -> str:
    if error is None:
        return "Unknown error"
    message = getattr(error, "message", None) or str(error)
    return message or type(error).__name__
