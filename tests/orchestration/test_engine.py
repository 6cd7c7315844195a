"""Tests for the workflow engine: scheduling, gating, retries, timeouts and control."""

import threading
import time

import pytest

from conftest import Gate, end_node, registry_with, start_node, wait_until
from spindle.core.errors import DefinitionError, ExecutionStateError, WorkflowNotFoundError
from spindle.core.values import Value, ValueKind
from spindle.orchestration import (
    ActionExecutorRegistry,
    Edge,
    ExecutionStatus,
    InMemoryExecutionRepository,
    Node,
    NodeStatus,
    NodeType,
    OnTimeout,
    ParameterSpec,
    RetryPolicy,
    SkipReason,
    TimeoutPolicy,
    WorkflowCatalog,
    WorkflowDefinition,
    WorkflowEngine,
)


def single_action(node: Node, name: str = "single") -> WorkflowDefinition:
    """start -> node -> end"""
    return WorkflowDefinition(name=name, nodes=(start_node(), node, end_node(node.id)))


class Flaky:
    """Fails the first ``failures`` calls, then returns ``{"ok": True}``."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    def __call__(self, config, state):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"transient failure {self.calls}")
        return {"ok": True}


def always_fail(config, state):
    raise RuntimeError("boom")


# =============================================================================
# Basic runs
# =============================================================================


class TestLinearRun:
    def test_runs_in_order_and_passes_outputs(self, linear_definition):
        seen = []

        def action(config, state):
            seen.append(config)
            return {"rows": 42} if "table" in config else {"loaded": config["rows"]}

        engine = WorkflowEngine(executors=registry_with(action))
        execution = engine.execute(linear_definition)

        assert execution.status == ExecutionStatus.COMPLETED
        assert seen == [{"table": "orders"}, {"rows": 42}]
        assert execution.node("load").output["loaded"] == Value.of(42)
        assert execution.error_message is None
        assert execution.completed_at is not None

    def test_inputs_override_parameter_defaults(self, linear_definition):
        seen = []
        engine = WorkflowEngine(executors=registry_with(lambda c, s: seen.append(c) or {"rows": 1}))
        engine.execute(linear_definition, inputs={"table": "customers"})
        assert seen[0] == {"table": "customers"}

    def test_output_is_stamped(self, linear_definition):
        engine = WorkflowEngine(executors=registry_with(lambda c, s: {"rows": 1}))
        output = engine.execute(linear_definition).node("extract").output
        assert output["nodeId"] == Value.of("extract")
        assert output["nodeType"] == Value.of("action")
        assert output["executedAt"].kind == ValueKind.TIMESTAMP

    def test_start_and_end_outputs(self, linear_definition):
        engine = WorkflowEngine(executors=registry_with(lambda c, s: {"rows": 1}))
        execution = engine.execute(linear_definition)
        assert execution.node("start").output["result"] == Value.of("completed")
        assert execution.node("end").output["result"] == Value.of("completed")
        assert all(n.attempts == 1 for n in execution.node_executions.values())

    def test_per_node_configuration_override(self, linear_definition):
        seen = []
        engine = WorkflowEngine(executors=registry_with(lambda c, s: seen.append(c) or {"rows": 3}))
        engine.execute(linear_definition, configuration={"extract": {"table": "archive"}})
        assert seen[0] == {"table": "archive"}


class TestDiamond:
    @staticmethod
    def engine():
        def action(config, state):
            return {"rows": config["rows"]} if "rows" in config else {}

        return WorkflowEngine(executors=registry_with(action))

    def test_high_branch(self, diamond_definition):
        execution = self.engine().execute(diamond_definition, inputs={"rows": 20})

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.node("high").status == NodeStatus.COMPLETED
        assert execution.node("low").status == NodeStatus.SKIPPED
        assert execution.node("low").skip_reason == SkipReason.EDGE_CONDITION_FALSE
        assert execution.node("join").status == NodeStatus.COMPLETED
        assert execution.node("end").status == NodeStatus.COMPLETED

    def test_low_branch_with_default(self, diamond_definition):
        execution = self.engine().execute(diamond_definition)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.node("low").status == NodeStatus.COMPLETED
        assert execution.node("high").skip_reason == SkipReason.EDGE_CONDITION_FALSE


class TestConcurrency:
    def test_independent_nodes_run_in_parallel(self, fan_out_definition):
        barrier = threading.Barrier(3)

        def action(config, state):
            if "branch" in config:
                barrier.wait(timeout=2)
            return {"branch": config.get("branch")}

        engine = WorkflowEngine(executors=registry_with(action), max_concurrency=4)
        execution = engine.execute(fan_out_definition)

        assert execution.status == ExecutionStatus.COMPLETED
        assert {execution.node(n).status for n in "abc"} == {NodeStatus.COMPLETED}
        assert execution.node("merge").status == NodeStatus.COMPLETED

    def test_fan_in_waits_for_every_sibling(self, fan_out_definition):
        durations = {"a": 0.05, "b": 0.0, "c": 0.02}

        def action(config, state):
            time.sleep(durations.get(config.get("branch"), 0))
            return {}

        engine = WorkflowEngine(executors=registry_with(action), max_concurrency=4)
        execution = engine.execute(fan_out_definition)

        merge = execution.node("merge")
        latest = max(execution.node(n).completed_at for n in "abc")
        assert merge.status == NodeStatus.COMPLETED
        assert merge.started_at >= latest

    def test_max_concurrency_is_respected(self, fan_out_definition):
        lock = threading.Lock()
        active = [0]
        peak = [0]

        def action(config, state):
            with lock:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
            time.sleep(0.02)
            with lock:
                active[0] -= 1
            return {}

        engine = WorkflowEngine(executors=registry_with(action), max_concurrency=1)
        execution = engine.execute(fan_out_definition)

        assert execution.status == ExecutionStatus.COMPLETED
        assert peak[0] == 1


# =============================================================================
# Retries and timeouts
# =============================================================================


class TestRetries:
    def test_retry_until_success(self, sleep_recorder):
        flaky = Flaky(failures=2)
        node = Node("work", dependencies=("start",), retry=RetryPolicy(max_attempts=3, initial_delay=1.0))
        engine = WorkflowEngine(executors=registry_with(flaky), sleep=sleep_recorder)

        execution = engine.execute(single_action(node))

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.node("work").attempts == 3
        assert execution.node("work").retry_count == 2
        assert sleep_recorder.delays == [1.0, 2.0]

    def test_exhausted_retries_fail_the_execution(self, sleep_recorder):
        node = Node("work", dependencies=("start",), retry=RetryPolicy(max_attempts=2, initial_delay=0.5))
        engine = WorkflowEngine(executors=registry_with(always_fail), sleep=sleep_recorder)

        execution = engine.execute(single_action(node))

        assert execution.status == ExecutionStatus.FAILED
        assert execution.node("work").status == NodeStatus.FAILED
        assert execution.node("work").attempts == 2
        assert execution.node("work").error_message == "boom"
        assert execution.node("end").skip_reason == SkipReason.DEPENDENCY_FAILED
        assert "work" in execution.error_message
        assert sleep_recorder.delays == [0.5]

    def test_delay_is_capped(self, sleep_recorder):
        policy = RetryPolicy(max_attempts=4, initial_delay=1.0, backoff_multiplier=10.0, max_delay=5.0)
        node = Node("work", dependencies=("start",), retry=policy)
        engine = WorkflowEngine(executors=registry_with(always_fail), sleep=sleep_recorder)

        engine.execute(single_action(node))

        assert sleep_recorder.delays == [1.0, 5.0, 5.0]

    def test_no_policy_means_single_attempt(self, sleep_recorder):
        engine = WorkflowEngine(executors=registry_with(always_fail), sleep=sleep_recorder)
        execution = engine.execute(single_action(Node("work", dependencies=("start",))))
        assert execution.node("work").attempts == 1
        assert sleep_recorder.delays == []

    def test_false_return_is_a_failed_attempt(self, sleep_recorder):
        engine = WorkflowEngine(executors=registry_with(lambda c, s: False), sleep=sleep_recorder)
        execution = engine.execute(single_action(Node("work", dependencies=("start",))))
        assert execution.node("work").status == NodeStatus.FAILED
        assert execution.node("work").error_message == "Action returned False"

    def test_missing_executor_is_not_retried(self, sleep_recorder):
        node = Node("think", type=NodeType.AGENT, dependencies=("start",), retry=RetryPolicy(max_attempts=5))
        engine = WorkflowEngine(executors=ActionExecutorRegistry.default(), sleep=sleep_recorder)

        execution = engine.execute(single_action(node))

        assert execution.status == ExecutionStatus.FAILED
        assert execution.node("think").attempts == 1
        assert "No executor registered" in execution.node("think").error_message
        assert sleep_recorder.delays == []

    def test_unresolved_reference_is_not_retried(self, sleep_recorder):
        node = Node(
            "work",
            dependencies=("start",),
            configuration={"value": "${ghost.value}"},
            retry=RetryPolicy(max_attempts=3),
        )
        calls = []
        engine = WorkflowEngine(executors=registry_with(lambda c, s: calls.append(c)), sleep=sleep_recorder)

        execution = engine.execute(single_action(node))

        assert execution.node("work").status == NodeStatus.FAILED
        assert execution.node("work").attempts == 1
        assert "ghost.value" in execution.node("work").error_message
        assert calls == []


@pytest.mark.slow
class TestTimeouts:
    def test_node_timeout_with_fail(self):
        def slow(config, state):
            time.sleep(0.5)
            return {}

        node = Node("slow", dependencies=("start",), timeout=TimeoutPolicy(0.05, OnTimeout.FAIL))
        engine = WorkflowEngine(executors=registry_with(slow))

        execution = engine.execute(single_action(node))

        assert execution.status == ExecutionStatus.TIMED_OUT
        assert execution.node("slow").status == NodeStatus.FAILED
        assert execution.node("slow").timed_out
        assert execution.node("end").skip_reason == SkipReason.TIMED_OUT
        assert "slow" in execution.error_message

    def test_node_timeout_with_retry(self, sleep_recorder):
        calls = []

        def slow_once(config, state):
            calls.append(1)
            if len(calls) == 1:
                time.sleep(0.5)
            return {"attempt": len(calls)}

        node = Node(
            "work",
            dependencies=("start",),
            timeout=TimeoutPolicy(0.1, OnTimeout.RETRY),
            retry=RetryPolicy(max_attempts=2, initial_delay=0.01),
        )
        engine = WorkflowEngine(executors=registry_with(slow_once), sleep=sleep_recorder)

        execution = engine.execute(single_action(node))

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.node("work").attempts == 2
        assert not execution.node("work").timed_out

    def test_workflow_deadline_abandons_running_nodes(self):
        gate = Gate()
        engine = WorkflowEngine(executors=registry_with(gate), poll_interval=0.01)
        try:
            execution = engine.execute(single_action(Node("work", dependencies=("start",))), timeout=0.2)
        finally:
            gate.release.set()

        assert execution.status == ExecutionStatus.TIMED_OUT
        work = execution.node("work")
        assert work.status == NodeStatus.FAILED
        assert work.timed_out
        assert work.error_message == "Abandoned while running: execution stopped"
        assert execution.node("end").skip_reason == SkipReason.TIMED_OUT


# =============================================================================
# Control
# =============================================================================


class TestControl:
    def test_cancel_drains_running_nodes(self):
        gate = Gate()
        engine = WorkflowEngine(executors=registry_with(gate), poll_interval=0.01)
        handle = engine.submit(single_action(Node("work", dependencies=("start",))))
        try:
            assert gate.entered.wait(5)
            engine.cancel(handle.execution_id)
            time.sleep(0.1)
        finally:
            gate.release.set()
        execution = handle.result(timeout=5)

        assert execution.status == ExecutionStatus.CANCELLED
        assert execution.node("work").status == NodeStatus.COMPLETED
        assert execution.node("end").skip_reason == SkipReason.CANCELLED
        assert handle.done()

    def test_pause_and_resume(self):
        gate = Gate()
        engine = WorkflowEngine(executors=registry_with(gate), poll_interval=0.01)
        handle = engine.submit(single_action(Node("work", dependencies=("start",))))
        eid = handle.execution_id
        try:
            assert gate.entered.wait(5)
            paused = engine.pause(eid)
            assert paused.status == ExecutionStatus.PAUSED
            assert [e.id for e in engine.list_active_executions()] == [eid]
        finally:
            gate.release.set()

        assert wait_until(lambda: engine.get_execution(eid).node("work").status == NodeStatus.COMPLETED)
        time.sleep(0.05)
        assert engine.get_execution(eid).node("end").status == NodeStatus.PENDING

        assert engine.resume(eid).status == ExecutionStatus.RUNNING
        execution = handle.result(timeout=5)
        assert execution.status == ExecutionStatus.COMPLETED
        assert engine.list_active_executions() == []

    def test_resume_requires_paused(self):
        gate = Gate()
        engine = WorkflowEngine(executors=registry_with(gate), poll_interval=0.01)
        handle = engine.submit(single_action(Node("work", dependencies=("start",))))
        try:
            assert gate.entered.wait(5)
            with pytest.raises(ExecutionStateError):
                engine.resume(handle.execution_id)
        finally:
            gate.release.set()
        handle.result(timeout=5)

    def test_control_on_terminal_execution(self, linear_definition):
        engine = WorkflowEngine(executors=registry_with(lambda c, s: {"rows": 1}))
        execution = engine.execute(linear_definition)
        with pytest.raises(ExecutionStateError):
            engine.pause(execution.id)
        with pytest.raises(ExecutionStateError):
            engine.cancel(execution.id)

    def test_unknown_execution(self):
        with pytest.raises(ExecutionStateError):
            WorkflowEngine().get_execution("missing")

    def test_handle_result_timeout(self):
        gate = Gate()
        engine = WorkflowEngine(executors=registry_with(gate), poll_interval=0.01)
        handle = engine.submit(single_action(Node("work", dependencies=("start",))))
        try:
            with pytest.raises(TimeoutError):
                handle.result(timeout=0.05)
        finally:
            gate.release.set()
        assert handle.result(timeout=5).status == ExecutionStatus.COMPLETED


# =============================================================================
# Gating
# =============================================================================


class TestGating:
    def test_handled_failure_completes(self):
        definition = WorkflowDefinition(
            name="guarded",
            nodes=(
                start_node(),
                Node("risky", dependencies=("start",), configuration={"fail": True}),
                Node("handler"),
                end_node("handler"),
            ),
            edges=(Edge("risky", "handler", "${risky.status} == 'failed'"),),
        )

        def action(config, state):
            if config.get("fail"):
                raise RuntimeError("risky broke")
            return {"handled": True}

        execution = WorkflowEngine(executors=registry_with(action)).execute(definition)

        assert execution.node("risky").status == NodeStatus.FAILED
        assert execution.node("handler").status == NodeStatus.COMPLETED
        assert execution.status == ExecutionStatus.COMPLETED

    def test_node_condition_false(self):
        definition = WorkflowDefinition(
            name="optional",
            parameters={"enabled": ParameterSpec("enabled", "boolean", default=False)},
            nodes=(
                start_node(),
                Node("maybe", dependencies=("start",), condition="${parameters.enabled} == true"),
                Node("after", dependencies=("maybe",)),
                end_node("after"),
            ),
        )
        engine = WorkflowEngine(executors=registry_with(lambda c, s: {}))

        execution = engine.execute(definition)
        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.node("maybe").skip_reason == SkipReason.CONDITION_FALSE
        assert execution.node("after").skip_reason == SkipReason.UPSTREAM_SKIPPED
        assert execution.node("end").skip_reason == SkipReason.UPSTREAM_SKIPPED

        enabled = engine.execute(definition, inputs={"enabled": True})
        assert enabled.node("maybe").status == NodeStatus.COMPLETED
        assert enabled.node("end").status == NodeStatus.COMPLETED

    def test_failure_skips_downstream_chain(self, linear_definition):
        execution = WorkflowEngine(executors=registry_with(always_fail)).execute(linear_definition)

        assert execution.status == ExecutionStatus.FAILED
        assert execution.node("load").skip_reason == SkipReason.DEPENDENCY_FAILED
        assert execution.node("end").skip_reason == SkipReason.UPSTREAM_SKIPPED


# =============================================================================
# Definition errors
# =============================================================================


class TestDefinitionErrors:
    def test_missing_required_parameter(self):
        definition = WorkflowDefinition(
            name="needs-region",
            parameters={"region": ParameterSpec("region", required=True)},
            nodes=(start_node(), end_node("start")),
        )
        engine = WorkflowEngine()

        with pytest.raises(DefinitionError) as exc_info:
            engine.execute(definition)
        assert exc_info.value.code == "MISSING_REQUIRED_PARAMETER"

        assert engine.execute(definition, inputs={"region": "eu"}).status == ExecutionStatus.COMPLETED

    def test_cycle(self):
        definition = WorkflowDefinition(
            name="loop",
            nodes=(start_node(), Node("a", dependencies=("start", "b")), Node("b", dependencies=("a",))),
        )
        with pytest.raises(DefinitionError) as exc_info:
            WorkflowEngine().execute(definition)
        assert exc_info.value.code == "CYCLE_DETECTED"


# =============================================================================
# State, metrics and queries
# =============================================================================


class TestBookkeeping:
    def test_repository_failure_finishes_execution(self, linear_definition):
        class BrokenOnce(InMemoryExecutionRepository):
            broken = False

            def save_node_execution(self, execution_id, node_execution):
                if node_execution.node_id == "extract" and node_execution.status == NodeStatus.COMPLETED:
                    if not self.broken:
                        self.broken = True
                        raise OSError("disk full")
                super().save_node_execution(execution_id, node_execution)

        engine = WorkflowEngine(executors=registry_with(lambda c, s: {"rows": 1}), executions=BrokenOnce())

        execution = engine.execute(linear_definition)

        assert execution.status == ExecutionStatus.FAILED
        assert "disk full" in execution.error_message
        assert execution.node("load").status == NodeStatus.SKIPPED
        assert engine.list_active_executions() == []
        with pytest.raises(ExecutionStateError):
            engine.pause(execution.id)

    def test_state_after_run(self, linear_definition):
        engine = WorkflowEngine(executors=registry_with(lambda c, s: {"rows": 1}))
        execution = engine.execute(linear_definition, inputs={"table": "t"})

        state = engine.state_store.get_current_state(execution.id)
        assert state.data["status"] == Value.of("completed")
        assert state.data["workflowId"] == Value.of(linear_definition.id)
        assert state.data["inputs"] == Value.of({"table": "t"})
        assert set(state.completed_nodes) == {"start", "extract", "load", "end"}
        assert state.pending_nodes == ()
        assert len(engine.state_store.get_state_history(execution.id)) > 1

    def test_metrics(self, linear_definition):
        engine = WorkflowEngine(executors=registry_with(lambda c, s: {"rows": 1}))
        execution = engine.execute(linear_definition)

        attempts = engine.executions.list_metrics(execution.id, "node.attempts")
        assert {m.tags["node_id"] for m in attempts} == {"start", "extract", "load", "end"}
        assert len(engine.executions.list_metrics(execution.id, "node.duration_ms")) == 4
        (duration,) = engine.executions.list_metrics(execution.id, "execution.duration_ms")
        assert duration.unit == "ms"
        assert duration.tags["status"] == "completed"

    def test_stats(self, linear_definition):
        outcomes = iter([{"rows": 1}, False, {"rows": 1}, {"rows": 1}])
        engine = WorkflowEngine(executors=registry_with(lambda c, s: next(outcomes)))
        engine.execute(linear_definition)
        engine.execute(linear_definition)

        stats = engine.get_execution_stats(linear_definition.id)
        assert stats.total == 2
        assert stats.successful == 1
        assert stats.failed == 1
        assert stats.success_rate == 0.5
        assert stats.avg_duration_seconds is not None
        assert engine.get_execution_stats("other").total == 0

    def test_retry_execution(self, linear_definition):
        flaky = Flaky(failures=1)
        engine = WorkflowEngine(executors=registry_with(flaky))
        failed = engine.execute(linear_definition, inputs={"table": "t"})
        assert failed.status == ExecutionStatus.FAILED

        retried = engine.retry_execution(failed.id)

        assert retried.id != failed.id
        assert retried.status == ExecutionStatus.COMPLETED
        assert retried.inputs == failed.inputs
        assert engine.get_execution(failed.id).status == ExecutionStatus.FAILED
        with pytest.raises(ExecutionStateError):
            engine.retry_execution(retried.id)

    def test_start_from_catalog(self, linear_definition):
        catalog = WorkflowCatalog()
        catalog.create(linear_definition)
        engine = WorkflowEngine(executors=registry_with(lambda c, s: {"rows": 1}), catalog=catalog)

        handle = engine.start(linear_definition.id, owner_id="ops")
        execution = handle.result(timeout=5)

        assert execution.status == ExecutionStatus.COMPLETED
        assert execution.owner_id == "ops"
        assert execution.workflow_name == "orders.linear"
        with pytest.raises(WorkflowNotFoundError):
            engine.start("missing")


class TestConditionNode:
    def routed(self, expression: str, parameters: dict) -> WorkflowDefinition:
        """start -> extract -> route -> (yes | no) where route is a condition node."""
        return WorkflowDefinition(
            name="routed",
            parameters=parameters,
            nodes=(
                start_node(),
                Node("extract", dependencies=("start",)),
                Node("route", type=NodeType.CONDITION, dependencies=("extract",),
                     configuration={"expression": expression}),
                Node("yes"),
                Node("no"),
                end_node("yes", "no"),
            ),
            edges=(
                Edge("route", "yes", "${route.result} == true"),
                Edge("route", "no", "${route.result} == false"),
            ),
        )

    def engine(self) -> WorkflowEngine:
        return WorkflowEngine(executors=registry_with(lambda c, s: {"rows": 12}))

    def test_embedded_parameter_reference(self):
        definition = self.routed(
            "${parameters.mode} == 'full'",
            {"mode": ParameterSpec("mode", "string", default="full")},
        )

        execution = self.engine().execute(definition)

        assert execution.node("route").status == NodeStatus.COMPLETED
        assert execution.node("route").output_python()["result"] is True
        assert execution.node("yes").status == NodeStatus.COMPLETED
        assert execution.node("no").skip_reason == SkipReason.EDGE_CONDITION_FALSE

    def test_bare_boolean_reference(self):
        definition = self.routed(
            "${parameters.flag}",
            {"flag": ParameterSpec("flag", "boolean", default=False)},
        )

        execution = self.engine().execute(definition, inputs={"flag": True})

        assert execution.node("route").status == NodeStatus.COMPLETED
        assert execution.node("route").output_python()["result"] is True

    def test_reads_upstream_outputs(self):
        execution = self.engine().execute(self.routed("${extract.rows} > 100", {}))

        assert execution.node("route").output_python()["result"] is False
        assert execution.node("no").status == NodeStatus.COMPLETED
        assert execution.node("yes").skip_reason == SkipReason.EDGE_CONDITION_FALSE
        assert execution.status == ExecutionStatus.COMPLETED
