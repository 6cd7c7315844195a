"""Action executors — what a node actually does when it is dispatched.

The engine looks up an executor by :class:`NodeType` and calls
``execute(config, state)`` with the node's resolved configuration (plain
Python values) and the current :class:`ExecutionState`. Anything with that
signature works: a class implementing :class:`ActionExecutor` or a plain
function.

ARCHITECTURE
────────────
::

    ActionResult
      ├── .ok(output)        → success, output merged into the node record
      ├── .fail(error)       → failed attempt (retried per policy)
      └── .from_value(any)   → coerce plain returns

    ActionExecutorRegistry
      ├── register(node_type, executor | callable)
      ├── get(node_type)
      └── default()          → start / end / wait / condition built-ins

Raising from an executor counts as a failed attempt, exactly like returning
``ActionResult.fail``.

Example::

    registry = ActionExecutorRegistry.default()

    def load_orders(config, state):
        rows = fetch(config["table"])
        return {"rows": len(rows)}

    registry.register(NodeType.ACTION, load_orders)
"""

from __future__ import annotations

import random
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from spindle.core.logging import get_logger
from spindle.orchestration.conditions import ConditionEvaluator
from spindle.orchestration.graph import NodeType
from spindle.orchestration.models import ExecutionState

logger = get_logger(__name__)

SleepFunc = Callable[[float], None]


@dataclass
class ActionResult:
    """Outcome of one executor call.

    Attributes:
        success: Whether the attempt succeeded
        output: Fields recorded as the node's output
        error: Error message if success=False
    """

    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    def __post_init__(self):
        if not self.success and not self.error:
            self.error = "Action failed without error message"

    @classmethod
    def ok(cls, output: Mapping[str, Any] | None = None) -> ActionResult:
        return cls(success=True, output=dict(output or {}))

    @classmethod
    def fail(cls, error: str, output: Mapping[str, Any] | None = None) -> ActionResult:
        return cls(success=False, output=dict(output or {}), error=error)

    @classmethod
    def from_value(cls, value: Any) -> ActionResult:
        """Coerce an executor's return value.

        ========== ===========================================
        Type       Behaviour
        ========== ===========================================
        ActionResult  returned as-is
        None       ``ok()`` with empty output
        Mapping    ``ok(output=value)``
        bool       ``ok()`` if True, ``fail(...)`` if False
        other      ``ok(output={"result": value})``
        ========== ===========================================
        """
        if isinstance(value, ActionResult):
            return value
        if value is None:
            return cls.ok()
        if isinstance(value, Mapping):
            return cls.ok(output=value)
        if isinstance(value, bool):
            return cls.ok() if value else cls.fail("Action returned False")
        return cls.ok(output={"result": value})

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success, "output": self.output}
        if self.error:
            result["error"] = self.error
        return result


@runtime_checkable
class ActionExecutor(Protocol):
    """Contract for node handlers."""

    def execute(self, config: dict[str, Any], state: ExecutionState) -> ActionResult | Mapping[str, Any] | None: ...


class FunctionExecutor:
    """Adapts a plain ``fn(config, state)`` callable to :class:`ActionExecutor`."""

    def __init__(self, func: Callable[[dict[str, Any], ExecutionState], Any], name: str | None = None):
        self.func = func
        self.name = name or getattr(func, "__name__", "function")

    def execute(self, config: dict[str, Any], state: ExecutionState) -> Any:
        return self.func(config, state)

    def __repr__(self) -> str:
        return f"FunctionExecutor({self.name})"


# ---------------------------------------------------------------------------
# Built-in executors
# ---------------------------------------------------------------------------

class PassThroughExecutor:
    """Start / end nodes: no work, fixed output."""

    def execute(self, config: dict[str, Any], state: ExecutionState) -> ActionResult:
        return ActionResult.ok({"result": "completed"})


class WaitExecutor:
    """Sleeps for a configured duration.

    Config keys: ``duration`` or ``waitTime`` (milliseconds), ``waitType``
    (``fixed`` or ``random``) and for random waits ``minWaitTime`` /
    ``maxWaitTime`` (milliseconds).
    """

    def __init__(self, sleep: SleepFunc = time.sleep):
        self.sleep = sleep

    def execute(self, config: dict[str, Any], state: ExecutionState) -> ActionResult:
        wait_type = config.get("waitType", "fixed")
        if wait_type == "random":
            low = float(config.get("minWaitTime", 0))
            high = float(config.get("maxWaitTime", low))
            if high < low:
                return ActionResult.fail(f"maxWaitTime ({high}) is less than minWaitTime ({low})")
            millis = random.uniform(low, high)
        elif wait_type == "fixed":
            millis = float(config.get("duration", config.get("waitTime", 0)))
        else:
            return ActionResult.fail(f"Unsupported waitType: {wait_type}")

        if millis < 0:
            return ActionResult.fail(f"Wait duration must be non-negative, got {millis}")
        self.sleep(millis / 1000.0)
        return ActionResult.ok({"waited_ms": millis, "waitType": wait_type})


CONDITION_EXPRESSION_KEY = "expression"
CONDITION_CONTEXT_KEY = "context"


class ConditionExecutor:
    """Evaluates ``config["expression"]`` as a condition.

    The expression sees the state's ``variables`` and ``data`` plus whatever
    the caller passes in ``config["context"]``; the engine passes its
    reference context there (``parameters``, ``variables`` and one map per
    finished node), so expressions read like edge conditions.
    """

    def __init__(self, evaluator: ConditionEvaluator | None = None):
        self.evaluator = evaluator or ConditionEvaluator()

    def execute(self, config: dict[str, Any], state: ExecutionState) -> ActionResult:
        expression = config.get(CONDITION_EXPRESSION_KEY)
        if not isinstance(expression, str) or not expression.strip():
            return ActionResult.fail("Condition node requires an 'expression' string")
        context = {
            "variables": state.variables,
            "data": state.data,
            **config.get(CONDITION_CONTEXT_KEY, {}),
        }
        return ActionResult.ok({"result": self.evaluator.evaluate(expression, context)})


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ActionExecutorRegistry:
    """NodeType → executor mapping used by the engine."""

    def __init__(self) -> None:
        self._executors: dict[NodeType, ActionExecutor] = {}
        self._lock = threading.Lock()

    @classmethod
    def default(cls, sleep: SleepFunc = time.sleep) -> ActionExecutorRegistry:
        """Registry with the built-in start/end/wait/condition executors."""
        registry = cls()
        passthrough = PassThroughExecutor()
        registry.register(NodeType.START, passthrough)
        registry.register(NodeType.END, passthrough)
        registry.register(NodeType.WAIT, WaitExecutor(sleep))
        registry.register(NodeType.CONDITION, ConditionExecutor())
        return registry

    def register(
        self,
        node_type: NodeType | str,
        executor: ActionExecutor | Callable[[dict[str, Any], ExecutionState], Any],
    ) -> None:
        node_type = NodeType(node_type)
        if not isinstance(executor, ActionExecutor):
            if not callable(executor):
                raise TypeError(f"Executor for {node_type.value} must be callable or define execute()")
            executor = FunctionExecutor(executor)
        with self._lock:
            self._executors[node_type] = executor
        logger.debug("executor.registered", node_type=node_type.value, executor=repr(executor))

    def unregister(self, node_type: NodeType | str) -> None:
        with self._lock:
            self._executors.pop(NodeType(node_type), None)

    def get(self, node_type: NodeType | str) -> ActionExecutor | None:
        with self._lock:
            return self._executors.get(NodeType(node_type))

    def has(self, node_type: NodeType | str) -> bool:
        return self.get(node_type) is not None

    def registered_types(self) -> list[NodeType]:
        with self._lock:
            return list(self._executors)
