"""
Shared pytest fixtures for spindle tests.

This module provides:
- ``src`` on the import path
- Fresh settings per test
- Sample workflow definitions (linear, diamond, fan-out/fan-in)
- Recording helpers for sleeps and executor calls
"""

import sys
import threading
import time
from pathlib import Path
from typing import Any, Callable

import pytest

# Ensure spindle package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from spindle.core.settings import get_settings
from spindle.orchestration import (
    ActionExecutorRegistry,
    Edge,
    Node,
    NodeType,
    ParameterSpec,
    WorkflowDefinition,
)


# =============================================================================
# Settings
# =============================================================================


@pytest.fixture(autouse=True)
def fresh_settings():
    """Settings are cached process-wide; reload them for every test."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# =============================================================================
# Definitions
# =============================================================================


def start_node(node_id: str = "start") -> Node:
    return Node(node_id, type=NodeType.START)


def end_node(*dependencies: str, node_id: str = "end") -> Node:
    return Node(node_id, type=NodeType.END, dependencies=dependencies)


@pytest.fixture
def linear_definition() -> WorkflowDefinition:
    """start -> extract -> load -> end, with a reference between the actions."""
    return WorkflowDefinition(
        name="orders.linear",
        parameters={"table": ParameterSpec("table", "string", default="orders")},
        nodes=(
            start_node(),
            Node("extract", dependencies=("start",), configuration={"table": "${parameters.table}"}),
            Node("load", dependencies=("extract",), configuration={"rows": "${extract.rows}"}),
            end_node("load"),
        ),
    )


@pytest.fixture
def diamond_definition() -> WorkflowDefinition:
    """start -> check -> (high | low, by edge condition) -> join -> end."""
    return WorkflowDefinition(
        name="orders.diamond",
        parameters={"rows": ParameterSpec("rows", "integer", default=5)},
        nodes=(
            start_node(),
            Node("check", dependencies=("start",), configuration={"rows": "${parameters.rows}"}),
            Node("high"),
            Node("low"),
            Node("join", dependencies=("high", "low")),
            end_node("join"),
        ),
        edges=(
            Edge("check", "high", "${check.rows} > 10"),
            Edge("check", "low", "${check.rows} <= 10"),
        ),
    )


@pytest.fixture
def fan_out_definition() -> WorkflowDefinition:
    """start -> a, b, c in parallel -> merge -> end."""
    return WorkflowDefinition(
        name="orders.fan_out",
        nodes=(
            start_node(),
            Node("a", dependencies=("start",), configuration={"branch": "a"}),
            Node("b", dependencies=("start",), configuration={"branch": "b"}),
            Node("c", dependencies=("start",), configuration={"branch": "c"}),
            Node("merge", dependencies=("a", "b", "c")),
            end_node("merge"),
        ),
    )


# =============================================================================
# Recording helpers
# =============================================================================


class SleepRecorder:
    """Injectable sleep that records requested delays instead of sleeping."""

    def __init__(self):
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


def registry_with(action: Callable[[dict[str, Any], Any], Any], sleep=None) -> ActionExecutorRegistry:
    """Default registry plus ``action`` for ACTION nodes."""
    registry = ActionExecutorRegistry.default(sleep=sleep or time.sleep)
    registry.register(NodeType.ACTION, action)
    return registry


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class Gate:
    """Blocks executor calls until released (for pause/cancel tests)."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def __call__(self, config, state):
        self.entered.set()
        self.release.wait(5.0)
        return {"released": True}
