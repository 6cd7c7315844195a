"""Spindle Orchestration -- workflow definitions, validation and execution.

Architecture::

    graph.py        WorkflowDefinition, Node, Edge, retry/timeout policies
    dsl.py          JSON/YAML documents <-> WorkflowDefinition
    references.py   ${parameters.x} / ${node.field} scanning and resolution
    conditions.py   Condition grammar: parser + fail-closed evaluator
    validator.py    validate_definition / optimize_definition
    catalog.py      WorkflowCatalog (validated definitions by id)
    models.py       Execution, NodeExecution, ExecutionState, statuses
    persistence.py  Repository protocols + in-memory backends
    state.py        ExecutionStateStore (versioned, cached, snapshots)
    actions.py      ActionExecutor contract, ActionResult, registry
    engine.py       WorkflowEngine (dependency-driven scheduler)
    templates.py    TemplateService (extract, instantiate, import/export)
"""

from spindle.orchestration.actions import (
    ActionExecutor,
    ActionExecutorRegistry,
    ActionResult,
    FunctionExecutor,
)
from spindle.orchestration.catalog import WorkflowCatalog
from spindle.orchestration.conditions import ConditionEvaluator, parse_condition
from spindle.orchestration.dsl import (
    definition_to_dict,
    dump_definition,
    load_definition_file,
    parse_definition,
)
from spindle.orchestration.engine import ExecutionHandle, WorkflowEngine
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
    InMemoryTemplateRepository,
    StateRepository,
    TemplateRepository,
)
from spindle.orchestration.state import ExecutionStateStore
from spindle.orchestration.templates import (
    ParameterDefinition,
    Template,
    TemplatePage,
    TemplateService,
)
from spindle.orchestration.validator import (
    Severity,
    ValidationIssue,
    ValidationResult,
    optimize_definition,
    validate_definition,
)

__all__ = [
    # graph
    "Edge",
    "Node",
    "NodeCondition",
    "NodeType",
    "OnTimeout",
    "ParameterSpec",
    "RetryPolicy",
    "TimeoutPolicy",
    "WorkflowDefinition",
    # documents
    "definition_to_dict",
    "dump_definition",
    "load_definition_file",
    "parse_definition",
    # validation
    "Severity",
    "ValidationIssue",
    "ValidationResult",
    "optimize_definition",
    "validate_definition",
    "WorkflowCatalog",
    # conditions
    "ConditionEvaluator",
    "parse_condition",
    # execution
    "ActionExecutor",
    "ActionExecutorRegistry",
    "ActionResult",
    "Execution",
    "ExecutionHandle",
    "ExecutionState",
    "ExecutionStatus",
    "FunctionExecutor",
    "NodeExecution",
    "NodeStatus",
    "SkipReason",
    "WorkflowEngine",
    # state + persistence
    "ExecutionRepository",
    "ExecutionStateStore",
    "ExecutionStats",
    "InMemoryExecutionRepository",
    "InMemoryStateRepository",
    "InMemoryTemplateRepository",
    "StateRepository",
    "TemplateRepository",
    # templates
    "ParameterDefinition",
    "Template",
    "TemplatePage",
    "TemplateService",
]
