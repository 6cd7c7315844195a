"""
CLI: ``spindle workflow`` — validate, order and run workflow documents.

Runs use echo executors: every node that has no built-in executor returns
its resolved configuration as output, so a document can be exercised end
to end (references, conditions, skips) without real actions.
"""

from __future__ import annotations

from typing import Any

import typer

from spindle.cli.utils import (
    console,
    fail,
    load_definition_or_exit,
    parse_params,
    print_execution,
    print_issues,
    print_json,
)
from spindle.core.errors import SpindleError
from spindle.orchestration.actions import ActionExecutorRegistry, ActionResult
from spindle.orchestration.engine import WorkflowEngine
from spindle.orchestration.graph import NodeType
from spindle.orchestration.models import ExecutionState, ExecutionStatus
from spindle.orchestration.validator import validate_definition

app = typer.Typer(no_args_is_help=True)


def echo_executor(config: dict[str, Any], state: ExecutionState) -> ActionResult:
    return ActionResult.ok({"echo": config})


def echo_registry() -> ActionExecutorRegistry:
    """Built-in executors plus an echo executor for every other node type."""
    registry = ActionExecutorRegistry.default()
    for node_type in NodeType:
        if not registry.has(node_type):
            registry.register(node_type, echo_executor)
    return registry


# ── spindle workflow validate ────────────────────────────────────────────


@app.command("validate")
def validate_cmd(
    workflow_file: str = typer.Argument(..., help="JSON or YAML workflow document."),
    json_out: bool = typer.Option(False, "--json", "-j", help="Output as JSON."),
) -> None:
    """Validate a workflow document.

    Example:
        spindle workflow validate pipeline.yaml
        spindle workflow validate pipeline.json --json
    """
    definition = load_definition_or_exit(workflow_file)
    result = validate_definition(definition)

    if json_out:
        print_json(result.to_dict())
    else:
        if result.issues:
            print_issues(result)
        style = "green" if result.is_valid else "red"
        console.print(f"[{style}]{result.summary()}[/{style}]")

    if not result.is_valid:
        raise typer.Exit(code=1)


# ── spindle workflow order ───────────────────────────────────────────────


@app.command("order")
def order_cmd(
    workflow_file: str = typer.Argument(..., help="JSON or YAML workflow document."),
) -> None:
    """Print the topological execution order of a workflow."""
    definition = load_definition_or_exit(workflow_file)
    try:
        order = definition.topological_order()
    except SpindleError as exc:
        fail(exc)
    for index, node_id in enumerate(order, 1):
        node = definition.get_node(node_id)
        node_type = node.type.value if node else "?"
        console.print(f"  {index:>3}. [cyan]{node_id}[/cyan] [dim]({node_type})[/dim]")


# ── spindle workflow run ─────────────────────────────────────────────────


@app.command("run")
def run_cmd(
    workflow_file: str = typer.Argument(..., help="JSON or YAML workflow document."),
    params: list[str] = typer.Option(
        None,
        "--param",
        "-p",
        help="Workflow parameter as key=value (repeatable).",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate and show the plan only."),
    timeout: float | None = typer.Option(None, "--timeout", help="Overall deadline in seconds."),
    json_out: bool = typer.Option(False, "--json", "-j", help="Output as JSON."),
) -> None:
    """Run a workflow document with echo executors.

    Example:
        spindle workflow run pipeline.yaml --param region=eu --param limit=10
        spindle workflow run pipeline.yaml --dry-run
    """
    definition = load_definition_or_exit(workflow_file)
    inputs = parse_params(params)

    result = validate_definition(definition)
    if not result.is_valid:
        print_issues(result)
        console.print(f"[red]{result.summary()}[/red]")
        raise typer.Exit(code=1)

    if dry_run:
        console.print(f"[bold]Dry run:[/bold] {definition.name} ({len(definition.nodes)} nodes)")
        for index, node_id in enumerate(definition.topological_order(), 1):
            console.print(f"  {index:>3}. {node_id}")
        return

    engine = WorkflowEngine(executors=echo_registry())
    try:
        execution = engine.execute(definition, inputs=inputs, timeout=timeout)
    except SpindleError as exc:
        fail(exc)

    if json_out:
        print_json(execution.to_dict())
    else:
        print_execution(execution)

    if execution.status != ExecutionStatus.COMPLETED:
        raise typer.Exit(code=1)
