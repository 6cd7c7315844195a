"""
CLI utility helpers — parameter parsing and output formatting.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, NoReturn

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from spindle.core.errors import SpindleError
from spindle.orchestration.dsl import load_definition_file
from spindle.orchestration.graph import WorkflowDefinition
from spindle.orchestration.models import Execution, NodeStatus
from spindle.orchestration.validator import ValidationResult

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    NodeStatus.COMPLETED: "green",
    NodeStatus.FAILED: "red",
    NodeStatus.SKIPPED: "yellow",
    NodeStatus.RUNNING: "cyan",
    NodeStatus.PENDING: "dim",
}


# ── Input helpers ────────────────────────────────────────────────────────


def parse_params(pairs: list[str] | None) -> dict[str, Any]:
    """Parse ``key=value`` options; values are read as YAML scalars.

    ``--param retries=3`` binds the integer 3, ``--param name=eu`` the
    string ``"eu"``.
    """
    params: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, raw = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got '{pair}'", param_hint="--param")
        try:
            params[key] = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError:
            params[key] = raw
    return params


def load_definition_or_exit(path: str) -> WorkflowDefinition:
    """Load a workflow document, printing the error and exiting 1 on failure."""
    if not Path(path).is_file():
        err_console.print(f"[bold red]Error[/bold red]: file not found: {path}")
        raise typer.Exit(code=1)
    try:
        return load_definition_file(path)
    except SpindleError as exc:
        fail(exc)


def fail(error: SpindleError) -> NoReturn:
    """Print a spindle error and exit with status 1."""
    code = getattr(error, "code", None) or error.__class__.__name__
    err_console.print(f"[bold red]Error[/bold red] ({code}): {escape(error.message)}")
    result = getattr(error, "result", None)
    if isinstance(result, ValidationResult) and result.issues:
        print_issues(result, stream=err_console)
    raise typer.Exit(code=1)


# ── Output helpers ───────────────────────────────────────────────────────


def print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def print_issues(result: ValidationResult, *, stream: Console | None = None) -> None:
    """Render validation issues as a Rich table."""
    out = stream or console
    table = Table(title="Validation issues", show_lines=False, pad_edge=False)
    table.add_column("severity")
    table.add_column("code")
    table.add_column("node", overflow="fold")
    table.add_column("message", overflow="fold")
    for issue in result.issues:
        style = "red" if issue.severity.value == "error" else "yellow"
        node = issue.node_id or ", ".join(issue.node_ids)
        table.add_row(
            f"[{style}]{issue.severity.value}[/{style}]",
            issue.code,
            node or "-",
            escape(issue.message),
        )
    out.print(table)


def print_execution(execution: Execution) -> None:
    """Render an execution's node records as a Rich table."""
    table = Table(
        title=f"{escape(execution.workflow_name or execution.workflow_id)} \\[{execution.status.value}]",
        show_lines=False,
        pad_edge=False,
    )
    table.add_column("node")
    table.add_column("type")
    table.add_column("status")
    table.add_column("attempts", justify="right")
    table.add_column("detail", overflow="fold")
    for node_id, record in execution.node_executions.items():
        style = STATUS_STYLES.get(record.status, "white")
        if record.status == NodeStatus.SKIPPED and record.skip_reason is not None:
            detail = record.skip_reason.value
        elif record.error_message:
            detail = record.error_message
        else:
            detail = json.dumps(record.to_dict()["output"], default=str)
        table.add_row(
            node_id,
            record.node_type,
            f"[{style}]{record.status.value}[/{style}]",
            str(record.attempts),
            escape(detail),
        )
    console.print(table)
    if execution.error_message:
        console.print(f"[bold red]{execution.error_message}[/bold red]")
