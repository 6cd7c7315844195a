"""
CLI: ``spindle template`` — extract templates from workflows and
instantiate them.

Templates are exchanged as the JSON export format, so a file written by
``extract`` can be passed straight to ``instantiate``.
"""

from __future__ import annotations

from pathlib import Path

import typer

from spindle.cli.utils import (
    err_console,
    fail,
    load_definition_or_exit,
    parse_params,
)
from spindle.core.errors import SpindleError
from spindle.orchestration.catalog import WorkflowCatalog
from spindle.orchestration.dsl import dump_definition
from spindle.orchestration.persistence import InMemoryTemplateRepository
from spindle.orchestration.templates import TemplateService

app = typer.Typer(no_args_is_help=True)


def _service() -> TemplateService:
    return TemplateService(InMemoryTemplateRepository(), WorkflowCatalog())


# ── spindle template extract ─────────────────────────────────────────────


@app.command("extract")
def extract_cmd(
    workflow_file: str = typer.Argument(..., help="JSON or YAML workflow document."),
    name: str = typer.Option(..., "--name", "-n", help="Template name."),
    description: str = typer.Option("", "--description", "-d"),
    category: str = typer.Option("General", "--category", "-c"),
    tags: list[str] = typer.Option(None, "--tag", help="Tag (repeatable)."),
    output_file: str | None = typer.Option(
        None,
        "--output",
        "-o",
        help="Write the exported template to a file instead of stdout.",
    ),
) -> None:
    """Extract a parameterized template from a workflow document.

    Example:
        spindle template extract pipeline.yaml --name "Nightly ETL" -o etl.json
    """
    definition = load_definition_or_exit(workflow_file)
    service = _service()
    try:
        template_id = service.create_template_from_workflow(
            definition,
            name=name,
            description=description,
            category=category,
            tags=tags or (),
        )
        exported = service.export_template(template_id)
    except SpindleError as exc:
        fail(exc)

    if output_file:
        Path(output_file).write_bytes(exported)
        template = service.get_template(template_id)
        err_console.print(
            f"[green]Wrote template[/green] {output_file} "
            f"({len(template.parameters)} parameters)"
        )
    else:
        typer.echo(exported.decode("utf-8"))


# ── spindle template instantiate ─────────────────────────────────────────


@app.command("instantiate")
def instantiate_cmd(
    template_file: str = typer.Argument(..., help="Exported template (JSON)."),
    name: str = typer.Option(..., "--name", "-n", help="Name of the new workflow."),
    params: list[str] = typer.Option(
        None,
        "--param",
        "-p",
        help="Template parameter as key=value (repeatable).",
    ),
    fmt: str = typer.Option("yaml", "--format", "-f", help="Output format: yaml, json."),
) -> None:
    """Instantiate an exported template and print the workflow document.

    Example:
        spindle template instantiate etl.json --name "ETL (eu)" -p region=eu
    """
    if fmt not in ("yaml", "json"):
        raise typer.BadParameter(f"Unknown format '{fmt}'", param_hint="--format")
    path = Path(template_file)
    if not path.is_file():
        err_console.print(f"[bold red]Error[/bold red]: file not found: {template_file}")
        raise typer.Exit(code=1)

    service = _service()
    try:
        template_id = service.import_template(path.read_bytes())
        workflow_id = service.create_workflow_from_template(template_id, name, parse_params(params))
    except SpindleError as exc:
        fail(exc)

    definition = service.catalog.get(workflow_id)
    typer.echo(dump_definition(definition, format=fmt))
