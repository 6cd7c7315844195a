"""
Root Typer application for the spindle CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

from spindle.core.logging import configure_logging
from spindle.core.settings import get_settings

app = Typer(
    name="spindle",
    help="spindle — declarative workflow orchestration.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("spindle")
        except PackageNotFoundError:
            v = "0.1.0"
        typer.echo(f"spindle {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(
        None,
        "--log-level",
        help="Override SPINDLE_LOG_LEVEL for this invocation.",
    ),
) -> None:
    """spindle CLI — validate, run and template workflow definitions."""
    settings = get_settings()
    configure_logging(
        level=log_level or settings.log_level,
        json_format=settings.log_json,
    )


# ── Sub-command registration ─────────────────────────────────────────────

from spindle.cli.template import app as template_app  # noqa: E402
from spindle.cli.workflow import app as wf_app  # noqa: E402

app.add_typer(wf_app, name="workflow", help="Validate, order and run workflow documents.")
app.add_typer(template_app, name="template", help="Extract and instantiate workflow templates.")
