from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from stackctl.cli.renderers import (
    GraphJsonRenderer,
    GraphPlainRenderer,
    GraphRichRenderer,
    run_events,
)
from stackctl.core.graph_inspect import graph_events

console = Console()


def graph(
    config: Path = typer.Option(
        Path("stack.yaml"),
        "--config",
        "-c",
        help="Path to stack.yaml.",
    ),
    project: Path = typer.Option(
        Path("."),
        "--project",
        "-p",
        help="Base directory for relative paths.",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit machine-readable JSON.",
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Include reference sites in the output.",
    ),
) -> None:
    """Show the dependency graph in execution order."""
    events = graph_events(project_dir=project, config_path=config, debug=debug)
    if json_output:
        renderer = GraphJsonRenderer(console)
    else:
        renderer = GraphRichRenderer(console) if console.is_terminal else GraphPlainRenderer(console)
    exit_code = run_events(events, renderer)
    raise typer.Exit(code=exit_code)
