from __future__ import annotations

from pathlib import Path
from typing import Iterable

import typer
from rich.console import Console

from stackctl.cli.renderers import (
    PhaseJsonRenderer,
    PhasePlainRenderer,
    PhaseRichRenderer,
    run_events,
)
from stackctl.core import events as ev
from stackctl.core.phases import phase_events, redeploy_events

console = Console()

CONFIG_OPTION = typer.Option(Path("stack.yaml"), "--config", "-c", help="Path to stack.yaml.")
PROJECT_OPTION = typer.Option(Path("."), "--project", "-p", help="Base directory for relative paths.")
WORKERS_OPTION = typer.Option(
    4,
    "--workers",
    "-j",
    min=1,
    help="Concurrent unit executions (1 runs strictly in declaration order).",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit a machine-readable JSON report.")
DEBUG_OPTION = typer.Option(False, "--debug", help="Show stack traces for unexpected errors.")


def init(
    config: Path = CONFIG_OPTION,
    project: Path = PROJECT_OPTION,
    workers: int = WORKERS_OPTION,
    json_output: bool = JSON_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """Run the init phase for every unit."""
    _render(
        phase_events(command="init", project_dir=project, config_path=config, max_workers=workers, debug=debug),
        json_output=json_output,
        debug=debug,
    )


def build(
    config: Path = CONFIG_OPTION,
    project: Path = PROJECT_OPTION,
    workers: int = WORKERS_OPTION,
    json_output: bool = JSON_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """Run init and build for every unit."""
    _render(
        phase_events(command="build", project_dir=project, config_path=config, max_workers=workers, debug=debug),
        json_output=json_output,
        debug=debug,
    )


def deploy(
    config: Path = CONFIG_OPTION,
    project: Path = PROJECT_OPTION,
    workers: int = WORKERS_OPTION,
    json_output: bool = JSON_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """Run init, build and deploy in dependency order."""
    _render(
        phase_events(command="deploy", project_dir=project, config_path=config, max_workers=workers, debug=debug),
        json_output=json_output,
        debug=debug,
    )


def redeploy(
    paths: list[Path] = typer.Argument(..., help="Changed files or directories."),
    config: Path = CONFIG_OPTION,
    project: Path = PROJECT_OPTION,
    workers: int = WORKERS_OPTION,
    json_output: bool = JSON_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """Rebuild and redeploy the units affected by changed paths."""
    _render(
        redeploy_events(
            project_dir=project,
            changed_paths=paths,
            config_path=config,
            max_workers=workers,
            debug=debug,
        ),
        json_output=json_output,
        debug=debug,
    )


def _render(events: Iterable[ev.StackEvent], *, json_output: bool, debug: bool) -> None:
    if json_output:
        renderer = PhaseJsonRenderer(console)
    else:
        renderer = PhaseRichRenderer(console) if console.is_terminal else PhasePlainRenderer(console)
    try:
        exit_code = run_events(events, renderer)
    except Exception as exc:  # noqa: BLE001
        if debug:
            raise
        console.print(f"[red]Unexpected error:[/red] {exc}")
        raise typer.Exit(code=3)
    raise typer.Exit(code=exit_code)
