from __future__ import annotations

from pathlib import Path
from typing import Iterable

from stackctl.config.load import load_stack, resolve_stack_path
from stackctl.core import events as ev
from stackctl.core.phases import resolve_graph_stage, run_stage


def graph_events(
    *,
    project_dir: Path,
    config_path: Path | None = None,
    debug: bool = False,
) -> Iterable[ev.StackEvent]:
    project_dir = project_dir.resolve()
    config_path = resolve_stack_path(project_dir, config_path)
    yield ev.CommandStarted(command="graph", project_dir=project_dir, config_path=config_path, options={})

    result = run_stage("graph", "load_config", lambda: (load_stack(project_dir, config_path), []))
    yield from result.events
    if result.failed:
        yield ev.CommandCompleted(command="graph", ok=False, exit_code=2)
        return
    stack = result.value

    result = run_stage("graph", "resolve_graph", lambda: resolve_graph_stage("graph", stack, debug))
    yield from result.events
    yield ev.CommandCompleted(command="graph", ok=not result.failed, exit_code=2 if result.failed else 0)
