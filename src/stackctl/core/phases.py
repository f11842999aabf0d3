from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from stackctl.config.load import load_stack, resolve_stack_path
from stackctl.config.model import Stack
from stackctl.core import events as ev
from stackctl.core.buildstate import BuildstateStore, PersistedState
from stackctl.core.errors import (
    BuildstateError,
    DependencyCycleError,
    ExecutorConfigError,
    StackError,
    UnresolvedReferenceError,
)
from stackctl.core.executors import load_executors
from stackctl.core.graph import DependencyGraph, build_graph
from stackctl.core.redeploy import redeploy_force, touched_units
from stackctl.core.release import release_name_for
from stackctl.core.scheduler import PhaseScheduler, RunStatus
from stackctl.core.stages import COMMAND_PHASES, STAGE_LABELS, Phase


def phase_events(
    *,
    command: str,
    project_dir: Path,
    config_path: Path | None = None,
    max_workers: int = 4,
    executors: Mapping[Phase, Any] | None = None,
    debug: bool = False,
) -> Iterable[ev.StackEvent]:
    """Event stream for ``init``, ``build`` and ``deploy``."""
    return _command_events(
        command=command,
        project_dir=project_dir,
        config_path=config_path,
        max_workers=max_workers,
        executors=executors,
        debug=debug,
    )


def redeploy_events(
    *,
    project_dir: Path,
    changed_paths: Iterable[str | Path],
    config_path: Path | None = None,
    max_workers: int = 4,
    executors: Mapping[Phase, Any] | None = None,
    debug: bool = False,
) -> Iterable[ev.StackEvent]:
    return _command_events(
        command="redeploy",
        project_dir=project_dir,
        config_path=config_path,
        max_workers=max_workers,
        executors=executors,
        changed_paths=[str(path) for path in changed_paths],
        debug=debug,
    )


class _StageResult:
    def __init__(
        self,
        events: list[ev.StackEvent],
        value: Any | None = None,
        failed: bool = False,
    ):
        self.events = events
        self.value = value
        self.failed = failed


def _command_events(
    *,
    command: str,
    project_dir: Path,
    config_path: Path | None,
    max_workers: int,
    executors: Mapping[Phase, Any] | None,
    changed_paths: list[str] | None = None,
    debug: bool = False,
) -> Iterable[ev.StackEvent]:
    project_dir = project_dir.resolve()
    config_path = resolve_stack_path(project_dir, config_path)
    phases = COMMAND_PHASES[command]

    yield ev.CommandStarted(
        command=command,
        project_dir=project_dir,
        config_path=config_path,
        options={
            "phases": [phase.value for phase in phases],
            "max_workers": max_workers,
            "changed_paths": changed_paths,
        },
    )

    result = run_stage(command, "load_config", lambda: (load_stack(project_dir, config_path), []))
    yield from result.events
    if result.failed:
        yield ev.CommandCompleted(command=command, ok=False, exit_code=2)
        return
    stack: Stack = result.value

    result = run_stage(command, "resolve_graph", lambda: resolve_graph_stage(command, stack, debug))
    yield from result.events
    if result.failed:
        yield ev.CommandCompleted(command=command, ok=False, exit_code=2)
        return
    graph: DependencyGraph = result.value

    store = BuildstateStore(project_dir)
    result = run_stage(command, "load_buildstate", lambda: _load_buildstate(command, store, stack))
    yield from result.events
    if result.failed:
        yield ev.CommandCompleted(command=command, ok=False, exit_code=2)
        return
    state: PersistedState = result.value

    force: dict[Phase, set[str]] = {}
    if changed_paths is not None:
        result = run_stage(
            command,
            "plan_redeploy",
            lambda: _plan_redeploy(command, graph, project_dir, stack, changed_paths),
        )
        yield from result.events
        if result.failed:
            yield ev.CommandCompleted(command=command, ok=False, exit_code=2)
            return
        force = result.value
        if not force[Phase.DEPLOY]:
            yield ev.RunFinished(
                command=command,
                status=RunStatus.SUCCEEDED.value,
                counts={},
                duration_ms=0.0,
            )
            yield ev.CommandCompleted(command=command, ok=True, exit_code=0)
            return

    if executors is None:
        result = run_stage(
            command,
            "load_executors",
            lambda: (load_executors(project_dir, stack.executors), []),
        )
        yield from result.events
        if result.failed:
            yield ev.CommandCompleted(command=command, ok=False, exit_code=2)
            return
        executors = result.value

    previous = state.release_name if command == "redeploy" else None
    release_name = release_name_for(stack, previous)
    if not stack.release_name and previous is None and Phase.DEPLOY in phases:
        yield ev.Warning(
            command=command,
            code="release_generated",
            message=f"No release_name set; using generated release '{release_name}'.",
            hint="Pin release_name in the stack file to make repeated deploys incremental.",
        )

    yield ev.StageStarted(command=command, stage_id="run_phases", label=_label(command, "run_phases"))
    started = time.perf_counter()
    try:
        scheduler = PhaseScheduler(
            graph,
            executors,
            store=store,
            state=state,
            release_name=release_name,
            max_workers=max_workers,
            force=force,
            project_dir=project_dir,
            command=command,
        )
        report = yield from scheduler.events(phases)
    except StackError as exc:
        yield _stage_failed(command, "run_phases", started, exc)
        yield ev.CommandCompleted(command=command, ok=False, exit_code=2)
        return
    yield ev.StageCompleted(
        command=command,
        stage_id="run_phases",
        duration_ms=_elapsed_ms(started),
        status=report.status.value,
    )

    result = run_stage(
        command,
        "save_buildstate",
        lambda: _save_buildstate(command, store, stack, graph, state),
    )
    yield from result.events
    if result.failed:
        yield ev.CommandCompleted(command=command, ok=False, exit_code=2)
        return

    ok = report.status is RunStatus.SUCCEEDED
    yield ev.CommandCompleted(command=command, ok=ok, exit_code=0 if ok else 1)


def resolve_graph_stage(command: str, stack: Stack, debug: bool):
    graph, pending = build_graph(stack)
    order = graph.order()
    events: list[ev.StackEvent] = [
        ev.GraphResolved(
            command=command,
            stack=graph.stack_name,
            order=order,
            edges=[
                {"from": edge.source, "to": edge.target, "kind": edge.kind.value}
                for edge in graph.edges
            ],
            references=len(pending),
        )
    ]
    if debug:
        events.append(
            ev.Debug(
                command=command,
                message="Reference sites",
                data={site.unit: site.pointer for site in pending},
            )
        )
    return graph, events


def _load_buildstate(command: str, store: BuildstateStore, stack: Stack):
    state = store.load(stack.normalized_name)
    path = store.path_for(stack.normalized_name)
    loaded = ev.BuildstateLoaded(
        command=command,
        path=path,
        units=len(state.units),
        release_name=state.release_name,
    )
    return state, [loaded]


def _plan_redeploy(
    command: str,
    graph: DependencyGraph,
    project_dir: Path,
    stack: Stack,
    changed_paths: list[str],
):
    touched = touched_units(graph, project_dir, changed_paths, watch_roots=stack.watcher.paths)
    force = redeploy_force(graph, touched)
    order = [fqn for fqn in graph.order() if fqn in force[Phase.DEPLOY]]
    planned = ev.RedeployPlanned(command=command, changed_paths=changed_paths, affected=order)
    return force, [planned]


def _save_buildstate(
    command: str,
    store: BuildstateStore,
    stack: Stack,
    graph: DependencyGraph,
    state: PersistedState,
):
    events: list[ev.StackEvent] = []
    removed = store.prune(state, keep={node.fqn for node in graph.nodes})
    if removed:
        events.append(
            ev.Warning(
                command=command,
                code="buildstate_pruned",
                message=f"Dropped buildstate for removed units: {', '.join(removed)}",
            )
        )
    path = store.save(stack.normalized_name, state)
    events.append(ev.BuildstateSaved(command=command, path=path, units=len(state.units)))
    return path, events


def run_stage(command: str, stage_id: str, fn: Callable[[], tuple[Any, list]]) -> _StageResult:
    events: list[ev.StackEvent] = [
        ev.StageStarted(command=command, stage_id=stage_id, label=_label(command, stage_id))
    ]
    started = time.perf_counter()
    try:
        value, extra = fn()
    except StackError as exc:
        events.append(_stage_failed(command, stage_id, started, exc))
        return _StageResult(events=events, failed=True)
    events.extend(extra)
    events.append(
        ev.StageCompleted(
            command=command,
            stage_id=stage_id,
            duration_ms=_elapsed_ms(started),
            status="success",
        )
    )
    return _StageResult(events=events, value=value)


def _stage_failed(command: str, stage_id: str, started: float, exc: StackError) -> ev.StageFailed:
    return ev.StageFailed(
        command=command,
        stage_id=stage_id,
        duration_ms=_elapsed_ms(started),
        error_code=exc.error_code,
        message=str(exc),
        hint=_hint(exc),
    )


def _hint(exc: StackError) -> str | None:
    if isinstance(exc, DependencyCycleError):
        return "Remove a dependency or reference along the cycle."
    if isinstance(exc, ExecutorConfigError):
        return "Check the executors section of the stack file."
    if isinstance(exc, BuildstateError):
        return "Delete the buildstate file to start from a clean state."
    if isinstance(exc, UnresolvedReferenceError):
        return "A unit was deployed before its referenced outputs existed; please report this."
    return None


def _label(command: str, stage_id: str) -> str:
    return STAGE_LABELS.get(command, {}).get(stage_id, stage_id)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
