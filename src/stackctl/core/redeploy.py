from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Iterable, Mapping

from stackctl.config.model import DockerBuild, ScriptBuild, UnitDefinition
from stackctl.core.graph import DependencyGraph, EdgeKind
from stackctl.core.scheduler import PhaseScheduler, RunReport
from stackctl.core.stages import COMMAND_PHASES, Phase

REDEPLOY_PHASES = COMMAND_PHASES["redeploy"]


def watched_paths(project_dir: Path, unit: UnitDefinition) -> list[Path]:
    """Paths whose change invalidates the unit's artifact or deployment."""
    paths: list[Path] = []
    spec = unit.build_spec()
    if isinstance(spec, DockerBuild):
        context = Path(spec.context) if spec.context else Path(unit.display_name())
        paths.append(context)
        paths.append(context / spec.dockerfile)
    elif isinstance(spec, ScriptBuild):
        paths.append(Path(spec.path))
    paths.extend(Path(path) for path in unit.watch_paths)
    return [_absolute(project_dir, path) for path in paths]


def touched_units(
    graph: DependencyGraph,
    project_dir: Path,
    changed_paths: Iterable[str | Path],
    *,
    watch_roots: Iterable[str | Path] | None = None,
) -> set[str]:
    """Units whose watched paths contain a changed path.

    Changed paths outside ``watch_roots`` are ignored.
    """
    changed = [_absolute(project_dir, Path(path)) for path in changed_paths]
    if watch_roots is not None:
        roots = [_absolute(project_dir, Path(root)) for root in watch_roots]
        changed = [path for path in changed if any(_contains(root, path) for root in roots)]
    if not changed:
        return set()
    return {
        node.fqn
        for node in graph.nodes
        if any(
            _contains(watched, path)
            for watched in watched_paths(project_dir, node.unit)
            for path in changed
        )
    }


def affected_units(
    graph: DependencyGraph,
    project_dir: Path,
    changed_paths: Iterable[str | Path],
    *,
    watch_roots: Iterable[str | Path] | None = None,
) -> set[str]:
    """Units touched by ``changed_paths`` plus their Deploy-edge descendants."""
    touched = touched_units(graph, project_dir, changed_paths, watch_roots=watch_roots)
    return redeploy_force(graph, touched)[Phase.DEPLOY]


def redeploy_force(graph: DependencyGraph, touched: set[str]) -> dict[Phase, set[str]]:
    """Rebuild touched units; redeploy them and everything deployed on top of them."""
    if not touched:
        return {Phase.BUILD: set(), Phase.DEPLOY: set()}
    return {
        Phase.BUILD: set(touched),
        Phase.DEPLOY: touched | graph.descendants(touched, kinds=[EdgeKind.DEPLOY]),
    }


def redeploy(
    graph: DependencyGraph,
    changed_paths: Iterable[str | Path],
    executors: Mapping[Phase, Any],
    *,
    project_dir: Path,
    **options: Any,
) -> RunReport:
    """Rebuild and redeploy only what ``changed_paths`` affects."""
    watch_roots = graph.stack.watcher.paths if graph.stack is not None else None
    touched = touched_units(graph, project_dir, changed_paths, watch_roots=watch_roots)
    force = redeploy_force(graph, touched)
    scheduler = PhaseScheduler(
        graph,
        executors,
        project_dir=project_dir,
        force=force,
        command="redeploy",
        **options,
    )
    if not force[Phase.DEPLOY]:
        scheduler.report = RunReport(phases=list(REDEPLOY_PHASES), release_name=scheduler.release_name)
        return scheduler.report
    return scheduler.run(REDEPLOY_PHASES)


def _absolute(project_dir: Path, path: Path) -> Path:
    if not path.is_absolute():
        path = project_dir / path
    return Path(os.path.normpath(path))


def _contains(parent: Path, child: Path) -> bool:
    return child == parent or parent in child.parents
