from __future__ import annotations

from pathlib import Path

from stackctl.config.load import parse_stack
from stackctl.core.buildstate import BuildstateStore
from stackctl.core.executors import ExecutorResult
from stackctl.core.graph import build_graph
from stackctl.core.redeploy import affected_units, redeploy, redeploy_force, touched_units
from stackctl.core.scheduler import RunStatus, run
from stackctl.core.stages import Phase

STACK = {
    "name": "demo",
    "release_name": "rel",
    "services": {
        "db": {"watch_paths": ["migrations"]},
        "api": {"inputs": {"db": "self.service.db.output.host"}},
    },
    "projects": {
        "web": {
            "deps": ["api"],
            "inputs": {"name": "web-app"},
            "build": {"tag": "v1", "registry": "local"},
        },
        "worker": {
            "build": {"script_path": "scripts/build_worker.sh"},
            "inputs": {"queue": "self.project.web.output.host"},
        },
    },
}


class Counting:
    timeout_s = None

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []

    def run(self, context) -> ExecutorResult:
        self.calls.append((context.name, context.phase.value))
        return ExecutorResult.success()


def _graph():
    graph, _ = build_graph(parse_stack(STACK))
    return graph


def test_change_inside_docker_context_marks_project_and_deploy_descendants(tmp_path: Path) -> None:
    affected = affected_units(_graph(), tmp_path, ["web_app/src/index.js"])
    assert affected == {"demo.project.web", "demo.project.worker"}


def test_build_script_change_marks_project(tmp_path: Path) -> None:
    affected = affected_units(_graph(), tmp_path, [tmp_path / "scripts" / "build_worker.sh"])
    assert affected == {"demo.project.worker"}


def test_watch_paths_mark_units_and_follow_deploy_edges_only(tmp_path: Path) -> None:
    affected = affected_units(_graph(), tmp_path, ["migrations/001_init.sql"])
    assert affected == {"demo.service.db", "demo.service.api"}


def test_changes_outside_watch_roots_are_ignored(tmp_path: Path) -> None:
    affected = affected_units(
        _graph(),
        tmp_path,
        ["migrations/001_init.sql"],
        watch_roots=["web_app"],
    )
    assert affected == set()


def test_redeploy_without_affected_units_runs_nothing(tmp_path: Path) -> None:
    executor = Counting()
    report = redeploy(
        _graph(),
        ["README.md"],
        {Phase.BUILD: executor, Phase.DEPLOY: executor},
        project_dir=tmp_path,
    )
    assert report.status is RunStatus.SUCCEEDED
    assert report.pairs == {}
    assert executor.calls == []


def test_redeploy_reruns_only_affected_units(tmp_path: Path) -> None:
    store = BuildstateStore(tmp_path)
    first = Counting()
    executors = {phase: first for phase in Phase}
    assert run(_graph(), list(Phase), executors, store=store).status is RunStatus.SUCCEEDED

    second = Counting()
    report = redeploy(
        _graph(),
        ["scripts/build_worker.sh"],
        {Phase.BUILD: second, Phase.DEPLOY: second},
        project_dir=tmp_path,
        store=store,
    )

    assert report.status is RunStatus.SUCCEEDED
    assert sorted(second.calls) == [("worker", "build"), ("worker", "deploy")]


def test_deploy_descendants_are_redeployed_without_rebuilding(tmp_path: Path) -> None:
    store = BuildstateStore(tmp_path)
    first = Counting()
    run(_graph(), list(Phase), {phase: first for phase in Phase}, store=store)

    second = Counting()
    report = redeploy(
        _graph(),
        ["web_app/Dockerfile"],
        {Phase.BUILD: second, Phase.DEPLOY: second},
        project_dir=tmp_path,
        store=store,
    )

    assert report.status is RunStatus.SUCCEEDED
    assert sorted(second.calls) == [("web", "build"), ("web", "deploy"), ("worker", "deploy")]
    assert report.pairs[("demo.project.worker", Phase.BUILD)].reused is True


def test_redeploy_force_splits_build_and_deploy() -> None:
    force = redeploy_force(_graph(), {"demo.project.web"})
    assert force[Phase.BUILD] == {"demo.project.web"}
    assert force[Phase.DEPLOY] == {"demo.project.web", "demo.project.worker"}
    assert touched_units(_graph(), Path("/srv"), ["/srv/web_app/src/app.js"]) == {"demo.project.web"}
