from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Protocol

from stackctl.config.model import BuildSpec, DockerBuild, ExecutorConfig, UnitKind
from stackctl.core.errors import ExecutorConfigError
from stackctl.core.graph import DependencyGraph
from stackctl.core.stages import Phase
from stackctl.plugins.registry import load_executor


@dataclass(frozen=True)
class UnitContext:
    """What a phase executor sees for one unit.

    Init and Build receive the configuration as authored. Deploy receives
    the reference-resolved configuration.
    """

    fqn: str
    name: str
    kind: UnitKind
    phase: Phase
    stack_name: str
    namespace: str
    release_name: str
    config: dict[str, Any]
    display_name: str = ""
    build: BuildSpec | None = None
    init_steps: list[str] = field(default_factory=list)
    project_dir: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "fqn": self.fqn,
            "name": self.name,
            "kind": self.kind.value,
            "phase": self.phase.value,
            "stack": self.stack_name,
            "namespace": self.namespace,
            "release_name": self.release_name,
            "display_name": self.display_name,
            "config": self.config,
            "build": self._build_payload(),
            "init_steps": list(self.init_steps),
        }

    def _build_payload(self) -> dict[str, Any] | None:
        if self.build is None:
            return None
        payload = self.build.model_dump()
        if isinstance(self.build, DockerBuild):
            payload["push"] = self.build.push
            payload["image"] = self.build.image_label(self.display_name or self.name)
        return payload


@dataclass(frozen=True)
class ExecutorResult:
    ok: bool
    outputs: dict[str, Any] | None = None
    cause: str | None = None

    @classmethod
    def success(cls, outputs: Mapping[str, Any] | None = None) -> "ExecutorResult":
        return cls(ok=True, outputs=dict(outputs) if outputs is not None else None)

    @classmethod
    def failure(cls, cause: str) -> "ExecutorResult":
        return cls(ok=False, cause=cause)


class Executor(Protocol):
    timeout_s: float | None

    def run(self, context: UnitContext) -> ExecutorResult:
        ...


def load_executors(
    project_dir: Path,
    configs: Mapping[str, ExecutorConfig],
) -> dict[Phase, Executor]:
    executors: dict[Phase, Executor] = {}
    for phase_name, config in configs.items():
        phase = Phase(phase_name)
        try:
            executor_cls = load_executor(config.type)
        except ValueError as exc:
            raise ExecutorConfigError(f"{phase.value}: {exc}") from exc
        try:
            executors[phase] = executor_cls(project_dir, **config.with_)
        except (TypeError, ValueError) as exc:
            raise ExecutorConfigError(
                f"{phase.value}: invalid options for executor '{config.type}': {exc}"
            ) from exc
    return executors


def check_executors(
    executors: Mapping[Phase, Any],
    graph: DependencyGraph,
    phases: list[Phase],
) -> None:
    for phase in phases:
        participants = [node.fqn for node in graph.nodes if phase.applies_to(node.kind)]
        if not participants:
            continue
        executor = executors.get(phase)
        if executor is None:
            raise ExecutorConfigError(
                f"No executor configured for the {phase.value} phase "
                f"({len(participants)} unit(s) need it)."
            )
        if not callable(getattr(executor, "run", None)):
            raise ExecutorConfigError(f"The {phase.value} executor has no run() method.")
        timeout = getattr(executor, "timeout_s", None)
        if timeout is not None and (not isinstance(timeout, (int, float)) or timeout <= 0):
            raise ExecutorConfigError(
                f"The {phase.value} executor timeout must be a positive number, got {timeout!r}."
            )
