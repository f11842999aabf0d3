from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class StackEvent:
    ts: float = field(default_factory=time.perf_counter)
    level: str = "INFO"
    command: str = ""
    type: str = ""

    def to_dict(self) -> dict[str, Any]:
        return _serialize(asdict(self))


@dataclass(frozen=True)
class CommandStarted(StackEvent):
    type: str = "CommandStarted"
    project_dir: Path | None = None
    config_path: Path | None = None
    options: dict[str, Any] | None = None


@dataclass(frozen=True)
class CommandCompleted(StackEvent):
    type: str = "CommandCompleted"
    ok: bool = True
    exit_code: int = 0


@dataclass(frozen=True)
class StageStarted(StackEvent):
    type: str = "StageStarted"
    stage_id: str = ""
    label: str = ""


@dataclass(frozen=True)
class StageCompleted(StackEvent):
    type: str = "StageCompleted"
    stage_id: str = ""
    duration_ms: float = 0.0
    status: str = "success"


@dataclass(frozen=True)
class StageFailed(StackEvent):
    type: str = "StageFailed"
    stage_id: str = ""
    duration_ms: float = 0.0
    error_code: str = ""
    message: str = ""
    hint: str | None = None


@dataclass(frozen=True)
class GraphResolved(StackEvent):
    type: str = "GraphResolved"
    stack: str = ""
    order: list[str] = field(default_factory=list)
    edges: list[dict[str, str]] = field(default_factory=list)
    references: int = 0


@dataclass(frozen=True)
class BuildstateLoaded(StackEvent):
    type: str = "BuildstateLoaded"
    path: Path | None = None
    units: int = 0
    release_name: str | None = None


@dataclass(frozen=True)
class BuildstateSaved(StackEvent):
    type: str = "BuildstateSaved"
    path: Path | None = None
    units: int = 0


@dataclass(frozen=True)
class RedeployPlanned(StackEvent):
    type: str = "RedeployPlanned"
    changed_paths: list[str] = field(default_factory=list)
    affected: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RunPlanned(StackEvent):
    type: str = "RunPlanned"
    phases: list[str] = field(default_factory=list)
    pairs: list[dict[str, str]] = field(default_factory=list)
    release_name: str = ""
    max_workers: int = 1


@dataclass(frozen=True)
class UnitPhaseStarted(StackEvent):
    type: str = "UnitPhaseStarted"
    fqn: str = ""
    phase: str = ""


@dataclass(frozen=True)
class UnitPhaseSucceeded(StackEvent):
    type: str = "UnitPhaseSucceeded"
    fqn: str = ""
    phase: str = ""
    duration_ms: float = 0.0


@dataclass(frozen=True)
class UnitPhaseReused(StackEvent):
    type: str = "UnitPhaseReused"
    fqn: str = ""
    phase: str = ""
    fingerprint: str = ""


@dataclass(frozen=True)
class UnitPhaseFailed(StackEvent):
    type: str = "UnitPhaseFailed"
    level: str = "ERROR"
    fqn: str = ""
    phase: str = ""
    duration_ms: float = 0.0
    cause: str = ""
    timed_out: bool = False


@dataclass(frozen=True)
class UnitPhaseSkipped(StackEvent):
    type: str = "UnitPhaseSkipped"
    level: str = "WARNING"
    fqn: str = ""
    phase: str = ""
    blocked_by: str = ""


@dataclass(frozen=True)
class OutputsRecorded(StackEvent):
    type: str = "OutputsRecorded"
    fqn: str = ""
    fields: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RunFinished(StackEvent):
    type: str = "RunFinished"
    status: str = ""
    counts: dict[str, int] = field(default_factory=dict)
    duration_ms: float = 0.0


@dataclass(frozen=True)
class Warning(StackEvent):
    type: str = "Warning"
    level: str = "WARNING"
    code: str = ""
    message: str = ""
    hint: str | None = None


@dataclass(frozen=True)
class Debug(StackEvent):
    type: str = "Debug"
    level: str = "DEBUG"
    message: str = ""
    data: dict[str, Any] | None = None


def _serialize(value: Any) -> Any:
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _serialize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(item) for item in value]
    return value
