from __future__ import annotations

from pathlib import Path
from typing import Any

from stackctl.core.executors import ExecutorResult, UnitContext
from stackctl.core.stages import Phase


class NoopExecutor:
    """Succeeds without side effects; Deploy returns the configured outputs."""

    def __init__(
        self,
        project_dir: Path,
        *,
        outputs: dict[str, dict[str, Any]] | None = None,
        timeout_s: float | None = None,
        **_: Any,
    ):
        if outputs is not None and not isinstance(outputs, dict):
            raise ValueError("noop executor outputs must map unit names to mappings")
        self.project_dir = project_dir
        self.outputs = outputs or {}
        self.timeout_s = timeout_s

    def run(self, context: UnitContext) -> ExecutorResult:
        if context.phase is not Phase.DEPLOY:
            return ExecutorResult.success()
        return ExecutorResult.success(self.outputs.get(context.name, {}))
