from __future__ import annotations

import json
import os
import re
import subprocess
from pathlib import Path
from typing import Any, Sequence

from stackctl.core.executors import ExecutorResult, UnitContext
from stackctl.core.stages import Phase

_PLACEHOLDER = re.compile(r"\{(fqn|name|kind|phase|namespace|release|display_name)\}")


class ExecExecutor:
    def __init__(
        self,
        project_dir: Path,
        *,
        cmd: Sequence[str],
        timeout_s: float | None = None,
        env: dict[str, str] | None = None,
        **_: Any,
    ):
        if not isinstance(cmd, (list, tuple)) or not all(isinstance(item, str) for item in cmd):
            raise ValueError("exec executor requires cmd as a list of strings")
        if not cmd:
            raise ValueError("exec executor requires a non-empty cmd")
        self.cmd = list(cmd)
        self.timeout_s = timeout_s
        self.env = dict(env or {})
        self.project_dir = project_dir

    def command_for(self, context: UnitContext) -> list[str]:
        fields = {
            "fqn": context.fqn,
            "name": context.name,
            "kind": context.kind.value,
            "phase": context.phase.value,
            "namespace": context.namespace,
            "release": context.release_name,
            "display_name": context.display_name,
        }
        return [_PLACEHOLDER.sub(lambda match: fields[match.group(1)], item) for item in self.cmd]

    def run(self, context: UnitContext) -> ExecutorResult:
        env = {**os.environ, **self.env} if self.env else None
        try:
            result = subprocess.run(  # noqa: S603
                self.command_for(context),
                cwd=self.project_dir,
                input=json.dumps(context.to_dict(), sort_keys=True),
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout_s,
                env=env,
            )
        except subprocess.TimeoutExpired:
            return ExecutorResult.failure(f"Command timed out after {self.timeout_s}s")
        except OSError as exc:
            return ExecutorResult.failure(f"Command could not start: {exc}")
        if result.returncode != 0:
            stderr = result.stderr.strip()
            return ExecutorResult.failure(f"Command failed with exit code {result.returncode}: {stderr}")
        if context.phase is not Phase.DEPLOY:
            return ExecutorResult.success()
        stdout = result.stdout.strip()
        if not stdout:
            return ExecutorResult.success({})
        try:
            outputs = json.loads(stdout)
        except json.JSONDecodeError:
            return ExecutorResult.failure("Deploy command output is not valid JSON.")
        if not isinstance(outputs, dict):
            return ExecutorResult.failure("Deploy command output must be a JSON object.")
        return ExecutorResult.success(outputs)
