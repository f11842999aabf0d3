from __future__ import annotations

import hashlib
import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from stackctl.core.errors import BuildstateError
from stackctl.core.resolver import KeyedLocks
from stackctl.core.stages import Phase

BUILDSTATE_DIR = ".stackctl_buildstate"
STATE_VERSION = 1


class BuildstateRecord(BaseModel):
    initialized: bool = False
    built: bool = False
    deployed: bool = False
    fingerprints: dict[str, str] = Field(default_factory=dict)
    snapshot: dict[str, Any] | None = None
    outputs: dict[str, Any] = Field(default_factory=dict)

    def is_current(self, phase: Phase, fingerprint: str) -> bool:
        return bool(getattr(self, phase.done_flag)) and self.fingerprints.get(phase.value) == fingerprint


class PersistedState(BaseModel):
    version: int = STATE_VERSION
    stack: str = ""
    release_name: str | None = None
    updated_at: str | None = None
    units: dict[str, BuildstateRecord] = Field(default_factory=dict)


class BuildstateStore:
    """Per-stack JSON state under ``<root>/.stackctl_buildstate``.

    A store without a root keeps state in memory only.
    """

    def __init__(self, root: Path | None):
        self.directory = root / BUILDSTATE_DIR if root is not None else None
        self._unit_locks = KeyedLocks()
        self._write_lock = threading.Lock()

    def path_for(self, stack_name: str) -> Path:
        if self.directory is None:
            raise BuildstateError("This buildstate store is memory-only.")
        return self.directory / f"{stack_name}.json"

    def load(self, stack_name: str) -> PersistedState:
        if self.directory is None:
            return PersistedState(stack=stack_name)
        path = self.path_for(stack_name)
        if not path.exists():
            return PersistedState(stack=stack_name)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise BuildstateError(f"Unreadable buildstate: {path}") from exc
        try:
            state = PersistedState.model_validate(data)
        except ValidationError as exc:
            raise BuildstateError(f"Invalid buildstate {path}: {exc}") from exc
        if state.version != STATE_VERSION:
            raise BuildstateError(
                f"Buildstate {path} has version {state.version}; expected {STATE_VERSION}."
            )
        return state

    def save(self, stack_name: str, state: PersistedState) -> Path | None:
        with self._write_lock:
            state.stack = stack_name
            state.updated_at = datetime.now(timezone.utc).isoformat()
            if self.directory is None:
                return None
            path = self.path_for(stack_name)
            payload = stable_json_bytes(state.model_dump(mode="json"))
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{stack_name}.", suffix=".tmp", dir=self.directory)
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(payload)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, path)
            except OSError as exc:
                Path(tmp_name).unlink(missing_ok=True)
                raise BuildstateError(f"Failed to write buildstate {path}: {exc}") from exc
        return path

    def is_current(self, state: PersistedState, fqn: str, phase: Phase, fingerprint: str) -> bool:
        with self._unit_locks(fqn):
            record = state.units.get(fqn)
            return record is not None and record.is_current(phase, fingerprint)

    def record_for(self, state: PersistedState, fqn: str) -> BuildstateRecord | None:
        with self._unit_locks(fqn):
            record = state.units.get(fqn)
            return record.model_copy(deep=True) if record is not None else None

    def mark_succeeded(
        self,
        state: PersistedState,
        fqn: str,
        phase: Phase,
        fingerprint: str,
        *,
        snapshot: dict[str, Any] | None = None,
        outputs: dict[str, Any] | None = None,
    ) -> None:
        with self._unit_locks(fqn):
            record = state.units.setdefault(fqn, BuildstateRecord())
            setattr(record, phase.done_flag, True)
            record.fingerprints[phase.value] = fingerprint
            if snapshot is not None:
                record.snapshot = snapshot
            if outputs is not None:
                record.outputs = dict(outputs)

    def mark_failed(self, state: PersistedState, fqn: str, phase: Phase) -> None:
        with self._unit_locks(fqn):
            record = state.units.get(fqn)
            if record is None:
                return
            setattr(record, phase.done_flag, False)
            record.fingerprints.pop(phase.value, None)

    def prune(self, state: PersistedState, keep: set[str]) -> list[str]:
        removed = sorted(fqn for fqn in state.units if fqn not in keep)
        for fqn in removed:
            with self._unit_locks(fqn):
                state.units.pop(fqn, None)
        return removed


def fingerprint(data: Any) -> str:
    return hashlib.sha256(stable_json_bytes(data)).hexdigest()


def stable_json_bytes(data: Any) -> bytes:
    payload = json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return f"{payload}\n".encode("utf-8")
