from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from rich import box
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from stackctl import __version__
from stackctl.core import events as ev
from stackctl.core.stages import STAGE_ORDER, Phase

RULE_WIDTH = 64
RULE_LINE = "-" * RULE_WIDTH
STATUS_GLYPHS = {
    "pending": "⏸",
    "ready": "…",
    "running": "⠋",
    "success": "✅",
    "succeeded": "✅",
    "reused": "♻",
    "failed": "❌",
    "skipped": "⏭",
    "partial_failure": "⚠️",
    "warning": "⚠️",
}
PHASE_COLUMNS = [phase.value for phase in Phase]


def run_events(events: Iterable[ev.StackEvent], renderer: "Renderer") -> int:
    exit_code = 0
    try:
        for event in events:
            renderer.handle(event)
            if isinstance(event, ev.CommandCompleted):
                exit_code = event.exit_code
    finally:
        renderer.close()
    return exit_code


class Renderer:
    def handle(self, event: ev.StackEvent) -> None:  # noqa: D401
        """Handle a single event."""

    def close(self) -> None:
        return None


@dataclass
class UnitRow:
    fqn: str
    phases: dict[str, str] = field(default_factory=dict)
    elapsed_ms: dict[str, float] = field(default_factory=dict)
    note: str | None = None


class _PhaseState:
    """Stage and unit bookkeeping shared by the phase renderers."""

    def __init__(self) -> None:
        self.command = ""
        self.stages: list[tuple[str, str]] = []
        self.stage_status: dict[str, str] = {}
        self.stage_elapsed: dict[str, float] = {}
        self.units: dict[str, UnitRow] = {}
        self.release_name: str | None = None
        self.stage_failure: ev.StageFailed | None = None
        self.failures: list[ev.UnitPhaseFailed] = []
        self.warnings: list[ev.Warning] = []
        self.finished: ev.RunFinished | None = None
        self.affected: list[str] | None = None
        self.saved_path: Path | None = None

    def apply(self, event: ev.StackEvent) -> None:
        if isinstance(event, ev.CommandStarted):
            self.command = event.command
            self.stages = list(STAGE_ORDER.get(event.command, []))
            self.stage_status = {stage_id: "pending" for stage_id, _ in self.stages}
        elif isinstance(event, ev.StageStarted):
            self.stage_status[event.stage_id] = "running"
        elif isinstance(event, ev.StageCompleted):
            self.stage_status[event.stage_id] = "success" if event.status == "succeeded" else event.status
            self.stage_elapsed[event.stage_id] = event.duration_ms
        elif isinstance(event, ev.StageFailed):
            self.stage_status[event.stage_id] = "failed"
            self.stage_elapsed[event.stage_id] = event.duration_ms
            self.stage_failure = event
        elif isinstance(event, ev.GraphResolved):
            for fqn in event.order:
                self.units.setdefault(fqn, UnitRow(fqn=fqn))
        elif isinstance(event, ev.RedeployPlanned):
            self.affected = list(event.affected)
        elif isinstance(event, ev.RunPlanned):
            self.release_name = event.release_name
            for pair in event.pairs:
                row = self.units.setdefault(pair["fqn"], UnitRow(fqn=pair["fqn"]))
                row.phases[pair["phase"]] = "pending"
        elif isinstance(event, ev.UnitPhaseStarted):
            self._row(event.fqn).phases[event.phase] = "running"
        elif isinstance(event, ev.UnitPhaseSucceeded):
            row = self._row(event.fqn)
            row.phases[event.phase] = "succeeded"
            row.elapsed_ms[event.phase] = event.duration_ms
        elif isinstance(event, ev.UnitPhaseReused):
            self._row(event.fqn).phases[event.phase] = "reused"
        elif isinstance(event, ev.UnitPhaseFailed):
            row = self._row(event.fqn)
            row.phases[event.phase] = "failed"
            row.elapsed_ms[event.phase] = event.duration_ms
            row.note = _redact(event.cause)
            self.failures.append(event)
        elif isinstance(event, ev.UnitPhaseSkipped):
            row = self._row(event.fqn)
            row.phases[event.phase] = "skipped"
            row.note = row.note or f"blocked by {event.blocked_by}"
        elif isinstance(event, ev.Warning):
            self.warnings.append(event)
        elif isinstance(event, ev.BuildstateSaved):
            self.saved_path = Path(event.path) if event.path else None
        elif isinstance(event, ev.RunFinished):
            self.finished = event

    def _row(self, fqn: str) -> UnitRow:
        return self.units.setdefault(fqn, UnitRow(fqn=fqn))


class PhaseRichRenderer(Renderer):
    def __init__(self, console: Console):
        self.console = console
        self.is_tty = console.is_terminal
        self.state = _PhaseState()
        self._live: Live | None = None

    def handle(self, event: ev.StackEvent) -> None:
        self.state.apply(event)
        if isinstance(event, ev.CommandStarted):
            _print_header(self.console, event)
            if self.is_tty:
                self._live = Live(self._render(), console=self.console, refresh_per_second=10)
                self._live.__enter__()
            return
        if isinstance(event, ev.CommandCompleted):
            self._finish(event)
            return
        self._refresh()

    def close(self) -> None:
        if self._live:
            self._live.__exit__(None, None, None)
            self._live = None

    def _refresh(self) -> None:
        if self._live:
            self._live.update(self._render())

    def _finish(self, event: ev.CommandCompleted) -> None:
        if self._live:
            self._live.update(self._render())
            self.close()
        else:
            self.console.print(self._render())
        for warning in self.state.warnings:
            self.console.print(f"[yellow]warning:[/yellow] {_redact(warning.message)}")
        if self.state.stage_failure is not None:
            self.console.print(_stage_failure_panel(self.state.stage_failure))
            return
        if self.state.failures:
            self.console.print(_unit_failures_panel(self.state.failures))
        finished = self.state.finished
        if finished is not None:
            body = "\n".join(
                [
                    f"Status:   {finished.status}",
                    f"Release:  {self.state.release_name or '-'}",
                    f"Counts:   {_format_counts(finished.counts)}",
                    f"State:    {self.state.saved_path or '-'}",
                ]
            )
            title = f"{self.state.command} {'complete' if event.ok else 'finished with failures'}"
            self.console.print(Panel(body, title=title, box=box.ROUNDED, title_align="left"))

    def _render(self) -> Group:
        total = len(self.state.stages)
        stage_table = Table(show_header=True, box=box.MINIMAL, show_lines=False)
        stage_table.add_column("#", justify="right", style="dim")
        stage_table.add_column("Stage")
        stage_table.add_column("Status")
        stage_table.add_column("Time", justify="right")
        for index, (stage_id, label) in enumerate(self.state.stages, start=1):
            status = self.state.stage_status.get(stage_id, "pending")
            elapsed = self.state.stage_elapsed.get(stage_id)
            duration = _format_duration(elapsed) if elapsed is not None else ""
            stage_table.add_row(f"{index}/{total}", label, _status_text(status), duration)
        renderables: list = [Panel(stage_table, title="Stages", box=box.ROUNDED, title_align="left")]
        if self.state.units:
            renderables.append(
                Panel(_units_table(self.state.units.values()), title="Units", box=box.ROUNDED, title_align="left")
            )
        return Group(*renderables)


class PhasePlainRenderer(Renderer):
    def __init__(self, console: Console):
        self.console = console
        self.state = _PhaseState()

    def handle(self, event: ev.StackEvent) -> None:
        self.state.apply(event)
        stages = self.state.stages
        if isinstance(event, ev.CommandStarted):
            _print_header(self.console, event)
            return
        if isinstance(event, ev.StageStarted):
            index = _stage_index(event.stage_id, stages)
            label = _stage_label(event.stage_id, stages)
            self.console.print(_format_stage_start_line(index, label, len(stages)))
            return
        if isinstance(event, (ev.StageCompleted, ev.StageFailed)):
            index = _stage_index(event.stage_id, stages)
            label = _stage_label(event.stage_id, stages)
            status = self.state.stage_status.get(event.stage_id, "failed")
            self.console.print(_format_stage_line(index, label, status, event.duration_ms, len(stages)))
            return
        if isinstance(event, ev.RedeployPlanned):
            affected = ", ".join(event.affected) or "none"
            self.console.print(f"REDEPLOY affected={affected}")
            return
        if isinstance(event, ev.UnitPhaseSucceeded):
            self.console.print(f"  {event.fqn} {event.phase} OK  {_format_duration(event.duration_ms)}")
            return
        if isinstance(event, ev.UnitPhaseReused):
            self.console.print(f"  {event.fqn} {event.phase} REUSED")
            return
        if isinstance(event, ev.UnitPhaseFailed):
            suffix = " (timeout)" if event.timed_out else ""
            self.console.print(f"  {event.fqn} {event.phase} FAIL{suffix}: {_redact(event.cause)}")
            return
        if isinstance(event, ev.UnitPhaseSkipped):
            self.console.print(f"  {event.fqn} {event.phase} SKIP (blocked by {event.blocked_by})")
            return
        if isinstance(event, ev.Warning):
            self.console.print(f"Warning: {_redact(event.message)}")
            return
        if isinstance(event, ev.Debug):
            self.console.print(f"Debug: {event.message} {json.dumps(event.data, sort_keys=True)}")
            return
        if isinstance(event, ev.RunFinished):
            self.console.print(f"RUN {event.status.upper()} {_format_counts(event.counts)}")
            return
        if isinstance(event, ev.CommandCompleted) and not event.ok:
            failure = self.state.stage_failure
            if failure is not None:
                self.console.print(f"Error: {_redact(failure.message)}")
                if failure.hint:
                    self.console.print(f"Hint: {_redact(failure.hint)}")


class PhaseJsonRenderer(Renderer):
    def __init__(self, console: Console):
        self.console = console
        self.state = _PhaseState()

    def handle(self, event: ev.StackEvent) -> None:
        self.state.apply(event)
        if not isinstance(event, ev.CommandCompleted):
            return
        state = self.state
        errors = []
        if state.stage_failure is not None:
            errors.append(
                {
                    "stage": state.stage_failure.stage_id,
                    "code": state.stage_failure.error_code,
                    "message": _redact(state.stage_failure.message),
                }
            )
        payload = {
            "ok": event.ok,
            "exit_code": event.exit_code,
            "command": state.command,
            "status": state.finished.status if state.finished else None,
            "release_name": state.release_name,
            "affected": state.affected,
            "stages": state.stage_status,
            "units": {
                row.fqn: {"phases": row.phases, "note": row.note}
                for row in state.units.values()
            },
            "failures": [
                {
                    "fqn": failure.fqn,
                    "phase": failure.phase,
                    "cause": _redact(failure.cause),
                    "timed_out": failure.timed_out,
                }
                for failure in state.failures
            ],
            "warnings": [_redact(warning.message) for warning in state.warnings],
            "errors": errors,
        }
        self.console.print_json(json.dumps(payload, sort_keys=True))


class GraphRichRenderer(Renderer):
    def __init__(self, console: Console):
        self.console = console
        self._graph: ev.GraphResolved | None = None
        self._failed: ev.StageFailed | None = None

    def handle(self, event: ev.StackEvent) -> None:
        if isinstance(event, ev.CommandStarted):
            _print_header(self.console, event)
            return
        if isinstance(event, ev.GraphResolved):
            self._graph = event
            return
        if isinstance(event, ev.StageFailed):
            self._failed = event
            return
        if isinstance(event, ev.CommandCompleted):
            if self._failed is not None:
                self.console.print(_stage_failure_panel(self._failed))
                return
            if self._graph is None:
                return
            table = Table(show_header=True, box=box.MINIMAL)
            table.add_column("#", justify="right", style="dim")
            table.add_column("UNIT", style="bold")
            table.add_column("DEPENDS ON")
            incoming: dict[str, list[str]] = {}
            for edge in self._graph.edges:
                incoming.setdefault(edge["to"], []).append(f"{edge['from']} ({edge['kind']})")
            for index, fqn in enumerate(self._graph.order, start=1):
                table.add_row(str(index), fqn, "\n".join(incoming.get(fqn, [])) or "-")
            title = f"Stack {self._graph.stack} ({len(self._graph.order)} units, {self._graph.references} references)"
            self.console.print(Panel(table, title=title, box=box.ROUNDED, title_align="left"))


class GraphPlainRenderer(Renderer):
    def __init__(self, console: Console):
        self.console = console

    def handle(self, event: ev.StackEvent) -> None:
        if isinstance(event, ev.GraphResolved):
            for fqn in event.order:
                self.console.print(fqn)
            for edge in event.edges:
                self.console.print(f"{edge['from']} -> {edge['to']} [{edge['kind']}]")
            return
        if isinstance(event, ev.StageFailed):
            self.console.print(f"Error: {_redact(event.message)}")


class GraphJsonRenderer(Renderer):
    def __init__(self, console: Console):
        self.console = console
        self._graph: ev.GraphResolved | None = None
        self._errors: list[dict[str, str]] = []

    def handle(self, event: ev.StackEvent) -> None:
        if isinstance(event, ev.GraphResolved):
            self._graph = event
            return
        if isinstance(event, ev.StageFailed):
            self._errors.append({"code": event.error_code, "message": _redact(event.message)})
            return
        if isinstance(event, ev.CommandCompleted):
            payload = {
                "ok": event.ok,
                "stack": self._graph.stack if self._graph else None,
                "order": self._graph.order if self._graph else [],
                "edges": self._graph.edges if self._graph else [],
                "errors": self._errors,
            }
            self.console.print_json(json.dumps(payload, sort_keys=True))


def _units_table(rows: Iterable[UnitRow]) -> Table:
    table = Table(show_header=True, box=box.MINIMAL)
    table.add_column("UNIT", style="bold")
    for phase in PHASE_COLUMNS:
        table.add_column(phase.upper())
    table.add_column("NOTES")
    for row in rows:
        cells = []
        for phase in PHASE_COLUMNS:
            status = row.phases.get(phase)
            if status is None:
                cells.append(Text("-", style="dim"))
                continue
            elapsed = row.elapsed_ms.get(phase)
            duration = f" {_format_duration(elapsed)}" if elapsed is not None else ""
            cells.append(Text(f"{STATUS_GLYPHS.get(status, '?')} {status}{duration}", style=_status_style(status)))
        table.add_row(row.fqn, *cells, row.note or "")
    return table


def _unit_failures_panel(failures: list[ev.UnitPhaseFailed]) -> Panel:
    lines = []
    for failure in failures[:20]:
        suffix = " (timeout)" if failure.timed_out else ""
        lines.append(f"{failure.fqn} [{failure.phase}]{suffix}: {_redact(failure.cause)}")
    if len(failures) > 20:
        lines.append(f"...and {len(failures) - 20} more")
    lines.extend(["", "hint: fix the cause and rerun; succeeded units are reused from buildstate"])
    return Panel("\n".join(lines), title=f"Unit failures ({len(failures)})", box=box.ROUNDED, title_align="left")


def _stage_failure_panel(event: ev.StageFailed) -> Panel:
    body = "\n".join(
        [
            f"stage: {event.stage_id}",
            f"code: {event.error_code}",
            f"error: {_redact(event.message)}",
        ]
    )
    if event.hint:
        body = "\n".join([body, f"hint: {_redact(event.hint)}"])
    return Panel(body, title=f"{event.command} failed", box=box.ROUNDED, title_align="left")


def _format_counts(counts: dict[str, int]) -> str:
    if not counts:
        return "nothing to do"
    return " ".join(f"{key}={value}" for key, value in sorted(counts.items()))


def _format_duration(elapsed_ms: float) -> str:
    if elapsed_ms < 1000:
        return f"{elapsed_ms:.0f}ms"
    seconds = elapsed_ms / 1000
    if seconds < 10:
        return f"{seconds:.2f}s"
    return f"{seconds:.1f}s"


def _print_header(console: Console, event: ev.CommandStarted) -> None:
    project = event.project_dir or Path(".")
    config = event.config_path or Path("stack.yaml")
    console.print(f"stackctl v{__version__} | project: {project} | config: {config}\n{RULE_LINE}")


_REDACT_PATTERN = re.compile(
    r"(?i)\b(authorization|token|secret|password|api_key)\b\s*[:=]\s*[^\s]+"
)


def _redact(text: str) -> str:
    if not text:
        return text
    return _REDACT_PATTERN.sub(r"\1: <redacted>", text)


def _format_stage_line(
    index: int,
    label: str,
    status: str,
    elapsed_ms: float | None,
    total: int,
) -> str:
    glyph = STATUS_GLYPHS.get(status, "?")
    duration = f"  {_format_duration(elapsed_ms)}" if elapsed_ms is not None else ""
    padding = "." * max(2, 28 - len(label))
    return f"[{index}/{total}] {label} {padding} {glyph} {_status_word(status)}{duration}"


def _format_stage_start_line(index: int, label: str, total: int) -> str:
    padding = "." * max(2, 28 - len(label))
    return f"[{index}/{total}] {label} {padding} START"


def _stage_label(stage_id: str, mapping: list[tuple[str, str]]) -> str:
    for key, label in mapping:
        if key == stage_id:
            return label
    return stage_id


def _stage_index(stage_id: str, mapping: list[tuple[str, str]]) -> int:
    for index, (key, _label) in enumerate(mapping, start=1):
        if key == stage_id:
            return index
    return 0


def _status_word(status: str) -> str:
    return {
        "success": "OK",
        "succeeded": "OK",
        "failed": "FAIL",
        "skipped": "SKIP",
        "partial_failure": "PARTIAL",
    }.get(status, status.upper())


def _status_style(status: str) -> str:
    return {
        "succeeded": "green",
        "success": "green",
        "reused": "cyan",
        "failed": "red",
        "skipped": "bright_black",
        "running": "yellow",
        "partial_failure": "orange1",
    }.get(status, "default")


def _status_text(status: str) -> Text:
    return Text(f"{STATUS_GLYPHS.get(status, '?')} {_status_word(status).lower()}", style=_status_style(status))
