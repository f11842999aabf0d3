from __future__ import annotations

import heapq
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Generator, Iterable, Iterator, Mapping

from stackctl.config.model import UnitKind
from stackctl.core import events as ev
from stackctl.core.buildstate import BuildstateStore, PersistedState, fingerprint
from stackctl.core.errors import ExecutorConfigError, ExecutorFailure, MissingOutputError
from stackctl.core.executors import ExecutorResult, UnitContext, check_executors
from stackctl.core.graph import DependencyGraph, EdgeKind
from stackctl.core.references import interpolate_init_step
from stackctl.core.release import generate_release_name, namespace_for, release_name_for, service_host
from stackctl.core.resolver import ReferenceResolver, ResolvedConfig
from stackctl.core.stages import Phase

PairKey = tuple[str, Phase]

HOST_OUTPUT = "host"


class PairStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (PairStatus.SUCCEEDED, PairStatus.FAILED, PairStatus.SKIPPED)


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"


@dataclass
class PairOutcome:
    fqn: str
    phase: Phase
    status: PairStatus = PairStatus.PENDING
    history: list[PairStatus] = field(default_factory=lambda: [PairStatus.PENDING])
    cause: str | None = None
    timed_out: bool = False
    blocked_by: str | None = None
    reused: bool = False
    duration_ms: float = 0.0
    fingerprint: str | None = None

    def move(self, status: PairStatus) -> None:
        self.status = status
        self.history.append(status)


@dataclass
class RunReport:
    phases: list[Phase]
    release_name: str
    pairs: dict[PairKey, PairOutcome] = field(default_factory=dict)
    duration_ms: float = 0.0

    def unit_status(self, fqn: str) -> PairStatus:
        statuses = [outcome.status for (unit, _), outcome in self.pairs.items() if unit == fqn]
        if PairStatus.FAILED in statuses:
            return PairStatus.FAILED
        if PairStatus.SKIPPED in statuses:
            return PairStatus.SKIPPED
        if statuses and all(status is PairStatus.SUCCEEDED for status in statuses):
            return PairStatus.SUCCEEDED
        return PairStatus.PENDING

    @property
    def units(self) -> dict[str, PairStatus]:
        seen: dict[str, PairStatus] = {}
        for fqn, _ in self.pairs:
            if fqn not in seen:
                seen[fqn] = self.unit_status(fqn)
        return seen

    @property
    def status(self) -> RunStatus:
        units = self.units
        succeeded = sum(1 for status in units.values() if status is PairStatus.SUCCEEDED)
        if succeeded == len(units):
            return RunStatus.SUCCEEDED
        if succeeded == 0:
            return RunStatus.FAILED
        return RunStatus.PARTIAL_FAILURE

    @property
    def failures(self) -> list[ExecutorFailure]:
        return [
            ExecutorFailure(
                fqn=outcome.fqn,
                phase=outcome.phase.value,
                cause=outcome.cause or "",
                timed_out=outcome.timed_out,
            )
            for outcome in self.pairs.values()
            if outcome.status is PairStatus.FAILED
        ]

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in PairStatus if status.terminal}
        counts["reused"] = 0
        for outcome in self.pairs.values():
            if outcome.status.terminal:
                counts[outcome.status.value] += 1
            if outcome.reused:
                counts["reused"] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "release_name": self.release_name,
            "phases": [phase.value for phase in self.phases],
            "units": {fqn: status.value for fqn, status in self.units.items()},
            "pairs": [
                {
                    "fqn": outcome.fqn,
                    "phase": outcome.phase.value,
                    "status": outcome.status.value,
                    "reused": outcome.reused,
                    "cause": outcome.cause,
                    "blocked_by": outcome.blocked_by,
                }
                for outcome in self.pairs.values()
            ],
        }


@dataclass
class _Running:
    context: UnitContext
    started: float
    deadline: float | None
    fingerprint: str
    resolved: ResolvedConfig | None


class PhaseScheduler:
    """Runs (unit, phase) pairs as soon as their prerequisites succeed.

    Every requested phase of a unit waits for the unit's previous requested
    phase. A unit's first phase in the run waits for each predecessor's
    required phase: Build for an artifact edge from a project, Deploy
    otherwise, clamped to the phases actually requested. Executors run on
    worker threads; all bookkeeping happens on the thread that iterates
    ``events()``.
    """

    def __init__(
        self,
        graph: DependencyGraph,
        executors: Mapping[Phase, Any],
        *,
        resolver: ReferenceResolver | None = None,
        store: BuildstateStore | None = None,
        state: PersistedState | None = None,
        release_name: str | None = None,
        max_workers: int = 4,
        force: Iterable[str] | Mapping[Phase, Iterable[str]] = (),
        project_dir: Path | None = None,
        command: str = "run",
    ):
        if not isinstance(max_workers, int) or max_workers < 1:
            raise ExecutorConfigError(f"max_workers must be a positive integer, got {max_workers!r}.")
        self.graph = graph
        self.executors = dict(executors)
        self.resolver = resolver or ReferenceResolver(graph, graph.reference_sites)
        self.store = store or BuildstateStore(None)
        self.state = state if state is not None else self.store.load(graph.stack_name)
        previous = self.state.release_name if command == "redeploy" else None
        if release_name is None:
            if graph.stack is not None:
                release_name = release_name_for(graph.stack, previous)
            else:
                release_name = previous or generate_release_name()
        self.release_name = release_name
        self.max_workers = max_workers
        if isinstance(force, Mapping):
            self.force = {phase: set(fqns) for phase, fqns in force.items()}
        else:
            forced = set(force)
            self.force = {phase: forced for phase in Phase}
        self.project_dir = project_dir
        self.command = command
        self.report: RunReport | None = None
        self._fingerprints: dict[PairKey, str] = {}
        self._resolved: dict[PairKey, ResolvedConfig | None] = {}

    def plan(self, phases: Iterable[Phase]) -> dict[PairKey, set[PairKey]]:
        """Prerequisite pairs for every pair in the run, in start order."""
        requested = sorted(set(phases), key=lambda phase: phase.index)
        prereqs: dict[PairKey, set[PairKey]] = {}
        for fqn in self.graph.order():
            node = self.graph.node(fqn)
            unit_phases = [phase for phase in requested if phase.applies_to(node.kind)]
            for position, phase in enumerate(unit_phases):
                required: set[PairKey] = set()
                if position > 0:
                    required.add((fqn, unit_phases[position - 1]))
                else:
                    for edge in self.graph.predecessors(fqn):
                        gate = self._gate_for(edge.source, edge.kind, requested)
                        if gate is not None:
                            required.add(gate)
                prereqs[(fqn, phase)] = required
        return prereqs

    def _gate_for(self, source: str, kind: EdgeKind, requested: list[Phase]) -> PairKey | None:
        source_kind = self.graph.node(source).kind
        target = Phase.DEPLOY
        if kind is EdgeKind.ARTIFACT and source_kind is UnitKind.PROJECT:
            target = Phase.BUILD
        candidates = [
            phase
            for phase in requested
            if phase.applies_to(source_kind) and phase.index <= target.index
        ]
        if not candidates:
            return None
        return (source, candidates[-1])

    def run(self, phases: Phase | Iterable[Phase]) -> RunReport:
        stream = self.events(phases)
        while True:
            try:
                next(stream)
            except StopIteration as finished:
                return finished.value

    def events(self, phases: Phase | Iterable[Phase]) -> Generator[ev.StackEvent, None, RunReport]:
        """Run ``phases`` and yield progress events; returns the final report."""
        if isinstance(phases, Phase):
            phases = [phases]
        requested = sorted(set(phases), key=lambda phase: phase.index)
        check_executors(self.executors, self.graph, requested)
        started_run = time.perf_counter()

        prereqs = self.plan(requested)
        dependents: dict[PairKey, list[PairKey]] = {key: [] for key in prereqs}
        for key, required in prereqs.items():
            for prereq in required:
                dependents[prereq].append(key)
        remaining = {key: len(required) for key, required in prereqs.items()}

        report = RunReport(phases=requested, release_name=self.release_name)
        for fqn, phase in prereqs:
            report.pairs[(fqn, phase)] = PairOutcome(fqn=fqn, phase=phase)
        self.report = report
        self.state.release_name = self.release_name

        yield ev.RunPlanned(
            command=self.command,
            phases=[phase.value for phase in requested],
            pairs=[{"fqn": fqn, "phase": phase.value} for fqn, phase in prereqs],
            release_name=self.release_name,
            max_workers=self.max_workers,
        )

        ready: list[tuple[int, int, str, Phase]] = []
        promote = [key for key, count in remaining.items() if count == 0]
        running: dict[PairKey, _Running] = {}
        # timed-out pairs whose threads are still busy; they hold a worker slot
        abandoned: set[PairKey] = set()
        completions: queue.Queue[tuple[PairKey, ExecutorResult, float]] = queue.Queue()

        def _settle(key: PairKey) -> None:
            for dependent in dependents[key]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    promote.append(dependent)

        while True:
            while promote:
                key = promote.pop(0)
                outcome = report.pairs[key]
                blocking = sorted(
                    (prereq for prereq in prereqs[key] if report.pairs[prereq].status is not PairStatus.SUCCEEDED),
                    key=self._rank,
                )
                if blocking:
                    blocked_fqn, blocked_phase = blocking[0]
                    outcome.blocked_by = f"{blocked_fqn}:{blocked_phase.value}"
                    outcome.move(PairStatus.SKIPPED)
                    yield ev.UnitPhaseSkipped(
                        command=self.command,
                        fqn=key[0],
                        phase=key[1].value,
                        blocked_by=outcome.blocked_by,
                    )
                    _settle(key)
                    continue
                resolved = None
                if key[1] is Phase.DEPLOY:
                    try:
                        resolved = self.resolver.resolve(key[0])
                    except MissingOutputError as exc:
                        yield from self._fail(key, str(exc), 0.0)
                        _settle(key)
                        continue
                self._resolved[key] = resolved
                digest = self._fingerprint(key, resolved)
                outcome.fingerprint = digest
                self._fingerprints[key] = digest
                forced = key[0] in self.force.get(key[1], ())
                if not forced and self.store.is_current(self.state, key[0], key[1], digest):
                    outcome.reused = True
                    outcome.move(PairStatus.SUCCEEDED)
                    yield ev.UnitPhaseReused(
                        command=self.command,
                        fqn=key[0],
                        phase=key[1].value,
                        fingerprint=digest,
                    )
                    if key[1] is Phase.DEPLOY:
                        record = self.store.record_for(self.state, key[0])
                        outputs = dict(record.outputs) if record is not None else {}
                        yield from self._record_outputs(key[0], outputs)
                    _settle(key)
                    continue
                outcome.move(PairStatus.READY)
                node = self.graph.node(key[0])
                heapq.heappush(ready, (key[1].index, node.index, key[0], key[1]))

            while ready and len(running) + len(abandoned) < self.max_workers:
                _, _, fqn, phase = heapq.heappop(ready)
                key = (fqn, phase)
                resolved = self._resolved.pop(key, None)
                context = self._context(fqn, phase, resolved)
                executor = self.executors[phase]
                timeout_s = getattr(executor, "timeout_s", None)
                started = time.perf_counter()
                running[key] = _Running(
                    context=context,
                    started=started,
                    deadline=started + timeout_s if timeout_s else None,
                    fingerprint=self._fingerprints[key],
                    resolved=resolved,
                )
                report.pairs[key].move(PairStatus.RUNNING)
                yield ev.UnitPhaseStarted(command=self.command, fqn=fqn, phase=phase.value)
                worker = threading.Thread(
                    target=_invoke,
                    args=(key, executor, context, completions),
                    name=f"stackctl-{phase.value}-{fqn}",
                    daemon=True,
                )
                worker.start()

            if not running and not (ready and abandoned):
                break

            deadlines = [item.deadline for item in running.values() if item.deadline is not None]
            wait_s = max(0.0, min(deadlines) - time.perf_counter()) if deadlines else None
            try:
                key, result, elapsed = completions.get(timeout=wait_s)
            except queue.Empty:
                key = None
            if key in abandoned:
                abandoned.discard(key)
            elif key is not None and key in running:
                item = running.pop(key)
                if result.ok:
                    yield from self._succeed(key, item, result, elapsed)
                else:
                    yield from self._fail(key, result.cause or "executor reported failure", elapsed)
                _settle(key)

            now = time.perf_counter()
            for key, item in list(running.items()):
                if item.deadline is not None and now >= item.deadline:
                    del running[key]
                    abandoned.add(key)
                    timeout_s = item.deadline - item.started
                    yield from self._fail(
                        key,
                        f"timed out after {timeout_s:g}s",
                        _elapsed_ms(item.started),
                        timed_out=True,
                    )
                    _settle(key)

        report.duration_ms = _elapsed_ms(started_run)
        yield ev.RunFinished(
            command=self.command,
            status=report.status.value,
            counts=report.counts(),
            duration_ms=report.duration_ms,
        )
        return report

    def _succeed(
        self,
        key: PairKey,
        item: _Running,
        result: ExecutorResult,
        elapsed: float,
    ) -> Iterator[ev.StackEvent]:
        fqn, phase = key
        outcome = self.report.pairs[key]
        outputs = None
        if phase is Phase.DEPLOY:
            outputs = dict(result.outputs or {})
            outputs.setdefault(
                HOST_OUTPUT,
                service_host(self.release_name, self.graph.node(fqn).unit, item.context.namespace),
            )
            yield from self._record_outputs(fqn, outputs)
        self.store.mark_succeeded(
            self.state,
            fqn,
            phase,
            item.fingerprint,
            snapshot=item.resolved.to_dict() if item.resolved is not None else None,
            outputs=outputs,
        )
        self.store.save(self.graph.stack_name, self.state)
        outcome.duration_ms = elapsed
        outcome.move(PairStatus.SUCCEEDED)
        yield ev.UnitPhaseSucceeded(
            command=self.command,
            fqn=fqn,
            phase=phase.value,
            duration_ms=elapsed,
        )

    def _fail(
        self,
        key: PairKey,
        cause: str,
        elapsed: float,
        *,
        timed_out: bool = False,
    ) -> Iterator[ev.StackEvent]:
        fqn, phase = key
        outcome = self.report.pairs[key]
        self.store.mark_failed(self.state, fqn, phase)
        outcome.cause = cause
        outcome.timed_out = timed_out
        outcome.duration_ms = elapsed
        outcome.move(PairStatus.FAILED)
        yield ev.UnitPhaseFailed(
            command=self.command,
            fqn=fqn,
            phase=phase.value,
            duration_ms=elapsed,
            cause=cause,
            timed_out=timed_out,
        )

    def _record_outputs(self, fqn: str, outputs: dict[str, Any]) -> Iterator[ev.StackEvent]:
        self.resolver.record_outputs(fqn, outputs)
        yield ev.OutputsRecorded(command=self.command, fqn=fqn, fields=sorted(outputs))

    def _rank(self, key: PairKey) -> tuple[int, int]:
        return (key[1].index, self.graph.node(key[0]).index)

    def _namespace(self, fqn: str) -> str:
        unit = self.graph.node(fqn).unit
        if self.graph.stack is not None:
            return namespace_for(self.graph.stack, unit)
        return unit.namespace or self.graph.stack_name.replace("_", "-")

    def _fingerprint(self, key: PairKey, resolved: ResolvedConfig | None) -> str:
        fqn, phase = key
        unit = self.graph.node(fqn).unit
        if phase is not Phase.DEPLOY:
            return fingerprint({"phase": phase.value, "config": unit.config_snapshot()})
        build_fp = self._fingerprints.get((fqn, Phase.BUILD))
        if build_fp is None:
            record = self.store.record_for(self.state, fqn)
            build_fp = record.fingerprints.get(Phase.BUILD.value) if record is not None else None
        upstream = {
            edge.source: self._fingerprints.get((edge.source, Phase.DEPLOY))
            for edge in self.graph.predecessors(fqn)
            if edge.kind is EdgeKind.DEPLOY
        }
        return fingerprint(
            {
                "phase": phase.value,
                "config": unit.config_snapshot(),
                "resolved": resolved.to_dict() if resolved is not None else None,
                "release_name": self.release_name,
                "namespace": self._namespace(fqn),
                "build": build_fp,
                "upstream": upstream,
            }
        )

    def _context(self, fqn: str, phase: Phase, resolved: ResolvedConfig | None) -> UnitContext:
        node = self.graph.node(fqn)
        unit = node.unit
        config = unit.config_snapshot()
        if resolved is not None:
            config["inputs"] = resolved.inputs
            config["values"] = resolved.values
        init_steps = []
        if phase is Phase.INIT:
            init_steps = [interpolate_init_step(step, unit.inputs) for step in unit.init_steps]
        return UnitContext(
            fqn=fqn,
            name=unit.name,
            kind=unit.kind,
            phase=phase,
            stack_name=self.graph.stack_name,
            namespace=self._namespace(fqn),
            release_name=self.release_name,
            config=config,
            display_name=unit.display_name(),
            build=unit.build_spec(),
            init_steps=init_steps,
            project_dir=self.project_dir,
        )


def run(
    graph: DependencyGraph,
    phases: Phase | Iterable[Phase],
    executors: Mapping[Phase, Any],
    **options: Any,
) -> RunReport:
    """Run ``phases`` over ``graph`` and return the per-pair report."""
    return PhaseScheduler(graph, executors, **options).run(phases)


def _invoke(
    key: PairKey,
    executor: Any,
    context: UnitContext,
    completions: queue.Queue,
) -> None:
    started = time.perf_counter()
    try:
        result = executor.run(context)
        if not isinstance(result, ExecutorResult):
            result = ExecutorResult.failure(
                f"executor returned {type(result).__name__}, expected ExecutorResult"
            )
    except Exception as exc:  # noqa: BLE001
        result = ExecutorResult.failure(f"{type(exc).__name__}: {exc}")
    completions.put((key, result, _elapsed_ms(started)))


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
