from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from stackctl.core.errors import (
    DuplicateOutputError,
    MissingOutputError,
    UnknownUnitError,
    UnresolvedReferenceError,
)
from stackctl.core.graph import DependencyGraph
from stackctl.core.references import ReferenceSite, map_leaves, set_path, unescape


class KeyedLocks:
    """One lock per key; holding X's lock never blocks Y."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def __call__(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock


@dataclass(frozen=True)
class ResolvedConfig:
    fqn: str
    inputs: dict[str, Any]
    values: dict[str, Any]
    substitutions: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"inputs": self.inputs, "values": self.values}


class ReferenceResolver:
    def __init__(self, graph: DependencyGraph, pending: Iterable[ReferenceSite]):
        self.graph = graph
        self._sites: dict[str, list[ReferenceSite]] = {}
        for site in pending:
            self._sites.setdefault(site.unit, []).append(site)
        self._outputs: dict[str, Mapping[str, Any]] = {}
        self._locks = KeyedLocks()

    def record_outputs(self, fqn: str, outputs: Mapping[str, Any]) -> None:
        if fqn not in self.graph:
            raise UnknownUnitError(f"Unknown unit: {fqn}")
        with self._locks(fqn):
            if fqn in self._outputs:
                raise DuplicateOutputError(f"Outputs for {fqn} were already recorded in this run.")
            self._outputs[fqn] = MappingProxyType(copy.deepcopy(dict(outputs)))

    def outputs_for(self, fqn: str) -> Mapping[str, Any] | None:
        with self._locks(fqn):
            return self._outputs.get(fqn)

    def resolve(self, fqn: str) -> ResolvedConfig:
        unit = self.graph.node(fqn).unit
        document = {
            "inputs": map_leaves(copy.deepcopy(unit.inputs), unescape),
            "values": map_leaves(copy.deepcopy(unit.values), unescape),
        }
        substitutions: dict[str, Any] = {}
        for site in self._sites.get(fqn, []):
            value = self._lookup(site)
            set_path(document, site.path, copy.deepcopy(value))
            substitutions[site.pointer] = value
        return ResolvedConfig(
            fqn=fqn,
            inputs=document["inputs"],
            values=document["values"],
            substitutions=substitutions,
        )

    def _lookup(self, site: ReferenceSite) -> Any:
        target = site.expression.fqn(self.graph.stack_name)
        outputs = self.outputs_for(target)
        if outputs is None:
            raise UnresolvedReferenceError(
                f"{site.unit} needs {site.expression} but {target} has not recorded outputs."
            )
        if site.expression.field not in outputs:
            raise MissingOutputError(
                f"{site.unit} needs {site.expression} but {target} has no output "
                f"'{site.expression.field}' (available: {', '.join(sorted(outputs)) or 'none'})."
            )
        return outputs[site.expression.field]
