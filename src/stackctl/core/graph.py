from __future__ import annotations

import heapq
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from stackctl.config.model import Stack, UnitDefinition, UnitKind
from stackctl.core.errors import (
    DependencyCycleError,
    DuplicateNameError,
    SchemaError,
    UnknownUnitError,
)
from stackctl.core.references import ReferenceSite, find_references, init_step_tokens


class EdgeKind(str, Enum):
    ARTIFACT = "artifact"
    DEPLOY = "deploy"


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    kind: EdgeKind


@dataclass(frozen=True)
class UnitNode:
    fqn: str
    unit: UnitDefinition
    index: int

    @property
    def kind(self) -> UnitKind:
        return self.unit.kind

    @property
    def name(self) -> str:
        return self.unit.name


def unit_fqn(stack_name: str, kind: UnitKind, name: str) -> str:
    return f"{stack_name}.{kind.value}.{name}"


class DependencyGraph:
    """Units keyed by FQN with edges pointing from dependency to dependent."""

    def __init__(self, stack_name: str, stack: Stack | None = None):
        self.stack_name = stack_name
        self.stack = stack
        self.reference_sites: list[ReferenceSite] = []
        self._nodes: dict[str, UnitNode] = {}
        self._edges: dict[tuple[str, str], Edge] = {}
        self._incoming: dict[str, list[str]] = {}
        self._outgoing: dict[str, list[str]] = {}

    def __contains__(self, fqn: object) -> bool:
        return fqn in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def add_node(self, unit: UnitDefinition) -> UnitNode:
        fqn = unit_fqn(self.stack_name, unit.kind, unit.name)
        if fqn in self._nodes:
            raise DuplicateNameError(
                f"Duplicate {unit.kind.value} name '{unit.name}' in stack '{self.stack_name}'."
            )
        node = UnitNode(fqn=fqn, unit=unit, index=len(self._nodes))
        self._nodes[fqn] = node
        self._incoming[fqn] = []
        self._outgoing[fqn] = []
        return node

    def add_edge(self, source: str, target: str, kind: EdgeKind) -> Edge:
        for fqn in (source, target):
            if fqn not in self._nodes:
                raise UnknownUnitError(f"Unknown unit: {fqn}")
        key = (source, target)
        existing = self._edges.get(key)
        if existing is not None:
            if existing.kind is EdgeKind.DEPLOY or kind is EdgeKind.ARTIFACT:
                return existing
            edge = Edge(source=source, target=target, kind=EdgeKind.DEPLOY)
            self._edges[key] = edge
            return edge
        edge = Edge(source=source, target=target, kind=kind)
        self._edges[key] = edge
        self._outgoing[source].append(target)
        self._incoming[target].append(source)
        return edge

    @property
    def nodes(self) -> list[UnitNode]:
        return list(self._nodes.values())

    @property
    def edges(self) -> list[Edge]:
        return list(self._edges.values())

    def node(self, fqn: str) -> UnitNode:
        try:
            return self._nodes[fqn]
        except KeyError as exc:
            raise UnknownUnitError(f"Unknown unit: {fqn}") from exc

    def edge(self, source: str, target: str) -> Edge | None:
        return self._edges.get((source, target))

    def predecessors(self, fqn: str) -> list[Edge]:
        return [self._edges[(source, fqn)] for source in self._incoming[fqn]]

    def successors(self, fqn: str) -> list[Edge]:
        return [self._edges[(fqn, target)] for target in self._outgoing[fqn]]

    def find_cycle(self) -> list[str] | None:
        white, gray, black = 0, 1, 2
        color = {fqn: white for fqn in self._nodes}
        path: list[str] = []

        def _visit(fqn: str) -> list[str] | None:
            color[fqn] = gray
            path.append(fqn)
            for target in self._outgoing[fqn]:
                if color[target] == gray:
                    return path[path.index(target):] + [target]
                if color[target] == white:
                    cycle = _visit(target)
                    if cycle:
                        return cycle
            path.pop()
            color[fqn] = black
            return None

        for fqn in self._nodes:
            if color[fqn] == white:
                cycle = _visit(fqn)
                if cycle:
                    return cycle
        return None

    def order(self) -> list[str]:
        """Topological order; ties go to the earliest declared unit."""
        remaining = {fqn: len(sources) for fqn, sources in self._incoming.items()}
        heap = [(node.index, fqn) for fqn, node in self._nodes.items() if remaining[fqn] == 0]
        heapq.heapify(heap)
        ordered: list[str] = []
        while heap:
            _, fqn = heapq.heappop(heap)
            ordered.append(fqn)
            for target in self._outgoing[fqn]:
                remaining[target] -= 1
                if remaining[target] == 0:
                    heapq.heappush(heap, (self._nodes[target].index, target))
        if len(ordered) != len(self._nodes):
            raise DependencyCycleError(self.find_cycle() or sorted(set(self._nodes) - set(ordered)))
        return ordered

    def descendants(
        self,
        roots: Iterable[str],
        *,
        kinds: Iterable[EdgeKind] | None = None,
    ) -> set[str]:
        allowed = set(kinds) if kinds is not None else set(EdgeKind)
        seen: set[str] = set()
        stack = list(roots)
        while stack:
            fqn = stack.pop()
            for edge in self.successors(fqn):
                if edge.kind in allowed and edge.target not in seen:
                    seen.add(edge.target)
                    stack.append(edge.target)
        return seen

    def to_dict(self) -> dict[str, Any]:
        return {
            "stack": self.stack_name,
            "nodes": [
                {"fqn": node.fqn, "kind": node.kind.value, "name": node.name}
                for node in self.nodes
            ],
            "edges": [
                {"from": edge.source, "to": edge.target, "kind": edge.kind.value}
                for edge in self.edges
            ],
        }


def build_graph(stack: Stack) -> tuple[DependencyGraph, list[ReferenceSite]]:
    graph = DependencyGraph(stack.normalized_name, stack=stack)
    for unit in stack.units():
        _check_unit(unit)
        graph.add_node(unit)

    pending: list[ReferenceSite] = []
    for node in graph.nodes:
        for kind, name in node.unit.explicit_deps():
            graph.add_edge(_resolve_dep(graph, node, kind, name), node.fqn, EdgeKind.ARTIFACT)
        for section in ("inputs", "values"):
            for path, expression in find_references(getattr(node.unit, section), (section,)):
                target = expression.fqn(graph.stack_name)
                if target not in graph:
                    raise UnknownUnitError(
                        f"{node.fqn} references unknown {expression.kind.value} "
                        f"'{expression.unit_name}' at /{'/'.join(str(p) for p in path)}"
                    )
                graph.add_edge(target, node.fqn, EdgeKind.DEPLOY)
                pending.append(ReferenceSite(unit=node.fqn, path=path, expression=expression))

    cycle = graph.find_cycle()
    if cycle:
        raise DependencyCycleError(cycle)
    graph.reference_sites = list(pending)
    return graph, pending


def _check_unit(unit: UnitDefinition) -> None:
    if not unit.name:
        raise SchemaError(f"A {unit.kind.value} is missing its name.")
    unit.build_spec()
    unit.check_deploy_spec()
    for step in unit.init_steps:
        for token in init_step_tokens(step):
            if token not in unit.inputs:
                raise SchemaError(
                    f"Unit '{unit.name}' init step uses self.inputs.{token} but defines no such input."
                )


def _resolve_dep(
    graph: DependencyGraph,
    node: UnitNode,
    kind: UnitKind | None,
    name: str,
) -> str:
    if kind is not None:
        fqn = unit_fqn(graph.stack_name, kind, name)
        if fqn not in graph:
            raise UnknownUnitError(f"{node.fqn} depends on unknown {kind.value} '{name}'.")
        return fqn
    matches = [
        unit_fqn(graph.stack_name, candidate, name)
        for candidate in UnitKind
        if unit_fqn(graph.stack_name, candidate, name) in graph
    ]
    if not matches:
        raise UnknownUnitError(f"{node.fqn} depends on unknown unit '{name}'.")
    if len(matches) > 1:
        raise DuplicateNameError(
            f"{node.fqn} depends on '{name}', which names both a service and a project."
        )
    return matches[0]
