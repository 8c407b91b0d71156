# dag.py
from __future__ import annotations

import heapq
from dataclasses import dataclass
from typing import Dict, List, Tuple

from .errors import CycleDetectedError, UnknownDependencyError
from .model import JobSpec, WorkflowSpec


@dataclass(frozen=True)
class CompiledWorkflow:
    """
    Immutable job graph for one WorkflowSpec.

    Jobs live in an arena indexed by declaration order; edges are index
    lists, never object references:
      - needs[i]:      indices job i depends on
      - dependents[i]: indices that depend on job i
      - order:         topological order, ties broken by declaration index
    """
    spec: WorkflowSpec
    names: Tuple[str, ...]
    needs: Tuple[Tuple[int, ...], ...]
    dependents: Tuple[Tuple[int, ...], ...]
    order: Tuple[int, ...]

    def __len__(self) -> int:
        return len(self.names)

    @property
    def name(self) -> str:
        return self.spec.name

    def job(self, index: int) -> JobSpec:
        return self.spec.jobs[self.names[index]]

    def index_of(self, name: str) -> int:
        return self.names.index(name)

    def roots(self) -> List[int]:
        """Jobs without dependencies, in topological order."""
        return [i for i in self.order if not self.needs[i]]

    def transitive_dependents(self, index: int) -> List[int]:
        """Every job reachable through dependents of `index`, in topological order."""
        seen = set()
        stack = list(self.dependents[index])
        while stack:
            i = stack.pop()
            if i in seen:
                continue
            seen.add(i)
            stack.extend(self.dependents[i])
        return [i for i in self.order if i in seen]


def build_dag(spec: WorkflowSpec) -> Tuple[List[List[int]], List[List[int]], List[int]]:
    """
    Build adjacency lists for a WorkflowSpec.

    Returns (needs, dependents, indeg) indexed by declaration order.
    Duplicate `needs` entries collapse into one edge.
    """
    names = list(spec.jobs)
    slot: Dict[str, int] = {n: i for i, n in enumerate(names)}

    needs: List[List[int]] = [[] for _ in names]
    dependents: List[List[int]] = [[] for _ in names]
    indeg: List[int] = [0] * len(names)

    for i, name in enumerate(names):
        for dep in spec.jobs[name].needs:
            if dep not in slot:
                raise UnknownDependencyError(name, dep, known=names)
            d = slot[dep]
            # Edge dep -> job (dep must run before job)
            if d in needs[i]:
                continue
            needs[i].append(d)
            dependents[d].append(i)
            indeg[i] += 1

    return needs, dependents, indeg


def topo_order(dependents: List[List[int]], indeg: List[int]) -> List[int]:
    """
    Kahn's algorithm. The frontier is a heap on declaration index, so jobs
    that become orderable together come out in declaration order.
    """
    indeg = list(indeg)  # copy (we mutate it)
    frontier = [i for i, d in enumerate(indeg) if d == 0]
    heapq.heapify(frontier)

    order: List[int] = []
    while frontier:
        node = heapq.heappop(frontier)
        order.append(node)
        for child in dependents[node]:
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(frontier, child)

    return order


def compile_graph(spec: WorkflowSpec) -> CompiledWorkflow:
    needs, dependents, indeg = build_dag(spec)
    order = topo_order(dependents, indeg)

    if len(order) != len(indeg):
        placed = set(order)
        stuck = [n for i, n in enumerate(spec.jobs) if i not in placed]
        raise CycleDetectedError(stuck)

    return CompiledWorkflow(
        spec=spec,
        names=tuple(spec.jobs),
        needs=tuple(tuple(n) for n in needs),
        dependents=tuple(tuple(sorted(d)) for d in dependents),
        order=tuple(order),
    )
