# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from .errors import CyclicDependencyError, UnknownJobReferenceError
from .model import JobDefinition, WorkflowDefinition


@dataclass(frozen=True)
class JobGraph:
    """
    Arena-style DAG.

    jobs:    job definitions in declaration order (index = node id)
    index:   job name -> node id
    edges:   (dependency, dependent) node-id pairs
    """
    jobs: Tuple[JobDefinition, ...]
    index: Dict[str, int]
    edges: Tuple[Tuple[int, int], ...]
    _dependents: Tuple[Tuple[int, ...], ...] = field(repr=False, default=())
    _dependencies: Tuple[Tuple[int, ...], ...] = field(repr=False, default=())

    def __len__(self) -> int:
        return len(self.jobs)

    @property
    def names(self) -> List[str]:
        return [j.name for j in self.jobs]

    def job(self, name: str) -> JobDefinition:
        return self.jobs[self.index[name]]

    def dependents(self, node: int) -> Tuple[int, ...]:
        return self._dependents[node]

    def dependencies(self, node: int) -> Tuple[int, ...]:
        return self._dependencies[node]

    def stages(self) -> List[List[str]]:
        """
        Topological "levels": every job in a stage only needs jobs from
        earlier stages. Within a stage, declaration order.
        """
        indeg = [len(d) for d in self._dependencies]
        q = deque(i for i, d in enumerate(indeg) if d == 0)

        levels: List[List[str]] = []
        while q:
            level = sorted(q)
            q.clear()
            levels.append([self.jobs[i].name for i in level])
            for node in level:
                for child in self._dependents[node]:
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
        return levels


def _find_cycle(n: int, dependencies: List[List[int]]) -> List[int] | None:
    """
    Iterative DFS over `needs` edges. A node seen again while still on the
    current path closes a cycle; returns that path (first node repeated).
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = [WHITE] * n

    for root in range(n):
        if color[root] != WHITE:
            continue
        path: List[int] = [root]
        stack: List[Tuple[int, int]] = [(root, 0)]
        color[root] = GREY
        while stack:
            node, pos = stack[-1]
            deps = dependencies[node]
            if pos < len(deps):
                stack[-1] = (node, pos + 1)
                nxt = deps[pos]
                if color[nxt] == GREY:
                    start = path.index(nxt)
                    return path[start:] + [nxt]
                if color[nxt] == WHITE:
                    color[nxt] = GREY
                    path.append(nxt)
                    stack.append((nxt, 0))
            else:
                color[node] = BLACK
                path.pop()
                stack.pop()
    return None


def build_graph(workflow: WorkflowDefinition) -> JobGraph:
    """
    Build the job DAG for a workflow.

    Raises UnknownJobReferenceError when `needs` names a job that does not
    exist, CyclicDependencyError when the needs relation has a cycle.
    """
    jobs = tuple(workflow.jobs.values())
    index = {job.name: i for i, job in enumerate(jobs)}

    dependencies: List[List[int]] = [[] for _ in jobs]
    dependents: List[List[int]] = [[] for _ in jobs]
    edges: List[Tuple[int, int]] = []

    for i, job in enumerate(jobs):
        for need in job.needs:
            if need not in index:
                raise UnknownJobReferenceError(job=job.name, missing=need, known=sorted(index))
            dep = index[need]
            if dep in dependencies[i]:
                continue
            dependencies[i].append(dep)
            dependents[dep].append(i)
            edges.append((dep, i))

    cycle = _find_cycle(len(jobs), dependencies)
    if cycle is not None:
        # path follows needs edges (job -> what it needs); report it in that order
        raise CyclicDependencyError(cycle=[jobs[i].name for i in cycle])

    return JobGraph(
        jobs=jobs,
        index=index,
        edges=tuple(edges),
        _dependents=tuple(tuple(sorted(d)) for d in dependents),
        _dependencies=tuple(tuple(sorted(d)) for d in dependencies),
    )
