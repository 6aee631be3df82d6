# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, Iterator, List, Optional, Set

from .adapters import AdapterRegistry
from .errors import (
    CycleError,
    DefinitionError,
    DuplicateJobError,
    UnknownArtifactError,
    UnknownDependencyError,
)
from .model import Job


class JobGraph:
    """
    Immutable DAG of jobs.

    Edges point from a dependency to its dependents (needs -> job), so a
    job's upstream set is everything it transitively needs.
    Build it with JobGraph.build(); the constructor assumes validated input.
    """

    def __init__(self, jobs: Dict[str, Job], adj: Dict[str, Set[str]]):
        self._jobs = jobs
        self._adj = adj
        self._batches: Optional[List[Set[str]]] = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @classmethod
    def build(cls, jobs: Iterable[Job], adapters: Optional[AdapterRegistry] = None) -> JobGraph:
        """
        Validate job definitions and build the graph.

        Raises:
          DuplicateJobError       two jobs share a name
          UnknownDependencyError  a job needs an undefined job
          CycleError              the dependency graph has a back-edge
          UnknownArtifactError    an input artifact no upstream job produces
          DefinitionError         unknown adapter / bad adapter params
        """
        jobs = list(jobs)
        names = [j.name for j in jobs]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise DuplicateJobError(dupes)

        by_name = {j.name: j for j in jobs}
        adj: Dict[str, Set[str]] = {n: set() for n in by_name}
        for job in jobs:
            for dep in job.needs:
                if dep not in by_name:
                    raise UnknownDependencyError(job.name, dep, sorted(by_name))
                adj[dep].add(job.name)

        cycle = _find_cycle(by_name)
        if cycle:
            raise CycleError(cycle)

        graph = cls(by_name, adj)
        graph._check_artifacts()
        if adapters is not None:
            for job in jobs:
                for step in job.steps:
                    try:
                        adapters.validate(step)
                    except DefinitionError as e:
                        raise DefinitionError(f"Job '{job.name}': {e}") from None
        return graph

    def _check_artifacts(self) -> None:
        for job in self._jobs.values():
            if not job.inputs:
                continue
            producers: Dict[str, List[str]] = {}
            for up in self.upstream(job.name):
                for out in self._jobs[up].outputs:
                    producers.setdefault(out, []).append(up)
            for name in job.inputs:
                found = producers.get(name, [])
                if not found:
                    raise UnknownArtifactError(job.name, name)
                if len(found) > 1:
                    raise DefinitionError(
                        f"Job '{job.name}': artifact '{name}' is produced by several upstream jobs: {sorted(found)}"
                    )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def __iter__(self) -> Iterator[Job]:
        return iter(self._jobs.values())

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, name: object) -> bool:
        return name in self._jobs

    @property
    def names(self) -> List[str]:
        return sorted(self._jobs)

    def job(self, name: str) -> Job:
        return self._jobs[name]

    def dependents(self, name: str) -> Set[str]:
        return set(self._adj[name])

    def downstream(self, name: str) -> Set[str]:
        """Every job that transitively needs `name`."""
        seen: Set[str] = set()
        q = deque(self._adj[name])
        while q:
            n = q.popleft()
            if n not in seen:
                seen.add(n)
                q.extend(self._adj[n])
        return seen

    def upstream(self, name: str) -> Set[str]:
        """Every job `name` transitively needs."""
        seen: Set[str] = set()
        q = deque(self._jobs[name].needs)
        while q:
            n = q.popleft()
            if n not in seen:
                seen.add(n)
                q.extend(self._jobs[n].needs)
        return seen

    def producer_of(self, job_name: str, artifact: str) -> str:
        """The upstream job that produces `artifact` for `job_name`."""
        for up in sorted(self.upstream(job_name)):
            if artifact in self._jobs[up].outputs:
                return up
        raise UnknownArtifactError(job_name, artifact)

    def topological_batches(self) -> List[Set[str]]:
        """
        Convert the DAG into topological waves. Every job in wave i depends
        only on jobs in waves < i; jobs inside a wave are independent and
        may run in parallel.
        """
        if self._batches is None:
            indeg = {n: len(set(j.needs)) for n, j in self._jobs.items()}
            current = {n for n, d in indeg.items() if d == 0}
            batches: List[Set[str]] = []
            while current:
                batches.append(current)
                nxt: Set[str] = set()
                for node in current:
                    for child in self._adj[node]:
                        indeg[child] -= 1
                        if indeg[child] == 0:
                            nxt.add(child)
                current = nxt
            self._batches = batches
        return [set(b) for b in self._batches]


def _find_cycle(jobs: Dict[str, Job]) -> Optional[List[str]]:
    """
    Depth-first search over `needs` edges. A back-edge to a node on the
    current path is a cycle; returns it as [a, b, ..., a].
    """
    WHITE, GRAY, BLACK = 0, 1, 2
    color = {n: WHITE for n in jobs}

    for root in sorted(jobs):
        if color[root] != WHITE:
            continue
        path: List[str] = [root]
        stack = [(root, iter(sorted(set(jobs[root].needs))))]
        color[root] = GRAY
        while stack:
            node, children = stack[-1]
            advanced = False
            for child in children:
                if color[child] == GRAY:
                    start = path.index(child)
                    # report in execution direction: dependency first
                    return list(reversed(path[start:] + [child]))
                if color[child] == WHITE:
                    color[child] = GRAY
                    path.append(child)
                    stack.append((child, iter(sorted(set(jobs[child].needs)))))
                    advanced = True
                    break
            if not advanced:
                color[node] = BLACK
                path.pop()
                stack.pop()
    return None
