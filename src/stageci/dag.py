# dag.py
from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING, Dict, Iterable, List, Set

from .errors import (
    ConfigurationError,
    CycleDetectedError,
    DanglingDependencyError,
    DuplicateJobError,
)
from .model import Job, JobStatus

if TYPE_CHECKING:
    from .run import Run


class JobGraph:
    """
    Jobs keyed by name plus the derived reverse edges (job -> direct dependents).

    Topology is frozen by validate(); statuses live in the Run, never here.
    """

    def __init__(self, name: str = "pipeline"):
        self.name = name
        self._jobs: Dict[str, Job] = {}
        self._dependents: Dict[str, Set[str]] = {}
        self._validated = False

    # ---- construction ----

    def add_job(self, job: Job) -> None:
        if self._validated:
            raise ConfigurationError(f"Graph '{self.name}' is already validated; cannot add job '{job.name}'")
        if job.name in self._jobs:
            raise DuplicateJobError(job.name)
        self._jobs[job.name] = job

    def validate(self) -> None:
        """
        Resolve every dependency and reject cycles.

        Raises:
          DanglingDependencyError: a job needs a job that is not in the graph
          CycleDetectedError: the dependency relation is not acyclic
        """
        known = sorted(self._jobs)
        dependents: Dict[str, Set[str]] = {n: set() for n in self._jobs}
        for job in self._jobs.values():
            for dep in job.needs:
                if dep not in self._jobs:
                    raise DanglingDependencyError(job.name, dep, known)
                # Edge dep -> job (dep must finish before job)
                dependents[dep].add(job.name)

        cycle = self._find_cycle()
        if cycle:
            raise CycleDetectedError(cycle)

        self._dependents = dependents
        self._validated = True

    def _find_cycle(self) -> List[str]:
        """Iterative DFS over `needs` edges with an explicit recursion stack."""
        WHITE, GREY, BLACK = 0, 1, 2
        color = {n: WHITE for n in self._jobs}

        for root in self._jobs:
            if color[root] != WHITE:
                continue
            stack: List[str] = [root]
            iters = {root: iter(self._jobs[root].needs)}
            color[root] = GREY

            while stack:
                node = stack[-1]
                nxt = next(iters[node], None)
                if nxt is None:
                    color[node] = BLACK
                    stack.pop()
                    continue
                if color[nxt] == GREY:
                    # stack holds dependents before their needs; reverse so the
                    # cycle reads in run order (dependency first)
                    members = stack[stack.index(nxt):]
                    return list(reversed(members))
                if color[nxt] == WHITE:
                    color[nxt] = GREY
                    iters[nxt] = iter(self._jobs[nxt].needs)
                    stack.append(nxt)
        return []

    # ---- queries ----

    def __contains__(self, name: object) -> bool:
        return name in self._jobs

    def __iter__(self):
        return iter(self._jobs.values())

    def __len__(self) -> int:
        return len(self._jobs)

    @property
    def names(self) -> List[str]:
        return list(self._jobs)

    @property
    def validated(self) -> bool:
        return self._validated

    def job(self, name: str) -> Job:
        return self._jobs[name]

    def dependencies(self, name: str) -> tuple[str, ...]:
        return self._jobs[name].needs

    def dependents(self, name: str) -> List[str]:
        """Direct dependents in definition order."""
        deps = self._dependents.get(name, set())
        return [n for n in self._jobs if n in deps]

    def ancestors(self, name: str) -> Set[str]:
        """Every job `name` transitively needs."""
        seen: Set[str] = set()
        stack = list(self._jobs[name].needs)
        while stack:
            current = stack.pop()
            if current not in seen:
                seen.add(current)
                stack.extend(self._jobs[current].needs)
        return seen

    def dependencies_terminal(self, name: str, run: Run) -> bool:
        return all(run.status(d).terminal for d in self._jobs[name].needs)

    def ready_jobs(self, run: Run) -> List[Job]:
        """Scheduling frontier: pending/ready jobs whose dependencies are all terminal."""
        return [
            job
            for job in self._jobs.values()
            if run.status(job.name) in (JobStatus.PENDING, JobStatus.READY)
            and self.dependencies_terminal(job.name, run)
        ]

    def topo_levels(self) -> List[List[str]]:
        """
        Convert the DAG into topological "levels" (stages).
        Jobs in one level have no edge between them and can run in parallel.
        """
        indeg = {n: len(set(j.needs)) for n, j in self._jobs.items()}
        q = deque(n for n, d in indeg.items() if d == 0)

        levels: List[List[str]] = []
        while q:
            level: List[str] = []
            for _ in range(len(q)):
                node = q.popleft()
                level.append(node)
                for child in self.dependents(node):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
            levels.append(level)
        return levels


def build_graph(jobs: Iterable[Job], name: str = "pipeline") -> JobGraph:
    """Add every job and validate in one go."""
    graph = JobGraph(name)
    for job in jobs:
        graph.add_job(job)
    graph.validate()
    return graph
