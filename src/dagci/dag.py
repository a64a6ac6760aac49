# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Set

from .errors import ConfigError
from .model import Job


@dataclass(frozen=True)
class Graph:
    """
    Validated job graph.

    `adj` maps a job to the jobs that need it (dep -> dependents),
    `indeg` counts the direct dependencies of each job.
    """
    jobs: Dict[str, Job]
    adj: Dict[str, Set[str]]
    indeg: Dict[str, int]

    def dependencies(self, name: str) -> Set[str]:
        return set(self.jobs[name].needs)

    def dependents(self, name: str) -> Set[str]:
        """All jobs that transitively need `name`."""
        seen: Set[str] = set()
        q = deque(self.adj.get(name, ()))
        while q:
            node = q.popleft()
            if node in seen:
                continue
            seen.add(node)
            q.extend(self.adj.get(node, ()))
        return seen

    def roots(self) -> List[str]:
        return [n for n, d in self.indeg.items() if d == 0]


def _find_cycle(jobs: Dict[str, Job]) -> List[str] | None:
    """Depth-first search; returns the first cycle found as a path of names."""
    WHITE, GREY, BLACK = 0, 1, 2
    color = {name: WHITE for name in jobs}
    parent: Dict[str, str] = {}

    for start in jobs:
        if color[start] != WHITE:
            continue
        # iterative DFS so deep graphs don't hit the recursion limit
        stack = [(start, iter(jobs[start].needs))]
        color[start] = GREY
        while stack:
            node, deps = stack[-1]
            dep = next(deps, None)
            if dep is None:
                color[node] = BLACK
                stack.pop()
                continue
            if color[dep] == GREY:
                cycle = [dep, node]
                cur = node
                while cur != dep:
                    cur = parent[cur]
                    cycle.append(cur)
                cycle.reverse()
                return cycle
            if color[dep] == WHITE:
                parent[dep] = node
                color[dep] = GREY
                stack.append((dep, iter(jobs[dep].needs)))
    return None


def build_dag(jobs: Iterable[Job]) -> Graph:
    """
    Build and validate a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: names of jobs that must run BEFORE this job

    Raises ConfigError naming the offending edge on duplicate names,
    self-reference, missing references or cycles.
    """
    jobs = list(jobs)
    by_name: Dict[str, Job] = {}
    for job in jobs:
        if job.name in by_name:
            raise ConfigError(f"Duplicate job name: {job.name}", job=job.name)
        by_name[job.name] = job

    adj: Dict[str, Set[str]] = {n: set() for n in by_name}
    indeg: Dict[str, int] = {n: 0 for n in by_name}

    for job in jobs:
        for dep in job.needs:
            if dep == job.name:
                raise ConfigError(
                    f"Job '{job.name}' requires itself",
                    job=job.name,
                    details={"edge": f"{dep} -> {job.name}"},
                )
            if dep not in by_name:
                raise ConfigError(
                    f"Job '{job.name}' requires missing job '{dep}'. "
                    f"Known jobs: {sorted(by_name)}",
                    job=job.name,
                    details={"edge": f"{dep} -> {job.name}"},
                )
            # Edge dep -> job.name (dep must run before job)
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

    cycle = _find_cycle(by_name)
    if cycle:
        # cycle is ordered along `needs`, so reverse pairs give run-order edges
        edge = f"{cycle[1]} -> {cycle[0]}"
        raise ConfigError(
            f"Workflow has a cycle: {' -> '.join(cycle)}",
            details={"edge": edge},
        )

    return Graph(jobs=by_name, adj=adj, indeg=indeg)


def topo_levels(graph: Graph) -> List[List[str]]:
    """
    Convert the DAG into topological "levels" (stages).
    Each stage can run in parallel.
    """
    indeg = dict(graph.indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    while q:
        level: List[str] = []
        for _ in range(len(q)):
            node = q.popleft()
            level.append(node)
            for child in sorted(graph.adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)
        levels.append(level)

    return levels
