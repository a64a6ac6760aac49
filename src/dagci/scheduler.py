# scheduler.py
from __future__ import annotations

import os
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Deque, Dict, Optional, Set

import structlog

from .dag import Graph
from .model import Job, RunStatus, RunTable
from .ui.console import Console, get_console

logger = structlog.get_logger(__name__)

RunFn = Callable[[Job, RunTable], None]


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Scheduler:
    """
    Dispatches ready jobs onto a bounded thread pool.

    A job is ready once every job it needs has succeeded. When a job fails,
    jobs already running keep going, but everything that transitively needs
    the failed job is marked skipped. With `fail_fast`, nothing new is
    dispatched after the first failure.
    """

    def __init__(
        self,
        graph: Graph,
        run_fn: RunFn,
        *,
        max_workers: int | None = None,
        fail_fast: bool = False,
        console: Optional[Console] = None,
    ):
        if max_workers is not None and max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.graph = graph
        self.run_fn = run_fn
        self.max_workers = max_workers or default_workers()
        self.fail_fast = fail_fast
        self.console = console or get_console()

    def run(self, runs: Optional[RunTable] = None) -> RunTable:
        runs = runs if runs is not None else RunTable(self.graph.jobs)
        waiting: Dict[str, Set[str]] = {
            name: self.graph.dependencies(name) for name in self.graph.jobs
        }
        ready: Deque[str] = deque(sorted(n for n, deps in waiting.items() if not deps))
        in_flight: Dict[Future, str] = {}
        failed = False

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="dagci") as pool:
            while ready or in_flight:
                # schedule ready jobs up to the concurrency ceiling
                while ready and len(in_flight) < self.max_workers and not (self.fail_fast and failed):
                    name = ready.popleft()
                    fut = pool.submit(self.run_fn, self.graph.jobs[name], runs)
                    in_flight[fut] = name

                if not in_flight:
                    break

                # wait for at least one completion, then loop to schedule newly-ready jobs
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    try:
                        fut.result()
                    except Exception as e:
                        if runs[name].status is not RunStatus.FAILED:
                            runs.transition(name, "mark_failed", e)
                        logger.debug("job_raised", job=name, error=repr(e))
                    else:
                        if not runs[name].status.terminal:
                            runs.transition(name, "mark_succeeded")

                    if runs[name].status is RunStatus.SUCCEEDED:
                        for child in sorted(self.graph.adj[name]):
                            waiting[child].discard(name)
                            if not waiting[child] and runs[child].status is RunStatus.PENDING:
                                ready.append(child)
                    else:
                        failed = True
                        self._skip_dependents(name, runs)

        for name in self.graph.jobs:
            if runs[name].status is RunStatus.PENDING:
                self._skip(name, runs, "not scheduled after an earlier failure")

        return runs

    def _skip_dependents(self, name: str, runs: RunTable) -> None:
        for dep in sorted(self.graph.dependents(name)):
            if runs[dep].status is RunStatus.PENDING:
                self._skip(dep, runs, f"upstream job '{name}' failed")

    def _skip(self, name: str, runs: RunTable, reason: str) -> None:
        runs.transition(name, "mark_skipped", reason)
        self.console.print_job_skipped(name, reason)
        logger.info("job_skipped", job=name, reason=reason)
