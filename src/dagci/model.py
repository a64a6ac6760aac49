# model.py
from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, Iterator, Optional, Tuple


class StepKind(str, Enum):
    RUN = "run"
    CHECKOUT = "checkout"
    RESTORE_CACHE = "restore_cache"
    SAVE_CACHE = "save_cache"
    PERSIST_TO_WORKSPACE = "persist_to_workspace"
    ATTACH_WORKSPACE = "attach_workspace"


@dataclass(frozen=True)
class Step:
    """
    A single step inside a CI job.

    Only `run` steps carry a shell command. The cache and workspace kinds
    use `keys` / `paths` / `root` instead.
    """
    name: str
    run: str = ""
    kind: StepKind = StepKind.RUN
    cwd: str | None = None

    # seconds without any output before the step is killed
    no_output_timeout: float | None = None
    # number of trailing output lines kept on the Run record
    keep_output: int | None = None

    keys: Tuple[str, ...] = ()
    paths: Tuple[str, ...] = ()
    root: str = "."


@dataclass(frozen=True)
class Job:
    """
    A CI job: steps + dependencies + execution environment.

    Jobs are immutable once registered; `needs` holds the names of jobs
    that must succeed before this one starts.
    """
    name: str
    steps: Tuple[Step, ...]
    needs: Tuple[str, ...] = ()

    resource_class: str = "medium"
    image: str | None = None
    working_directory: str = "."
    env: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    def __post_init__(self) -> None:
        # accept lists from callers, store tuples
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "needs", tuple(self.needs))


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.SKIPPED)


@dataclass
class Run:
    """One execution attempt of a job."""
    job: str
    status: RunStatus = RunStatus.PENDING
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    current_step: Optional[str] = None
    error: Optional[BaseException] = None
    skip_reason: Optional[str] = None
    output: Deque[str] = field(default_factory=deque)

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def set_step(self, name: str) -> None:
        self.current_step = name

    def add_output(self, lines) -> None:
        self.output.extend(lines)

    def mark_running(self) -> None:
        self.status = RunStatus.RUNNING
        self.started_at = time.monotonic()

    def mark_succeeded(self) -> None:
        self.status = RunStatus.SUCCEEDED
        self.current_step = None
        self.finished_at = time.monotonic()

    def mark_failed(self, error: BaseException) -> None:
        self.status = RunStatus.FAILED
        self.error = error
        self.finished_at = time.monotonic()

    def mark_skipped(self, reason: str) -> None:
        self.status = RunStatus.SKIPPED
        self.skip_reason = reason


class RunTable:
    """
    Run records keyed by job name.

    Shared by reference between the scheduler and the executors; every
    write (status, current step, output) goes through `transition` so readers
    never see a torn update.
    """

    def __init__(self, job_names):
        self._lock = threading.Lock()
        self._runs: Dict[str, Run] = {name: Run(job=name) for name in job_names}

    def __getitem__(self, name: str) -> Run:
        return self._runs[name]

    def __contains__(self, name: str) -> bool:
        return name in self._runs

    def __iter__(self) -> Iterator[str]:
        return iter(self._runs)

    def __len__(self) -> int:
        return len(self._runs)

    def runs(self) -> list[Run]:
        return list(self._runs.values())

    def transition(self, name: str, method: str, *args) -> None:
        with self._lock:
            getattr(self._runs[name], method)(*args)

    def count(self, status: RunStatus) -> int:
        with self._lock:
            return sum(1 for r in self._runs.values() if r.status is status)

    def all_terminal(self) -> bool:
        with self._lock:
            return all(r.status.terminal for r in self._runs.values())

    def succeeded(self) -> bool:
        with self._lock:
            return all(r.status is RunStatus.SUCCEEDED for r in self._runs.values())

    def statuses(self) -> Dict[str, str]:
        with self._lock:
            return {name: r.status.value for name, r in self._runs.items()}
