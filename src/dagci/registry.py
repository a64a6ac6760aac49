# registry.py
from __future__ import annotations

from typing import Dict, Iterable, Iterator, List

from .errors import ConfigError
from .model import Job


class JobRegistry:
    """Holds job definitions by name, in registration order."""

    def __init__(self, jobs: Iterable[Job] = ()):
        self._jobs: Dict[str, Job] = {}
        for job in jobs:
            self.register(job)

    def register(self, job: Job) -> Job:
        if not job.name:
            raise ConfigError("Job name must not be empty")
        if job.name in self._jobs:
            raise ConfigError(f"Duplicate job name: {job.name}", job=job.name)
        if not job.steps:
            raise ConfigError(f"Job '{job.name}' has no steps", job=job.name)
        self._jobs[job.name] = job
        return job

    def get(self, name: str) -> Job:
        try:
            return self._jobs[name]
        except KeyError:
            raise ConfigError(
                f"Unknown job '{name}'. Known jobs: {sorted(self._jobs)}"
            ) from None

    def select(self, names: Iterable[str]) -> "JobRegistry":
        """
        Registry restricted to `names` plus everything they transitively need.
        """
        keep: List[str] = []
        stack = list(names)
        while stack:
            name = stack.pop()
            if name in keep:
                continue
            keep.append(name)
            stack.extend(self.get(name).needs)
        return JobRegistry(j for j in self if j.name in keep)

    def names(self) -> List[str]:
        return list(self._jobs)

    def __contains__(self, name: str) -> bool:
        return name in self._jobs

    def __iter__(self) -> Iterator[Job]:
        return iter(self._jobs.values())

    def __len__(self) -> int:
        return len(self._jobs)
