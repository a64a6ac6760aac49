# dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from .model import Job, Step, StepKind


def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    no_output_timeout: float | None = None,
    keep_output: int | None = None,
) -> Step:
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        no_output_timeout=no_output_timeout,
        keep_output=keep_output,
    )


def checkout() -> Step:
    return Step(name="Checkout code", kind=StepKind.CHECKOUT)


def restore_cache(*keys: str, name: str = "Restoring cache") -> Step:
    if not keys:
        raise ValueError("restore_cache() needs at least one key")
    return Step(name=name, kind=StepKind.RESTORE_CACHE, keys=tuple(keys))


def save_cache(key: str, paths: Iterable[str], *, name: str = "Saving cache") -> Step:
    return Step(name=name, kind=StepKind.SAVE_CACHE, keys=(key,), paths=tuple(paths))


def persist_to_workspace(paths: Iterable[str], *, root: str = ".", name: str = "Persisting to workspace") -> Step:
    return Step(name=name, kind=StepKind.PERSIST_TO_WORKSPACE, root=root, paths=tuple(paths))


def attach_workspace(at: str = ".", *, name: str = "Attaching workspace") -> Step:
    return Step(name=name, kind=StepKind.ATTACH_WORKSPACE, root=at)


def job(
    name: str,
    *steps: Step,  # allow job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # still allow job(..., steps_list=[...])
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    resource_class: str = "medium",
    image: str | None = None,
    working_directory: str = ".",
    cwd: str | None = None,  # default cwd for run steps
) -> Job:
    steps_final = list(steps_list or []) + list(steps)

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            s if s.cwd is not None or s.kind is not StepKind.RUN else replace(s, cwd=cwd)
            for s in steps_final
        ]

    return Job(
        name=name,
        steps=steps_final,
        needs=needs or [],
        env={k: str(v) for k, v in (env or {}).items()},
        resource_class=resource_class,
        image=image,
        working_directory=working_directory,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._resource_class = "medium"
        self._image: str | None = None
        self._working_directory = "."

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def step(self, name: str, run: str, cwd: str | None = None, **opts):
        self._steps.append(sh(name, run, cwd=cwd, **opts))
        return self

    def add(self, *steps: Step):
        self._steps.extend(steps)
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def in_docker(self, image: str):
        self._image = image
        return self

    def resource(self, resource_class: str):
        self._resource_class = resource_class
        return self

    def workdir(self, path: str):
        self._working_directory = path
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            env=dict(self._env),
            resource_class=self._resource_class,
            image=self._image,
            working_directory=self._working_directory,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander for test variants.

    Example:
        matrix("profile", ["debug", "release"]).jobs(
            lambda v: job(f"test-{v}", sh(...), needs=["fetch"])
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Job | List[Job]) -> List[Job]:
    """
    Workflow definition helper. Lists (e.g. from a matrix) are flattened.

    Users can write:
        from dagci import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    out: List[Job] = []
    for j in jobs:
        if isinstance(j, list):
            out.extend(j)
        else:
            out.append(j)
    return out
