# runner.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import structlog

from . import settings
from .cache import CacheStore
from .config import load_config
from .dag import build_dag
from .errors import CacheError, ConfigError
from .executor import Executor
from .model import Job, RunTable
from .registry import JobRegistry
from .scheduler import Scheduler
from .ui.console import Console, get_console
from .workspace import Workspace

logger = structlog.get_logger(__name__)

YAML_SUFFIXES = (".yml", ".yaml")


# ----------------------------------------------------------------------
# Workflow loading
# ----------------------------------------------------------------------

def _load_python_workflow(wf_path: Path) -> List[Job]:
    """
    The file must define either:
      - workflow() -> List[Job]
      - JOBS = [Job, ...]
    """
    module_name = f"dagci_workflow_{wf_path.stem}"
    jobs = None
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
        if "workflow" in globals_dict and callable(globals_dict["workflow"]):
            jobs = globals_dict["workflow"]()
        elif "JOBS" in globals_dict:
            jobs = globals_dict["JOBS"]
    except ValueError as e:
        # DSL helpers raise ValueError for malformed jobs
        raise ConfigError(f"Invalid workflow {wf_path.name}: {e}") from e

    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise ConfigError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...]."
        )
    return jobs


def load_workflow(path: str | Path, *, workflow: str | None = None) -> Tuple[str, List[Job]]:
    """
    Load jobs from a YAML config or a Python workflow file.

    Returns (workflow_name, jobs).
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise ConfigError(f"Config file not found: {wf_path}")

    if wf_path.suffix in YAML_SUFFIXES:
        return load_config(wf_path, workflow=workflow)
    if wf_path.suffix == ".py":
        return wf_path.stem, _load_python_workflow(wf_path)
    raise ConfigError(f"Unsupported config type {wf_path.suffix!r}: use .yml, .yaml or .py")


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def prepare(jobs: Iterable[Job], only: Optional[Iterable[str]] = None):
    """Register and validate jobs. Raises ConfigError before anything runs."""
    registry = JobRegistry(jobs)
    if only:
        registry = registry.select(only)
    return build_dag(registry)


def run_pipeline(
    jobs: Iterable[Job],
    *,
    repo_root: str | Path = ".",
    cache_root: str | Path | None = None,
    workspace_root: str | Path | None = None,
    max_workers: int | None = None,
    fail_fast: bool = False,
    use_docker: bool = False,
    use_cache: bool = True,
    cache_keep: int | None = None,
    only: Optional[Iterable[str]] = None,
    console: Optional[Console] = None,
) -> RunTable:
    console = console or get_console()
    graph = prepare(jobs, only=only)
    root = Path(repo_root).resolve()

    cache: Optional[CacheStore] = None
    if use_cache:
        try:
            cache = CacheStore(root / (cache_root or settings.CACHE_DIR))
        except CacheError as e:
            logger.warning("cache_unavailable", error=e.message)

    workspace = Workspace(root / (workspace_root or settings.WORKSPACE_DIR))
    workspace.reset()

    executor = Executor(
        workspace=workspace,
        cache=cache,
        repo_root=root,
        use_docker=use_docker,
        cache_keep=settings.CACHE_KEEP if cache_keep is None else cache_keep,
        console=console,
    )
    scheduler = Scheduler(
        graph,
        executor.run_job,
        max_workers=max_workers or settings.WORKERS,
        fail_fast=fail_fast,
        console=console,
    )
    logger.debug("pipeline_started", jobs=len(graph.jobs), workers=scheduler.max_workers)
    runs = scheduler.run()
    logger.debug("pipeline_finished", statuses=runs.statuses())
    return runs
