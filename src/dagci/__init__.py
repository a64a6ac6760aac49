from .dsl import (
    attach_workspace,
    build,
    checkout,
    job,
    matrix,
    persist_to_workspace,
    restore_cache,
    save_cache,
    sh,
    wf,
    JobBuilder,
)
from .errors import CIError, CacheError, ConfigError, StepFailure, StepTimeout
from .model import Job, Run, RunStatus, RunTable, Step, StepKind
from .runner import load_workflow, run_pipeline

__all__ = [
    "attach_workspace",
    "build",
    "checkout",
    "job",
    "matrix",
    "persist_to_workspace",
    "restore_cache",
    "save_cache",
    "sh",
    "wf",
    "JobBuilder",
    "CIError",
    "CacheError",
    "ConfigError",
    "StepFailure",
    "StepTimeout",
    "Job",
    "Run",
    "RunStatus",
    "RunTable",
    "Step",
    "StepKind",
    "load_workflow",
    "run_pipeline",
]
