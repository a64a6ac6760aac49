# config.py
from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .model import Job, Step, StepKind

logger = structlog.get_logger(__name__)

_DURATION_RE = re.compile(r"^(?:(?P<h>\d+)h)?(?:(?P<m>\d+)m)?(?:(?P<s>\d+)s)?$")


def parse_duration(value: Union[str, int, float, None]) -> Optional[float]:
    """'15m' -> 900.0, '1h30m' -> 5400.0, '45' / 45 -> 45.0"""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip()
        try:
            seconds = float(text)
        except ValueError:
            m = _DURATION_RE.match(text)
            if not text or not m:
                raise ValueError(f"invalid duration: {value!r}") from None
            seconds = float(
                int(m.group("h") or 0) * 3600 + int(m.group("m") or 0) * 60 + int(m.group("s") or 0)
            )
    if seconds <= 0:
        raise ValueError(f"duration must be positive: {value!r}")
    return seconds


# -------------------- Schemas --------------------

class _Spec(BaseModel):
    model_config = ConfigDict(extra="ignore")


class DockerImage(_Spec):
    image: str


class RunSpec(_Spec):
    command: str
    name: Optional[str] = None
    no_output_timeout: Optional[float] = None
    keep_output: Optional[int] = Field(default=None, ge=0)
    working_directory: Optional[str] = None

    @field_validator("no_output_timeout", mode="before")
    @classmethod
    def _duration(cls, v):
        return parse_duration(v)


class RestoreCacheSpec(_Spec):
    name: Optional[str] = None
    key: Optional[str] = None
    keys: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _has_key(self):
        if not self.key and not self.keys:
            raise ValueError("restore_cache needs `key` or `keys`")
        return self

    def all_keys(self) -> List[str]:
        return ([self.key] if self.key else []) + list(self.keys)


class SaveCacheSpec(_Spec):
    name: Optional[str] = None
    key: str
    paths: List[str] = Field(min_length=1)


class PersistSpec(_Spec):
    name: Optional[str] = None
    root: str = "."
    paths: List[str] = Field(min_length=1)


class AttachSpec(_Spec):
    name: Optional[str] = None
    at: str = "."


class JobSpec(_Spec):
    docker: List[DockerImage] = Field(default_factory=list)
    working_directory: str = "."
    resource_class: str = "medium"
    environment: Dict[str, str] = Field(default_factory=dict)
    steps: List[Any] = Field(min_length=1)

    @field_validator("environment", mode="before")
    @classmethod
    def _stringify_env(cls, v):
        if isinstance(v, dict):
            return {str(k): "" if val is None else str(val) for k, val in v.items()}
        return v


class WorkflowJobRef(_Spec):
    requires: List[str] = Field(default_factory=list)


class WorkflowSpec(_Spec):
    jobs: List[Union[str, Dict[str, Optional[WorkflowJobRef]]]] = Field(min_length=1)


class PipelineConfig(_Spec):
    version: Union[int, float, str] = 2
    jobs: Dict[str, JobSpec] = Field(min_length=1)
    workflows: Dict[str, Any] = Field(default_factory=dict)

    def workflow_specs(self) -> Dict[str, WorkflowSpec]:
        # `workflows.version` sits next to the workflow definitions
        return {
            name: WorkflowSpec.model_validate(body)
            for name, body in self.workflows.items()
            if name != "version"
        }


# -------------------- Step parsing --------------------

_STEP_SPECS = {
    "restore_cache": RestoreCacheSpec,
    "save_cache": SaveCacheSpec,
    "persist_to_workspace": PersistSpec,
    "attach_workspace": AttachSpec,
}


def _default_run_name(command: str) -> str:
    first = command.strip().splitlines()[0] if command.strip() else command
    return first if len(first) <= 60 else first[:57] + "..."


def parse_step(raw: Any) -> Step:
    """
    Convert one raw YAML step into a Step.

    Accepted shapes:
      checkout
      run: <command>
      run: {command, name, no_output_timeout, keep_output, working_directory}
      restore_cache: {key | keys}
      save_cache: {key, paths}
      persist_to_workspace: {root, paths}
      attach_workspace: {at}
    """
    if isinstance(raw, str):
        if raw == "checkout":
            return Step(name="Checkout code", kind=StepKind.CHECKOUT)
        raise ValueError(f"unknown step: {raw!r}")

    if not isinstance(raw, dict) or len(raw) != 1:
        raise ValueError(f"step must be a string or a single-key mapping, got: {raw!r}")

    kind, body = next(iter(raw.items()))

    if kind == "checkout":
        return Step(name="Checkout code", kind=StepKind.CHECKOUT)

    if kind == "run":
        spec = RunSpec(command=body) if isinstance(body, str) else RunSpec.model_validate(body)
        return Step(
            name=spec.name or _default_run_name(spec.command),
            run=spec.command,
            cwd=spec.working_directory,
            no_output_timeout=spec.no_output_timeout,
            keep_output=spec.keep_output,
        )

    if kind not in _STEP_SPECS:
        raise ValueError(f"unknown step type: {kind!r}")

    spec = _STEP_SPECS[kind].model_validate(body or {})
    if isinstance(spec, RestoreCacheSpec):
        return Step(name=spec.name or "Restoring cache", kind=StepKind.RESTORE_CACHE, keys=tuple(spec.all_keys()))
    if isinstance(spec, SaveCacheSpec):
        return Step(name=spec.name or "Saving cache", kind=StepKind.SAVE_CACHE, keys=(spec.key,), paths=tuple(spec.paths))
    if isinstance(spec, PersistSpec):
        return Step(
            name=spec.name or "Persisting to workspace",
            kind=StepKind.PERSIST_TO_WORKSPACE,
            root=spec.root,
            paths=tuple(spec.paths),
        )
    return Step(name=spec.name or "Attaching workspace", kind=StepKind.ATTACH_WORKSPACE, root=spec.at)


def _build_job(name: str, spec: JobSpec, needs: List[str]) -> Job:
    steps: List[Step] = []
    for idx, raw in enumerate(spec.steps):
        try:
            steps.append(parse_step(raw))
        except (ValueError, ValidationError) as e:
            raise ConfigError(
                f"Job '{name}' step #{idx + 1} is invalid: {e}",
                job=name,
            ) from e
    return Job(
        name=name,
        steps=steps,
        needs=needs,
        resource_class=spec.resource_class,
        image=spec.docker[0].image if spec.docker else None,
        working_directory=spec.working_directory,
        env=spec.environment,
    )


# -------------------- Loading --------------------

def parse_config(data: Any, *, workflow: str | None = None) -> Tuple[str, List[Job]]:
    """
    Build jobs from an already-parsed config mapping.

    Returns (workflow_name, jobs). Only jobs listed in the selected workflow
    are returned, carrying that workflow's `requires` edges. Without a
    workflows section every job is returned with no edges.
    """
    if not isinstance(data, dict):
        raise ConfigError("Config must be a mapping with a `jobs` section")

    try:
        cfg = PipelineConfig.model_validate(data)
        workflows = cfg.workflow_specs()
    except ValidationError as e:
        raise ConfigError(
            "Config failed validation",
            details={"errors": "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )},
        ) from e

    if not workflows:
        if workflow is not None:
            raise ConfigError(f"Workflow '{workflow}' not found: config has no workflows")
        return "default", [_build_job(n, s, []) for n, s in cfg.jobs.items()]

    if workflow is None:
        workflow = next(iter(workflows))
    elif workflow not in workflows:
        raise ConfigError(f"Workflow '{workflow}' not found. Known workflows: {sorted(workflows)}")

    jobs: List[Job] = []
    for entry in workflows[workflow].jobs:
        if isinstance(entry, str):
            name, ref = entry, None
        else:
            if len(entry) != 1:
                raise ConfigError(f"Workflow '{workflow}' entry must name exactly one job: {entry!r}")
            name, ref = next(iter(entry.items()))
        if name not in cfg.jobs:
            raise ConfigError(
                f"Workflow '{workflow}' references undefined job '{name}'",
                details={"known_jobs": sorted(cfg.jobs)},
            )
        jobs.append(_build_job(name, cfg.jobs[name], list(ref.requires) if ref else []))

    unused = sorted(set(cfg.jobs) - {j.name for j in jobs})
    if unused:
        logger.debug("jobs_not_in_workflow", workflow=workflow, jobs=unused)
    return workflow, jobs


def load_config(path: str | Path, *, workflow: str | None = None) -> Tuple[str, List[Job]]:
    """Load a YAML pipeline file. See `parse_config`."""
    cfg_path = Path(path).expanduser()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")
    try:
        with cfg_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {cfg_path}: {e}") from e
    return parse_config(data, workflow=workflow)
