# errors.py
from __future__ import annotations

from typing import Dict, Optional


class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - debugging without full tracebacks
    """

    kind = "ci_error"

    def __init__(
        self,
        message: str,
        *,
        job: str | None = None,
        step: str | None = None,
        details: Optional[Dict[str, object]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.job = job
        self.step = step
        self.details = dict(details or {})

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigError(CIError):
    """Malformed pipeline file or job graph. Raised before any job runs."""

    kind = "config_error"


class StepFailure(CIError):
    kind = "step_failure"

    def __init__(self, job: str, step: str, cmd: str, exit_code: int, output: str = ""):
        super().__init__(
            f"step '{step}' failed (exit={exit_code}): {cmd}",
            job=job,
            step=step,
        )
        self.cmd = cmd
        self.exit_code = exit_code
        self.output = output


class StepTimeout(CIError, TimeoutError):
    """A step produced no output within its `no_output_timeout`."""

    kind = "timeout"

    def __init__(self, job: str, step: str, cmd: str, timeout: float):
        super().__init__(
            f"step '{step}' produced no output for {timeout:g}s: {cmd}",
            job=job,
            step=step,
            details={"no_output_timeout": f"{timeout:g}s"},
        )
        self.cmd = cmd
        self.timeout = timeout


class CacheError(CIError):
    """Cache store/fetch failure. Callers log it and treat it as a miss."""

    kind = "cache_error"
