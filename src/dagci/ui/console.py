"""Console output formatting utilities for dagci."""

from __future__ import annotations

import sys
import threading
import traceback
from typing import Iterable, List, Optional

from ..model import Run, RunStatus


class Console:
    """Centralized console output formatting.

    Jobs run on worker threads, so every write takes a lock to keep lines
    from different jobs from interleaving mid-line.
    """

    def __init__(self, debug: bool = False, stream=None, show_output: bool = True):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Where progress is written (defaults to stdout)
            show_output: If False, step output is not echoed
        """
        self.debug = debug
        self.show_output = show_output
        self._stream = stream
        self._lock = threading.Lock()

    @property
    def stream(self):
        return self._stream or sys.stdout

    def _emit(self, *lines: str, err: bool = False) -> None:
        out = sys.stderr if err else self.stream
        with self._lock:
            for line in lines:
                print(line, file=out)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(self, config: str, workflow: str, job_count: int, workers: int) -> None:
        """Print run start information."""
        self._emit(
            "\nRUN STARTED",
            f"Config: {config}",
            f"Workflow: {workflow}",
            f"Jobs: {job_count}",
            f"Workers: {workers}",
            "",
        )

    def print_plan(self, levels: List[List[str]]) -> None:
        for idx, level in enumerate(levels, start=1):
            self._emit(f"=== Stage {idx}: {', '.join(level)} ===")

    def print_job_start(self, name: str) -> None:
        self._emit(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        self._emit(f"[{job}] STEP: {name}")

    def print_output(self, job: str, line: str) -> None:
        if self.show_output:
            self._emit(f"[{job}] {line}")

    def print_success(self, name: str) -> None:
        self._emit(f"[{name}] STATUS: success")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._emit(*lines)

    def print_cache_hit(self, job: str, reason: str) -> None:
        self._emit(f"[{job}] CACHE: hit ({reason})")

    def print_cache_miss(self, job: str) -> None:
        self._emit(f"[{job}] CACHE: miss")

    def print_cache_saved(self, job: str, key: str) -> None:
        short_key = key[:40] + "..." if len(key) > 40 else key
        self._emit(f"[{job}] CACHE: saved ({short_key})")

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._emit(f"\nJOB SKIPPED: {name} ({reason})")

    def print_results(self, runs: Iterable[Run]) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for run in runs:
            status = run.status.value.upper()
            extra = ""
            if run.status is RunStatus.SKIPPED and run.skip_reason:
                extra = f" ({run.skip_reason})"
            elif run.duration is not None:
                extra = f" ({run.duration:.1f}s)"
            lines.append(f"  {run.job}: {status}{extra}")
        self._emit(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            self._emit(
                "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
                err=True,
            )
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._emit(message)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
