# executor.py
from __future__ import annotations

import os
import queue
import re
import signal
import subprocess
import threading
import uuid
from collections import deque
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from .cache import CacheStore, render_cache_key
from .errors import CacheError, StepFailure, StepTimeout
from .model import Job, RunTable, Step, StepKind
from .ui.console import Console, get_console
from .workspace import Workspace

logger = structlog.get_logger(__name__)

# trailing output lines kept per step when the step sets no policy
DEFAULT_KEEP_OUTPUT = 200

_EOF = object()


def _pump(stream, q: "queue.Queue") -> None:
    try:
        for line in stream:
            q.put(line)
    finally:
        q.put(_EOF)


def _container_name(job: Job) -> str:
    safe = re.sub(r"[^a-zA-Z0-9_.-]", "-", job.name)
    return f"dagci-{safe}-{uuid.uuid4().hex[:8]}"


def _kill(proc: subprocess.Popen, container: Optional[str] = None) -> None:
    """Kill the step's process group, and its container if it runs in one."""
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    else:
        proc.kill()

    if container:
        # killing the docker client leaves the container running
        try:
            subprocess.run(
                ["docker", "rm", "-f", container],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        except OSError as e:
            logger.warning("container_remove_failed", container=container, error=str(e))


class Executor:
    """
    Runs one job's steps sequentially.

    The first failing step aborts the job. Status changes are written to the
    shared RunTable; the exception that failed the job is re-raised so the
    scheduler sees it.
    """

    def __init__(
        self,
        *,
        workspace: Workspace,
        cache: Optional[CacheStore] = None,
        repo_root: str | Path = ".",
        use_docker: bool = False,
        cache_keep: int | None = None,
        console: Optional[Console] = None,
    ):
        self.workspace = workspace
        self.cache = cache
        self.repo_root = Path(repo_root).resolve()
        self.use_docker = use_docker
        self.cache_keep = cache_keep
        self.console = console or get_console()

    # ------------------------------------------------------------------
    # job level
    # ------------------------------------------------------------------

    def workdir(self, job: Job) -> Path:
        return (self.repo_root / job.working_directory).resolve()

    def run_job(self, job: Job, runs: RunTable) -> None:
        log = logger.bind(job=job.name)
        runs.transition(job.name, "mark_running")
        self.console.print_job_start(job.name)
        log.debug("job_started", resource_class=job.resource_class, image=job.image)

        try:
            for step in job.steps:
                runs.transition(job.name, "set_step", step.name)
                self.console.print_step(job.name, step.name)
                self.run_step(job, step, runs)
        except Exception as e:
            runs.transition(job.name, "mark_failed", e)
            self.console.print_failure(
                job.name,
                str(e),
                exit_code=getattr(e, "exit_code", None),
                is_job=True,
            )
            log.info("job_failed", error=type(e).__name__)
            raise

        runs.transition(job.name, "mark_succeeded")
        self.console.print_success(job.name)
        log.debug("job_succeeded", duration=runs[job.name].duration)

    # ------------------------------------------------------------------
    # step level
    # ------------------------------------------------------------------

    def run_step(self, job: Job, step: Step, runs: RunTable) -> None:
        workdir = self.workdir(job)

        if step.kind is StepKind.RUN:
            self._run_shell(job, step, workdir, runs)
        elif step.kind is StepKind.CHECKOUT:
            # the working tree is already present locally
            workdir.mkdir(parents=True, exist_ok=True)
        elif step.kind is StepKind.RESTORE_CACHE:
            self._restore_cache(job, step, workdir)
        elif step.kind is StepKind.SAVE_CACHE:
            self._save_cache(job, step, workdir)
        elif step.kind is StepKind.PERSIST_TO_WORKSPACE:
            try:
                self.workspace.persist(workdir / step.root, step.paths)
            except FileNotFoundError as e:
                raise StepFailure(job.name, step.name, f"persist {list(step.paths)}", 1, str(e)) from e
        elif step.kind is StepKind.ATTACH_WORKSPACE:
            self.workspace.attach(workdir / step.root)
        else:
            raise ValueError(f"Unknown step kind: {step.kind!r}")

    def _command(self, job: Job, step: Step, cwd: Path):
        """Returns (cmd, shell, container); container is None on the host."""
        if self.use_docker and job.image:
            container = _container_name(job)
            argv: List[str] = [
                "docker", "run", "--rm", "--init", "--name", container,
                "-v", f"{cwd}:{cwd}", "-w", str(cwd),
            ]
            for k, v in job.env.items():
                argv += ["-e", f"{k}={v}"]
            argv += [job.image, "sh", "-c", step.run]
            return argv, False, container
        return step.run, True, None

    def _run_shell(self, job: Job, step: Step, workdir: Path, runs: RunTable) -> None:
        cwd = (workdir / (step.cwd or ".")).resolve()
        if not cwd.exists():
            raise FileNotFoundError(f"[{job.name}] step '{step.name}' cwd not found: {cwd}")

        env: Dict[str, str] = os.environ.copy()
        env.update(job.env)
        cmd, shell, container = self._command(job, step, cwd)

        proc = subprocess.Popen(
            cmd,
            shell=shell,
            cwd=str(cwd),
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,  # combined output
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
            bufsize=1,
            start_new_session=(os.name == "posix"),
        )

        q: "queue.Queue" = queue.Queue()
        reader = threading.Thread(target=_pump, args=(proc.stdout, q), daemon=True)
        reader.start()

        keep = step.keep_output if step.keep_output is not None else DEFAULT_KEEP_OUTPUT
        tail: deque = deque(maxlen=max(keep, 0))

        try:
            while True:
                try:
                    item = q.get(timeout=step.no_output_timeout)
                except queue.Empty:
                    _kill(proc, container)
                    proc.wait()
                    raise StepTimeout(job.name, step.name, step.run, step.no_output_timeout)
                if item is _EOF:
                    break
                line = item.rstrip("\n")
                self.console.print_output(job.name, line)
                tail.append(line)
        except BaseException:
            if proc.poll() is None:
                _kill(proc, container)
                proc.wait()
            raise
        finally:
            reader.join(timeout=1)
            proc.stdout.close()
            runs.transition(job.name, "add_output", tail)

        returncode = proc.wait()
        if returncode != 0:
            raise StepFailure(job.name, step.name, step.run, returncode, "\n".join(tail))

    # ------------------------------------------------------------------
    # cache steps: failures are logged and treated as a miss
    # ------------------------------------------------------------------

    def _render_keys(self, job: Job, step: Step, workdir: Path) -> List[str]:
        return [render_cache_key(k, workdir=workdir, env=job.env) for k in step.keys]

    def _restore_cache(self, job: Job, step: Step, workdir: Path) -> None:
        if self.cache is None:
            self.console.print_cache_miss(job.name)
            return
        try:
            hit = self.cache.restore(self._render_keys(job, step, workdir), workdir)
        except CacheError as e:
            logger.warning("cache_restore_failed", job=job.name, step=step.name, error=e.message)
            self.console.print_cache_miss(job.name)
            return
        if hit.hit:
            self.console.print_cache_hit(job.name, hit.reason)
        else:
            self.console.print_cache_miss(job.name)

    def _save_cache(self, job: Job, step: Step, workdir: Path) -> None:
        if self.cache is None:
            return
        try:
            for key in self._render_keys(job, step, workdir):
                saved, reason = self.cache.save(key, step.paths, workdir)
                if saved:
                    self.console.print_cache_saved(job.name, key)
                else:
                    self.console.print_info(f"[{job.name}] cache: {reason}")
            if self.cache_keep is not None:
                self.cache.prune(keep=self.cache_keep)
        except CacheError as e:
            logger.warning("cache_save_failed", job=job.name, step=step.name, error=e.message)
