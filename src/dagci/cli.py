# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from . import settings
from .dag import topo_levels
from .errors import ConfigError
from .logs import configure_logging
from .model import RunStatus
from .runner import load_workflow, prepare, run_pipeline
from .scheduler import default_workers
from .ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_CONFIG = 2

config_argument = click.argument(
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
workflow_option = click.option(
    "--workflow", "workflow_name", default=None, help="Workflow to run (defaults to the first one)"
)


def _load_or_exit(ctx, config_file: Path, workflow_name: str | None, only=None):
    """Load and validate the config; exit with EXIT_CONFIG on ConfigError."""
    console = get_console()
    try:
        name, jobs = load_workflow(config_file, workflow=workflow_name)
        graph = prepare(jobs, only=only)
    except ConfigError as e:
        console.print_error(
            "Invalid pipeline config",
            e.message,
            details=[f"{k}: {v}" for k, v in e.details.items()],
        )
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(EXIT_CONFIG)
    return name, jobs, graph


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and debug logs)",
)
@click.option("--quiet", is_flag=True, default=False, help="Do not echo step output")
@click.pass_context
def cli(ctx, debug, quiet):
    """dagci: run a job graph of CI steps locally."""
    configure_logging("DEBUG" if debug else settings.LOG_LEVEL)
    set_console(Console(debug=debug, show_output=not quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@config_argument
@workflow_option
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Max jobs running at once")
@click.option("--cache-dir", default=None, help=f"Cache directory [default: {settings.CACHE_DIR}]")
@click.option("--workspace-dir", default=None, help=f"Workspace directory [default: {settings.WORKSPACE_DIR}]")
@click.option("--cache/--no-cache", "use_cache", default=True, show_default=True, help="Use the artifact cache")
@click.option("--fail-fast/--no-fail-fast", default=False, show_default=True, help="Stop scheduling new jobs after first failure")
@click.option("--docker/--no-docker", "use_docker", default=False, show_default=True, help="Run steps inside the job's docker image")
@click.option("--job", "only", multiple=True, help="Only run this job and what it requires (repeatable)")
@click.option("--repo-root", default=".", show_default=True, type=click.Path(file_okay=False, path_type=Path), help="Directory job working directories are relative to")
@click.pass_context
def run(ctx, config_file, workflow_name, workers, cache_dir, workspace_dir, use_cache, fail_fast, use_docker, only, repo_root):
    """Run a pipeline config. Exits 0 only if every job succeeded."""
    console = get_console()
    name, jobs, graph = _load_or_exit(ctx, config_file, workflow_name, only=only)

    workers = workers or settings.WORKERS or default_workers()
    console.print_run_started(
        config=str(config_file),
        workflow=name,
        job_count=len(graph.jobs),
        workers=workers,
    )

    try:
        runs = run_pipeline(
            graph.jobs.values(),
            repo_root=repo_root,
            cache_root=cache_dir,
            workspace_root=workspace_dir,
            max_workers=workers,
            fail_fast=fail_fast,
            use_docker=use_docker,
            use_cache=use_cache,
        )
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)

    console.print_results(runs.runs())
    if not runs.succeeded():
        failed = [r.job for r in runs.runs() if r.status is RunStatus.FAILED]
        console.print_info(f"\nFailed jobs: {', '.join(failed) or 'none'}")
        sys.exit(EXIT_FAILED)


@cli.command()
@config_argument
@workflow_option
@click.pass_context
def validate(ctx, config_file, workflow_name):
    """Check a pipeline config without running anything."""
    name, _jobs, graph = _load_or_exit(ctx, config_file, workflow_name)
    get_console().print_info(f"OK: workflow '{name}' with {len(graph.jobs)} job(s)")


@cli.command()
@config_argument
@workflow_option
@click.pass_context
def plan(ctx, config_file, workflow_name):
    """Print the stages jobs would run in."""
    _name, _jobs, graph = _load_or_exit(ctx, config_file, workflow_name)
    get_console().print_plan(topo_levels(graph))


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
