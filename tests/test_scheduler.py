"""Tests for dependency-ordered dispatch."""

import threading
import time

import pytest

from dagci.dag import build_dag
from dagci.dsl import job, sh
from dagci.errors import StepFailure
from dagci.model import RunStatus
from dagci.scheduler import Scheduler


def _job(name, *needs):
    return job(name, sh("noop", "true"), needs=list(needs))


class FakeRunner:
    """Records start order and concurrency; fails the jobs it is told to."""

    def __init__(self, fail=(), delay=0.0):
        self.fail = set(fail)
        self.delay = delay
        self.started = []
        self.peak = 0
        self._lock = threading.Lock()

    def __call__(self, j, runs):
        runs.transition(j.name, "mark_running")
        with self._lock:
            self.started.append(j.name)
            self.peak = max(self.peak, runs.count(RunStatus.RUNNING))
        time.sleep(self.delay)
        if j.name in self.fail:
            err = StepFailure(j.name, "noop", "true", 1)
            runs.transition(j.name, "mark_failed", err)
            raise err
        runs.transition(j.name, "mark_succeeded")


def test_chain_failure_skips_all_dependents(console):
    graph = build_dag([_job("a"), _job("b", "a"), _job("c", "b")])
    runner = FakeRunner(fail={"a"})

    runs = Scheduler(graph, runner, max_workers=2, console=console).run()

    assert runs["a"].status is RunStatus.FAILED
    assert runs["b"].status is RunStatus.SKIPPED
    assert runs["c"].status is RunStatus.SKIPPED
    assert runner.started == ["a"]
    assert "upstream job 'a' failed" in runs["c"].skip_reason


def test_dependencies_finish_before_dependents_start(console):
    graph = build_dag([_job("fetch"), _job("fmt", "fetch"), _job("test", "fetch"), _job("release", "test")])
    runner = FakeRunner()

    runs = Scheduler(graph, runner, max_workers=4, console=console).run()

    assert runs.succeeded()
    order = runner.started
    assert order[0] == "fetch"
    assert order.index("test") < order.index("release")


def test_failure_does_not_stop_independent_branches(console):
    graph = build_dag([
        _job("fetch"),
        _job("clippy", "fetch"),
        _job("test", "fetch"),
        _job("release", "test"),
        _job("docs"),
    ])
    runner = FakeRunner(fail={"clippy"}, delay=0.02)

    runs = Scheduler(graph, runner, max_workers=4, console=console).run()

    assert runs.statuses() == {
        "fetch": "succeeded",
        "clippy": "failed",
        "test": "succeeded",
        "release": "succeeded",
        "docs": "succeeded",
    }


def test_fail_fast_skips_everything_not_started(console):
    graph = build_dag([_job("a"), _job("b", "a"), _job("c", "a")])
    runner = FakeRunner(fail={"a"})

    runs = Scheduler(graph, runner, max_workers=1, fail_fast=True, console=console).run()

    assert runs.statuses() == {"a": "failed", "b": "skipped", "c": "skipped"}


def test_fail_fast_does_not_dispatch_new_roots(console):
    graph = build_dag([_job("a"), _job("b"), _job("c")])
    runner = FakeRunner(fail={"a"})

    runs = Scheduler(graph, runner, max_workers=1, fail_fast=True, console=console).run()

    assert runner.started == ["a"]
    assert runs["b"].status is RunStatus.SKIPPED
    assert runs["c"].status is RunStatus.SKIPPED


@pytest.mark.parametrize("ceiling", [1, 2, 3])
def test_concurrency_ceiling_is_respected(console, ceiling):
    graph = build_dag([_job(f"j{i}") for i in range(8)])
    runner = FakeRunner(delay=0.03)

    runs = Scheduler(graph, runner, max_workers=ceiling, console=console).run()

    assert runs.succeeded()
    assert 1 <= runner.peak <= ceiling


def test_every_job_ends_terminal(console):
    graph = build_dag([_job("a"), _job("b", "a"), _job("c"), _job("d", "b", "c")])
    runner = FakeRunner(fail={"c"})

    runs = Scheduler(graph, runner, max_workers=2, console=console).run()

    assert runs.all_terminal()
    assert runs["d"].status is RunStatus.SKIPPED


def test_unexpected_exception_marks_job_failed(console):
    graph = build_dag([_job("a"), _job("b", "a")])

    def explode(j, runs):
        raise RuntimeError("boom")

    runs = Scheduler(graph, explode, max_workers=1, console=console).run()

    assert runs["a"].status is RunStatus.FAILED
    assert isinstance(runs["a"].error, RuntimeError)
    assert runs["b"].status is RunStatus.SKIPPED


def test_invalid_ceiling(console):
    with pytest.raises(ValueError):
        Scheduler(build_dag([_job("a")]), FakeRunner(), max_workers=0, console=console)
