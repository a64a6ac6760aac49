"""End-to-end tests for run_pipeline with real shell steps."""

import pytest

from dagci.dsl import job, restore_cache, save_cache, sh
from dagci.errors import ConfigError
from dagci.model import RunStatus
from dagci.runner import load_workflow, run_pipeline


def _pipeline(tmp_path, jobs, **kw):
    return run_pipeline(
        jobs,
        repo_root=tmp_path,
        cache_root=tmp_path / "cache",
        workspace_root=tmp_path / "ws",
        max_workers=kw.pop("max_workers", 2),
        **kw,
    )


def test_a_b_c_chain_with_failing_root(tmp_path, console):
    jobs = [
        job("a", sh("fail", "exit 7")),
        job("b", sh("mark", "touch b-ran"), needs=["a"]),
        job("c", sh("mark", "touch c-ran"), needs=["b"]),
    ]

    runs = _pipeline(tmp_path, jobs)

    assert runs["a"].status is RunStatus.FAILED
    assert runs["a"].error.exit_code == 7
    assert runs["b"].status is RunStatus.SKIPPED
    assert runs["c"].status is RunStatus.SKIPPED
    assert not (tmp_path / "b-ran").exists()
    assert not (tmp_path / "c-ran").exists()


def test_cycle_rejected_before_any_job_runs(tmp_path, console):
    jobs = [
        job("a", sh("mark", "touch a-ran"), needs=["b"]),
        job("b", sh("mark", "touch b-ran"), needs=["a"]),
    ]

    with pytest.raises(ConfigError):
        _pipeline(tmp_path, jobs)

    assert not (tmp_path / "a-ran").exists()
    assert not (tmp_path / "b-ran").exists()


def test_second_run_restores_from_cache(tmp_path, console):
    (tmp_path / "deps.txt").write_text("serde=1.0\n")
    key = 'deps-{{ checksum "deps.txt" }}'
    jobs = [
        job(
            "fetch",
            restore_cache(key),
            sh("fetch", "test -f vendor/done || (mkdir -p vendor && echo fetched && touch vendor/done)"),
            save_cache(key, ["vendor"]),
        )
    ]

    first = _pipeline(tmp_path, jobs)
    (tmp_path / "vendor" / "done").unlink()
    second = _pipeline(tmp_path, jobs)

    assert list(first["fetch"].output) == ["fetched"]
    assert list(second["fetch"].output) == []
    assert "CACHE: hit" in console.stream.getvalue()


def test_only_selects_requirements(tmp_path, console):
    jobs = [
        job("fetch", sh("f", "true")),
        job("lint", sh("l", "true"), needs=["fetch"]),
        job("test", sh("t", "true"), needs=["fetch"]),
    ]

    runs = _pipeline(tmp_path, jobs, only=["lint"])

    assert sorted(runs) == ["fetch", "lint"]
    assert runs.succeeded()


def test_cache_disabled(tmp_path, console):
    jobs = [job("x", restore_cache("k"), sh("t", "true"), save_cache("k", ["."]))]

    runs = _pipeline(tmp_path, jobs, use_cache=False)

    assert runs.succeeded()
    assert not (tmp_path / "cache").exists()


def test_load_workflow_rejects_unknown_suffix(tmp_path):
    path = tmp_path / "pipeline.toml"
    path.write_text("")

    with pytest.raises(ConfigError):
        load_workflow(path)


def test_python_workflow_must_define_jobs(tmp_path):
    path = tmp_path / "empty_workflow.py"
    path.write_text("X = 1\n")

    with pytest.raises(ConfigError):
        load_workflow(path)


def test_load_yaml_workflow(crate_config):
    name, jobs = load_workflow(crate_config)

    assert name == "test_all"
    assert len(jobs) == 5


def test_python_workflow_building_a_bad_job_raises_config_error(tmp_path):
    path = tmp_path / "bad_workflow.py"
    path.write_text(
        "from dagci import wf, job\n"
        "\n"
        "def workflow():\n"
        "    return wf(job('empty'))\n"
    )

    with pytest.raises(ConfigError, match="at least one step"):
        load_workflow(path)
