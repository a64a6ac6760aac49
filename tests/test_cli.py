"""CLI tests via click's CliRunner."""

import textwrap

import pytest
from click.testing import CliRunner

from dagci.cli import EXIT_CONFIG, EXIT_FAILED, cli


def _write(tmp_path, body, name="pipeline.yml"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(body))
    return path


@pytest.fixture
def runner():
    return CliRunner()


def _run(runner, tmp_path, config, *extra):
    return runner.invoke(
        cli,
        [
            "run",
            str(config),
            "--repo-root", str(tmp_path),
            "--cache-dir", str(tmp_path / "cache"),
            "--workspace-dir", str(tmp_path / "ws"),
            *extra,
        ],
    )


PASSING = """
    version: 2
    jobs:
      fetch:
        steps:
          - checkout
          - run: echo fetched
      test:
        steps:
          - run:
              name: Unit tests
              command: echo tests-ok
    workflows:
      version: 2
      all:
        jobs:
          - fetch
          - test:
              requires: [fetch]
"""


def test_run_success_exits_zero(runner, tmp_path):
    config = _write(tmp_path, PASSING)

    result = _run(runner, tmp_path, config)

    assert result.exit_code == 0, result.output
    assert "[test] tests-ok" in result.output
    assert "fetch: SUCCEEDED" in result.output
    assert "test: SUCCEEDED" in result.output


def test_run_failure_exits_nonzero_and_skips_dependents(runner, tmp_path):
    config = _write(tmp_path, """
        jobs:
          fetch:
            steps:
              - run: exit 1
          test:
            steps:
              - run: echo should-not-run
        workflows:
          all:
            jobs:
              - fetch
              - test:
                  requires: [fetch]
    """)

    result = _run(runner, tmp_path, config)

    assert result.exit_code == EXIT_FAILED
    assert "fetch: FAILED" in result.output
    assert "test: SKIPPED" in result.output
    assert "[test]" not in result.output


def test_cycle_is_rejected_before_running(runner, tmp_path):
    marker = tmp_path / "ran"
    config = _write(tmp_path, f"""
        jobs:
          a:
            steps:
              - run: touch {marker}
          b:
            steps:
              - run: touch {marker}
        workflows:
          w:
            jobs:
              - a:
                  requires: [b]
              - b:
                  requires: [a]
    """)

    result = _run(runner, tmp_path, config)

    assert result.exit_code == EXIT_CONFIG
    assert "cycle" in result.output
    assert not marker.exists()


def test_only_runs_selected_job_and_requirements(runner, tmp_path):
    config = _write(tmp_path, PASSING + """
      other:
        jobs:
          - fetch
    """)

    result = _run(runner, tmp_path, config, "--job", "fetch")

    assert result.exit_code == 0, result.output
    assert "fetch: SUCCEEDED" in result.output
    assert "test:" not in result.output


def test_plan_prints_stages(runner, crate_config):
    result = runner.invoke(cli, ["plan", str(crate_config)])

    assert result.exit_code == 0, result.output
    assert "=== Stage 1: cargo_fetch ===" in result.output
    assert "=== Stage 2: clippy, rustfmt, test, test_release ===" in result.output


def test_validate(runner, crate_config):
    result = runner.invoke(cli, ["validate", str(crate_config)])

    assert result.exit_code == 0
    assert "workflow 'test_all' with 5 job(s)" in result.output


def test_validate_unknown_workflow(runner, crate_config):
    result = runner.invoke(cli, ["validate", str(crate_config), "--workflow", "nightly"])

    assert result.exit_code == EXIT_CONFIG


def test_python_workflow(runner, tmp_path):
    config = _write(tmp_path, """
        from dagci import wf, job, sh

        def workflow():
            return wf(
                job("hello", sh("say", "echo hello-from-py")),
                job("after", sh("say", "echo after"), needs=["hello"]),
            )
    """, name="demo_workflow.py")

    result = _run(runner, tmp_path, config)

    assert result.exit_code == 0, result.output
    assert "[hello] hello-from-py" in result.output


def test_malformed_python_workflow_is_a_config_error(runner, tmp_path):
    config = _write(tmp_path, """
        from dagci import wf, job

        def workflow():
            return wf(job("empty"))
    """, name="bad_workflow.py")

    result = _run(runner, tmp_path, config)

    assert result.exit_code == EXIT_CONFIG
    assert "at least one step" in result.output
