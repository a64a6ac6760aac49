# dagci_workflow.py
# Workflow for checking dagci itself: lint and format first, then tests.
from __future__ import annotations

from dagci import wf, job, sh, matrix, restore_cache, save_cache


def workflow():
    return wf(
        job(
            "install",
            restore_cache('pip-v1-{{ checksum "pyproject.toml" }}', "pip-v1-"),
            sh("Install package", "pip install -e '.[test]' ruff"),
            save_cache('pip-v1-{{ checksum "pyproject.toml" }}', ["~/.cache/pip"]),
        ),
        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
            needs=["install"],
        ),
        job(
            "format-check",
            sh("Ruff format check", "ruff format --check src tests"),
            needs=["install"],
        ),
        matrix("python", ["3.11", "3.12"]).jobs(
            lambda v: job(
                f"test-py{v}",
                sh("Run pytest", f"python{v} -m pytest -q", no_output_timeout=900),
                needs=["lint", "format-check"],
            )
        ),
    )
