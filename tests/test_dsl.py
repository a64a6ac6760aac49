import pytest

from dagci.dsl import build, job, matrix, restore_cache, sh, wf
from dagci.model import StepKind


def test_job_default_cwd_applies_to_run_steps_only():
    j = job("x", sh("a", "true"), sh("b", "true", cwd="keep"), restore_cache("k"), cwd="sub")

    assert [s.cwd for s in j.steps] == ["sub", "keep", None]
    assert j.steps[2].kind is StepKind.RESTORE_CACHE


def test_job_requires_steps():
    with pytest.raises(ValueError):
        job("empty")


def test_builder():
    j = (
        build("test")
        .depends_on("fetch")
        .in_docker("rust:1")
        .resource("xlarge")
        .with_env(RUST_BACKTRACE=1)
        .step("cargo test", "cargo test", no_output_timeout=900)
        .build()
    )

    assert j.needs == ("fetch",)
    assert j.image == "rust:1"
    assert j.resource_class == "xlarge"
    assert j.env == {"RUST_BACKTRACE": "1"}
    assert j.steps[0].no_output_timeout == 900


def test_matrix_variants_flatten_into_workflow():
    variants = matrix("profile", ["debug", "release"]).jobs(
        lambda p: job(f"test-{p}", sh("t", f"cargo test --profile {p}"), needs=["fetch"])
    )

    jobs = wf(job("fetch", sh("f", "cargo fetch")), variants)

    assert [j.name for j in jobs] == ["fetch", "test-debug", "test-release"]
