"""Tests for graph validation and ordering."""

import pytest

from dagci.dag import build_dag, topo_levels
from dagci.dsl import job, sh
from dagci.errors import ConfigError


def _job(name, *needs):
    return job(name, sh("noop", "true"), needs=list(needs))


def test_linear_chain_levels():
    graph = build_dag([_job("a"), _job("b", "a"), _job("c", "b")])

    assert topo_levels(graph) == [["a"], ["b"], ["c"]]
    assert graph.roots() == ["a"]


def test_fan_out_shares_a_stage():
    graph = build_dag([
        _job("fetch"),
        _job("fmt", "fetch"),
        _job("lint", "fetch"),
        _job("test", "fetch"),
    ])

    assert topo_levels(graph) == [["fetch"], ["fmt", "lint", "test"]]


def test_dependents_are_transitive():
    graph = build_dag([_job("a"), _job("b", "a"), _job("c", "b"), _job("d")])

    assert graph.dependents("a") == {"b", "c"}
    assert graph.dependents("c") == set()
    assert graph.dependents("d") == set()


def test_two_job_cycle_rejected():
    with pytest.raises(ConfigError) as exc:
        build_dag([_job("a", "b"), _job("b", "a")])

    assert "cycle" in exc.value.message
    assert exc.value.details["edge"] in ("a -> b", "b -> a")


def test_long_cycle_rejected_with_offending_edge():
    jobs = [_job("root"), _job("x", "root", "z"), _job("y", "x"), _job("z", "y")]

    with pytest.raises(ConfigError) as exc:
        build_dag(jobs)

    edge = exc.value.details["edge"]
    assert edge in ("x -> y", "y -> z", "z -> x")
    assert "root" not in exc.value.message


def test_self_reference_rejected():
    with pytest.raises(ConfigError) as exc:
        build_dag([_job("a", "a")])

    assert exc.value.details["edge"] == "a -> a"


def test_missing_reference_rejected():
    with pytest.raises(ConfigError) as exc:
        build_dag([_job("a"), _job("b", "ghost")])

    assert "ghost" in exc.value.message
    assert exc.value.details["edge"] == "ghost -> b"


def test_duplicate_names_rejected():
    with pytest.raises(ConfigError):
        build_dag([_job("a"), _job("a")])


def test_repeated_need_counts_once():
    graph = build_dag([_job("a"), _job("b", "a", "a")])

    assert graph.indeg["b"] == 1
