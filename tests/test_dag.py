import pytest

from fleetci.dag import build_dag, descendants, topo_levels
from fleetci.dsl import job, sh
from fleetci.errors import WorkflowError


def _job(name, needs=None):
    return job(name, sh("noop", "true"), needs=needs)


def test_independent_jobs_form_a_single_stage():
    jobs = [_job(n) for n in ("check", "typos", "test", "clippy-check", "format")]
    _, adj, indeg = build_dag(jobs)

    assert topo_levels(adj, indeg) == [["check", "clippy-check", "format", "test", "typos"]]


def test_needs_produce_ordered_stages():
    jobs = [_job("build"), _job("test", ["build"]), _job("lint"), _job("deploy", ["test", "lint"])]
    _, adj, indeg = build_dag(jobs)

    assert topo_levels(adj, indeg) == [["build", "lint"], ["test"], ["deploy"]]
    assert indeg["deploy"] == 2


def test_descendants_are_transitive():
    jobs = [_job("a"), _job("b", ["a"]), _job("c", ["b"]), _job("d")]
    _, adj, _ = build_dag(jobs)

    assert descendants(adj, "a") == {"b", "c"}
    assert descendants(adj, "d") == set()


def test_missing_dependency_is_rejected():
    with pytest.raises(WorkflowError, match="missing job 'nope'"):
        build_dag([_job("a", ["nope"])])


def test_duplicate_names_are_rejected():
    with pytest.raises(WorkflowError, match="Duplicate"):
        build_dag([_job("a"), _job("a")])


def test_cycles_are_rejected():
    with pytest.raises(WorkflowError, match="cycle"):
        build_dag([_job("a", ["b"]), _job("b", ["a"])])
