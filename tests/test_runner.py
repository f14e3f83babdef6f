import threading
import time
from dataclasses import replace
from pathlib import Path

import pytest

from fleetci.archive import RunArchive
from fleetci.concurrency import ConcurrencyController
from fleetci.dsl import annotate, cache, checkout, job, on_pull_request, on_push, pipeline, sh, step_failed
from fleetci.errors import WorkflowError
from fleetci.model import JobOutcome, RunStatus
from fleetci.runner import Orchestrator, load_workflow
from fleetci.schemas import RunOut

from _support import pr_event, push_event

FMT_HELP = "\nFormatting check failed!\nPlease run this command before committing:\ncargo fmt --all\n"
IGNORED = ["**/*.md", "**/*.yml"]


def ci_pipeline(fmt_cmd="true", slow=False):
    """Same shape as the project workflow, with stand-in commands."""
    work = "sleep 30" if slow else "test -f src/lib.rs"
    warm = cache("warm", "target")
    return pipeline(
        "CI",
        job("check", checkout(), sh("cargo check", f"{work} && mkdir -p target && echo ok > target/check"), cache=warm),
        job("typos", checkout(), sh("typos", work)),
        job("test", checkout(), sh("cargo test", work), cache=warm),
        job(
            "clippy-check",
            checkout(),
            sh("hack all features", work),
            sh("hack no default features", work),
            sh("hack each feature", work),
            cache=warm,
        ),
        job(
            "format",
            checkout(),
            sh("cargo fmt", fmt_cmd, id="fmt", continue_on_error=True),
            annotate(FMT_HELP, when=step_failed("fmt")),
            cache=warm,
        ),
        manual=True,
        pull_request=on_pull_request(
            types=["opened", "synchronize"],
            paths_ignore=IGNORED + ["!.github/workflows/check.yml"],
        ),
        push=on_push(branches=["*"], paths_ignore=IGNORED + ["!.github/workflows/ci.yml"]),
        env={"CARGO_INCREMENTAL": 0},
    )


@pytest.fixture
def make_orchestrator(source, settings, console):
    def _make(p=None, **kw):
        return Orchestrator(p or ci_pipeline(), source_root=source, settings=settings, console=console, **kw)
    return _make


def _wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


def test_push_to_main_runs_all_jobs_and_saves_cache(make_orchestrator):
    orch = make_orchestrator()
    run = orch.handle(push_event(ref="main", paths=["src/lib.rs"]))

    assert run is not None
    assert run.status is RunStatus.SUCCEEDED
    assert not run.cancelled
    assert set(run.jobs) == {"check", "typos", "test", "clippy-check", "format"}
    assert all(r.outcome is JobOutcome.SUCCESS for r in run.jobs.values())
    assert run.annotations == []
    assert orch.cache.store.exists("warm-main")
    assert orch.controller.active(run.group_key) == []


def test_docs_only_push_creates_no_run(make_orchestrator):
    orch = make_orchestrator()
    assert orch.handle(push_event(paths=["README.md"])) is None
    assert orch.runs() == []


def test_workflow_file_change_forces_a_run(make_orchestrator):
    orch = make_orchestrator()
    assert orch.handle(push_event(paths=[".github/workflows/ci.yml"])) is not None


def test_format_failure_surfaces_the_operator_message_once(make_orchestrator):
    orch = make_orchestrator(ci_pipeline(fmt_cmd="echo 'Diff in src/lib.rs' && exit 1"))
    run = orch.handle(push_event(ref="main"))

    assert run.status is RunStatus.FAILED
    assert [a.message for a in run.annotations] == [FMT_HELP]
    assert run.annotations[0].job == "format"
    for name in ("check", "typos", "test", "clippy-check"):
        assert run.jobs[name].outcome is JobOutcome.SUCCESS


def test_newer_change_request_run_cancels_the_older_one(make_orchestrator):
    orch = make_orchestrator(ci_pipeline(slow=True))
    first = orch.trigger(pr_event(number=7, sha="one")).run
    worker = threading.Thread(target=orch.execute, args=(first,))
    worker.start()
    assert _wait_for(lambda: any(r.outcome is JobOutcome.RUNNING for r in first.jobs.values()))

    outcome = orch.trigger(pr_event(number=7, sha="two"))
    worker.join(timeout=20)

    assert not worker.is_alive()
    assert outcome.cancelled == [first]
    assert first.status is RunStatus.CANCELLED
    assert first.annotations == []
    assert {r.outcome for r in first.jobs.values()} == {JobOutcome.CANCELLED}
    assert first.cancel_reason == f"superseded by run {outcome.run.id}"
    assert not outcome.run.cancelled


def test_protected_branch_runs_are_not_cancelled(make_orchestrator):
    orch = make_orchestrator()
    a = orch.trigger(push_event(ref="main", sha="same")).run
    b = orch.trigger(push_event(ref="main", sha="same"))

    assert b.cancelled == []
    assert not a.cancelled
    assert orch.execute(a).status is RunStatus.SUCCEEDED
    assert orch.execute(b.run).status is RunStatus.SUCCEEDED


def test_runs_share_a_controller(source, settings, console):
    shared = ConcurrencyController()
    one = Orchestrator(ci_pipeline(), source_root=source, settings=settings, console=console, controller=shared)
    two = Orchestrator(ci_pipeline(), source_root=source, settings=settings, console=console, controller=shared)

    old = one.trigger(pr_event(number=3)).run
    assert two.trigger(pr_event(number=3)).cancelled == [old]


def test_cancel_by_id(make_orchestrator):
    orch = make_orchestrator()
    run = orch.trigger(push_event(ref="feature")).run

    assert orch.cancel(run.id, "stop")
    assert not orch.cancel(run.id)
    assert not orch.cancel("unknown")
    assert orch.execute(run).status is RunStatus.CANCELLED
    assert run.cancel_reason == "stop"


def test_finished_runs_are_archived(make_orchestrator, tmp_path):
    archive = RunArchive(f"sqlite:///{tmp_path / 'runs.db'}")
    orch = make_orchestrator(ci_pipeline(fmt_cmd="exit 1"), archive=archive)
    run = orch.handle(push_event(ref="main"))

    stored = archive.get(run.id)
    assert stored.status == "failed"
    assert archive.failed_jobs(run.id) == ["format"]
    assert archive.annotation_messages(run.id) == [FMT_HELP]


def test_load_project_workflow():
    p = load_workflow(Path(__file__).resolve().parents[1] / "fleetci_workflow.py")

    assert p.name == "CI"
    assert [j.name for j in p.jobs] == ["check", "typos", "test", "clippy-check", "format"]
    assert all(not j.needs for j in p.jobs)
    assert p.env == {"CARGO_INCREMENTAL": "0"}
    assert p.protected_ref == "main"
    fmt = p.job("format")
    assert fmt.steps[-2].continue_on_error
    assert fmt.steps[-1].uses == "annotate"
    assert all(j.cache is not None for j in p.jobs if j.name != "typos")


def test_load_job_list_workflow(tmp_path):
    path = tmp_path / "nightly_workflow.py"
    path.write_text(
        "from fleetci.dsl import job, sh\n"
        "JOBS = [job('a', sh('a', 'true')), job('b', sh('b', 'true'), needs=['a'])]\n"
    )
    p = load_workflow(path)
    assert p.name == "nightly_workflow"
    assert [j.name for j in p.jobs] == ["a", "b"]


def test_load_rejects_bad_graph(tmp_path):
    path = tmp_path / "bad_workflow.py"
    path.write_text(
        "from fleetci.dsl import job, sh\n"
        "JOBS = [job('a', sh('a', 'true'), needs=['missing'])]\n"
    )
    with pytest.raises(WorkflowError):
        load_workflow(path)


def test_load_rejects_empty_workflow(tmp_path):
    path = tmp_path / "empty_workflow.py"
    path.write_text("X = 1\n")
    with pytest.raises(WorkflowError):
        load_workflow(path)


def test_jobs_finished_before_a_supersede_are_reported_cancelled(make_orchestrator):
    p = pipeline(
        "CI",
        job("fast_ok", sh("ok", "true")),
        job("fast_bad", sh("bad", "exit 1")),
        job("slow", sh("slow", "sleep 30")),
        pull_request=on_pull_request(types=["synchronize"]),
    )
    orch = make_orchestrator(p)
    first = orch.trigger(pr_event(number=4, sha="one")).run
    worker = threading.Thread(target=orch.execute, args=(first,))
    worker.start()
    assert _wait_for(lambda: first.jobs["fast_ok"].outcome.terminal and first.jobs["fast_bad"].outcome.terminal)

    orch.trigger(pr_event(number=4, sha="two"))
    worker.join(timeout=20)

    assert not worker.is_alive()
    assert first.status is RunStatus.CANCELLED
    assert first.annotations == []
    assert {n: r.outcome for n, r in first.jobs.items()} == {
        "fast_ok": JobOutcome.CANCELLED,
        "fast_bad": JobOutcome.CANCELLED,
        "slow": JobOutcome.CANCELLED,
    }
    assert RunOut.from_run(first).status == "cancelled"
    assert {j.outcome for j in RunOut.from_run(first).jobs} == {"cancelled"}


def test_archived_runs_leave_memory(make_orchestrator, tmp_path):
    archive = RunArchive(f"sqlite:///{tmp_path / 'runs.db'}")
    orch = make_orchestrator(archive=archive)
    ids = [orch.handle(push_event(ref="main", sha=f"s{i}")).id for i in range(3)]

    assert orch.runs() == []
    assert all(archive.get(i) is not None for i in ids)


def test_unarchived_runs_are_kept_up_to_the_limit(source, settings, console):
    orch = Orchestrator(
        ci_pipeline(), source_root=source, settings=replace(settings, keep_runs=2), console=console,
    )
    ids = [orch.handle(push_event(ref="main", sha=f"s{i}")).id for i in range(4)]

    assert [r.id for r in orch.runs()] == [ids[3], ids[2]]
    assert orch.get_run(ids[0]) is None
