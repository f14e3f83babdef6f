import threading
import time
from pathlib import Path

from fleetci.dsl import always, annotate, checkout, failure, job, setup, sh, step_failed, uses
from fleetci.model import FailureKind, JobOutcome, Severity, Step, StepKind, StepOutcome

from _support import make_run

FMT_HELP = "\nFormatting check failed!\nPlease run this command before committing:\ncargo fmt --all\n"


def test_steps_share_one_workspace(executor):
    j = job(
        "build",
        sh("write", "echo hello > state.txt"),
        sh("read", "grep hello state.txt"),
    )
    res = executor.run(j, make_run())

    assert res.outcome is JobOutcome.SUCCESS
    assert [s.outcome for s in res.steps] == [StepOutcome.SUCCESS, StepOutcome.SUCCESS]
    assert "hello" in res.steps[1].output


def test_checkout_copies_source_without_vcs_metadata(executor):
    j = job("check", checkout(), sh("inspect", "test -f src/lib.rs && test ! -e .git"))
    res = executor.run(j, make_run())
    assert res.outcome is JobOutcome.SUCCESS, res.steps[-1].output


def test_workspace_is_discarded_after_the_job(executor):
    res = executor.run(job("where", sh("where", 'echo "$FLEETCI_WORKSPACE"')), make_run())
    workspace = Path(res.steps[0].output.strip())
    assert workspace.name.startswith("fleetci-where-")
    assert not workspace.exists()


def test_job_environment(executor):
    run = make_run(env={"CARGO_INCREMENTAL": "0"})
    j = job(
        "env-job",
        sh("env", 'test "$CARGO_INCREMENTAL" = 0 && test "$CI" = true && test "$FLEETCI_JOB" = env-job'
                  ' && test "$FLEETCI_REF" = main && test "$EXTRA" = 1'),
        env={"EXTRA": 1},
    )
    assert executor.run(j, run).outcome is JobOutcome.SUCCESS


def test_matrix_variant_is_exposed(executor):
    j = job("hack[each]", sh("variant", 'test "$FLEETCI_MATRIX_FEATURES" = each'))
    j.variant = {"features": "each"}
    assert executor.run(j, make_run()).outcome is JobOutcome.SUCCESS


def test_failed_step_skips_later_steps_unless_conditioned(executor):
    j = job(
        "test",
        sh("unit", "exit 2"),
        sh("integration", "true"),
        sh("collect logs", "true", when=always()),
        sh("on failure", "true", when=failure()),
    )
    res = executor.run(j, make_run())

    assert res.outcome is JobOutcome.FAILURE
    assert res.failure_kind is FailureKind.STEP
    assert res.reason == "step 'unit' failed"
    assert [s.outcome for s in res.steps] == [
        StepOutcome.FAILURE,
        StepOutcome.SKIPPED,
        StepOutcome.SUCCESS,
        StepOutcome.SUCCESS,
    ]
    assert res.steps[0].exit_code == 2


def test_set_e_stops_a_multi_line_script(executor):
    res = executor.run(job("multi", sh("multi", "false\ntouch reached")), make_run())
    assert res.outcome is JobOutcome.FAILURE
    assert res.steps[0].exit_code == 1


def test_continue_on_error_is_tolerated(executor):
    j = job(
        "lint",
        sh("lint", "exit 3", id="lint", continue_on_error=True),
        sh("after", "true"),
    )
    res = executor.run(j, make_run())

    assert res.outcome is JobOutcome.SUCCESS
    lint = res.steps[0]
    assert lint.outcome is StepOutcome.FAILURE
    assert lint.conclusion is StepOutcome.SUCCESS
    assert lint.failure_kind is FailureKind.TOLERATED
    assert res.steps[1].outcome is StepOutcome.SUCCESS


def test_tolerated_failure_reported_by_annotation(executor):
    j = job(
        "format",
        sh("cargo fmt", "exit 1", id="fmt", continue_on_error=True),
        annotate(FMT_HELP, when=step_failed("fmt")),
    )
    res = executor.run(j, make_run())

    assert res.outcome is JobOutcome.FAILURE
    assert res.failure_kind is FailureKind.TOLERATED
    assert len(res.annotations) == 1
    note = res.annotations[0]
    assert note.message == FMT_HELP
    assert note.severity is Severity.ERROR
    assert note.job == "format"


def test_annotation_step_skipped_when_check_passes(executor):
    j = job(
        "format",
        sh("cargo fmt", "true", id="fmt", continue_on_error=True),
        annotate(FMT_HELP, when=step_failed("fmt")),
    )
    res = executor.run(j, make_run())

    assert res.outcome is JobOutcome.SUCCESS
    assert res.steps[1].outcome is StepOutcome.SKIPPED
    assert res.annotations == []


def test_warning_annotation_does_not_fail(executor):
    res = executor.run(job("notes", annotate("heads up", severity="warning")), make_run())
    assert res.outcome is JobOutcome.SUCCESS
    assert res.annotations[0].severity is Severity.WARNING


def test_setup_failure_stops_the_job_at_once(executor):
    j = job(
        "check",
        Step(name="Install packages", run="exit 100", kind=StepKind.SETUP, continue_on_error=True),
        sh("cleanup", "true", when=always()),
    )
    res = executor.run(j, make_run())

    assert res.outcome is JobOutcome.FAILURE
    assert res.failure_kind is FailureKind.SETUP
    assert len(res.steps) == 1
    assert res.steps[0].failure_kind is FailureKind.SETUP
    assert res.steps[0].exit_code == 100


def test_inline_setup_helper_marks_setup_kind(executor):
    res = executor.run(job("check", setup("protoc", "exit 1"), sh("build", "true")), make_run())
    assert res.failure_kind is FailureKind.SETUP


def test_unknown_action_is_a_setup_failure(executor):
    res = executor.run(job("check", uses("does-not-exist"), sh("build", "true")), make_run())
    assert res.outcome is JobOutcome.FAILURE
    assert res.failure_kind is FailureKind.SETUP
    assert "Unknown action" in res.steps[0].output


def test_missing_required_tool_fails_setup_with_hint(executor):
    j = job("check", sh("build", "true"), requires=["fleetci-no-such-tool"])
    res = executor.run(j, make_run())

    assert res.outcome is JobOutcome.FAILURE
    assert res.failure_kind is FailureKind.SETUP
    assert res.steps[0].name == "Check required tools"
    assert "fleetci-no-such-tool not found" in res.steps[0].output
    assert len(res.steps) == 1


def test_job_on_cancelled_run_does_not_start(executor):
    run = make_run()
    run.cancel("superseded")
    res = executor.run(job("check", sh("build", "touch should-not-exist")), run)

    assert res.outcome is JobOutcome.CANCELLED
    assert res.failure_kind is FailureKind.CANCELLATION
    assert res.steps == []


def test_cancellation_terminates_the_running_step(executor):
    run = make_run()
    j = job("slow", sh("sleep", "sleep 30"), sh("never", "true"))
    box = {}

    worker = threading.Thread(target=lambda: box.setdefault("res", executor.run(j, run)))
    started = time.monotonic()
    worker.start()
    time.sleep(0.5)
    run.cancel("superseded by run xyz")
    worker.join(timeout=15)

    assert not worker.is_alive()
    assert time.monotonic() - started < 15
    res = box["res"]
    assert res.outcome is JobOutcome.CANCELLED
    assert res.reason == "superseded by run xyz"
    assert [s.outcome for s in res.steps] == [StepOutcome.CANCELLED]


def test_bad_annotation_severity_is_a_setup_failure(executor):
    j = job("check", sh("build", "true"), uses("annotate", "Report", message="hi", severity="loud"))
    res = executor.run(j, make_run())

    assert res.outcome is JobOutcome.FAILURE
    assert res.failure_kind is FailureKind.SETUP
    step = res.steps[-1]
    assert step.name == "Report"
    assert "annotate severity must be one of" in step.output
    assert step.annotations == []
