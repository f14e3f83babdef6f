from datetime import datetime, timezone

from fleetci.concurrency import ConcurrencyController, group_key, should_cancel_in_progress
from fleetci.model import ConcurrencyPolicy, RunStatus

from _support import make_run, pr_event, push_event

POLICY = ConcurrencyPolicy(cancel_in_progress=True, protected_ref="main")


def test_group_key_prefers_change_request_number():
    assert group_key("CI", pr_event(number=42, sha="aaa")) == "CI-42"
    assert group_key("CI", push_event(sha="bbb")) == "CI-bbb"


def test_cancel_predicate():
    assert should_cancel_in_progress(POLICY, pr_event(ref="feature"))
    assert not should_cancel_in_progress(POLICY, push_event(ref="main"))
    assert not should_cancel_in_progress(POLICY, push_event(ref="refs/heads/main"))
    assert not should_cancel_in_progress(
        ConcurrencyPolicy(cancel_in_progress=False), pr_event(ref="feature")
    )


def test_new_change_request_run_supersedes_older_one():
    ctl = ConcurrencyController()
    first = make_run(pr_event(number=7, sha="one"))
    second = make_run(pr_event(number=7, sha="two"))

    assert ctl.admit(first, POLICY) == []
    cancelled = ctl.admit(second, POLICY)

    assert cancelled == [first]
    assert first.status is RunStatus.CANCELLED
    assert first.token.cancelled
    assert first.cancel_reason == f"superseded by run {second.id}"
    assert not second.cancelled
    assert ctl.active("CI-7") == [second]


def test_protected_branch_runs_are_never_cancelled():
    ctl = ConcurrencyController()
    first = make_run(push_event(ref="main", sha="same"))
    second = make_run(push_event(ref="main", sha="same"))

    ctl.admit(first, POLICY)
    assert ctl.admit(second, POLICY) == []
    assert not first.cancelled
    assert ctl.active("CI-same") == [first, second]


def test_other_groups_are_untouched():
    ctl = ConcurrencyController()
    a = make_run(pr_event(number=1))
    b = make_run(pr_event(number=2))
    ctl.admit(a, POLICY)
    ctl.admit(b, POLICY)
    assert not a.cancelled


def test_finished_runs_are_not_cancelled():
    ctl = ConcurrencyController()
    old = make_run(pr_event(number=3))
    ctl.admit(old, POLICY)
    old.status = RunStatus.SUCCEEDED
    old.finished_at = datetime.now(timezone.utc)

    assert ctl.admit(make_run(pr_event(number=3)), POLICY) == []
    assert old.status is RunStatus.SUCCEEDED


def test_release_forgets_the_run():
    ctl = ConcurrencyController()
    run = make_run(pr_event(number=9))
    ctl.admit(run, POLICY)
    ctl.release(run)
    assert ctl.active("CI-9") == []
