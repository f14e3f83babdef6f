# model.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .cancel import CancelToken


class StepKind(str, Enum):
    SETUP = "setup"
    COMMAND = "command"


class StepOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class JobOutcome(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (JobOutcome.PENDING, JobOutcome.RUNNING)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureKind(str, Enum):
    SETUP = "setup_failure"
    STEP = "step_failure"
    TOLERATED = "tolerated_failure"
    CANCELLATION = "cancellation"
    CACHE = "cache_failure"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    NOTICE = "notice"


class EventKind(str, Enum):
    MANUAL = "manual"
    PULL_REQUEST = "pull_request"
    PUSH = "push"


# ----------------------------------------------------------------------
# Definitions (what the workflow file declares)
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Condition:
    """
    Step guard, evaluated right before the step would run.

    status:
      - "success": only while the job has not failed (the default)
      - "failure": only once the job has failed
      - "always":  regardless of job state
    step_id/outcome optionally narrow it to a prior step's raw outcome,
    e.g. run only if step "fmt" had outcome "failure".
    """
    status: str = "success"
    step_id: Optional[str] = None
    outcome: Optional[StepOutcome] = None

    def evaluate(self, job_failed: bool, outcomes: Dict[str, StepOutcome]) -> bool:
        if self.status == "success" and job_failed:
            return False
        if self.status == "failure" and not job_failed:
            return False
        if self.step_id is not None:
            return outcomes.get(self.step_id) == self.outcome
        return True


@dataclass(frozen=True)
class Step:
    """A single action inside a job: an inline command or a reusable action."""
    name: str
    run: str = ""
    id: str | None = None
    kind: StepKind = StepKind.COMMAND
    uses: str | None = None
    params: Dict[str, Any] = field(default_factory=dict, hash=False)
    condition: Condition = field(default_factory=Condition)
    continue_on_error: bool = False
    cwd: str | None = None

    @property
    def key(self) -> str:
        return self.id or self.name

    @property
    def is_setup(self) -> bool:
        return self.kind is StepKind.SETUP


@dataclass(frozen=True)
class CacheSpec:
    """Job cache: a literal tag (combined with the branch name) and the paths to keep."""
    tag: str
    paths: List[str] = field(default_factory=list, hash=False)
    save: bool = True  # still gated on the protected line


@dataclass
class Job:
    """
    A CI job: ordered steps + dependencies + metadata for caching/reporting.

    `template`/`variant` are set on jobs expanded from a matrix; each variant
    is still its own Job with its own outcome.
    """
    name: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    requires: list[str] = field(default_factory=list)
    soft_fail: bool = False
    cache: Optional[CacheSpec] = None
    display_name: str | None = None
    template: str | None = None
    variant: Dict[str, str] = field(default_factory=dict)

    @property
    def title(self) -> str:
        return self.display_name or self.name


@dataclass
class TriggerFilter:
    """Per-event trigger filter. Patterns support `!` negation, last match wins."""
    types: Optional[List[str]] = None
    branches: Optional[List[str]] = None
    paths_ignore: Optional[List[str]] = None


@dataclass
class ConcurrencyPolicy:
    cancel_in_progress: bool = True
    protected_ref: str = "main"


@dataclass
class Pipeline:
    name: str
    jobs: List[Job]
    on: Dict[EventKind, TriggerFilter] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    concurrency: ConcurrencyPolicy = field(default_factory=ConcurrencyPolicy)

    @property
    def protected_ref(self) -> str:
        return self.concurrency.protected_ref

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


@dataclass
class TriggerEvent:
    kind: EventKind
    ref: str
    sha: str = ""
    action: Optional[str] = None
    pr_number: Optional[int] = None
    changed_paths: List[str] = field(default_factory=list)

    @property
    def ref_name(self) -> str:
        for prefix in ("refs/heads/", "refs/tags/"):
            if self.ref.startswith(prefix):
                return self.ref[len(prefix):]
        return self.ref


# ----------------------------------------------------------------------
# Results (what a run produces)
# ----------------------------------------------------------------------

@dataclass
class Annotation:
    severity: Severity
    message: str
    job: str
    step: str | None = None
    title: str | None = None
    file: str | None = None
    line: int | None = None


@dataclass
class StepResult:
    """
    `outcome` is the raw result; `conclusion` is what the job sees after
    continue-on-error is applied.
    """
    name: str
    key: str
    outcome: StepOutcome
    conclusion: StepOutcome
    exit_code: int | None = None
    output: str = ""
    failure_kind: FailureKind | None = None
    annotations: List[Annotation] = field(default_factory=list)
    duration: float = 0.0


@dataclass
class JobResult:
    name: str
    outcome: JobOutcome = JobOutcome.PENDING
    steps: List[StepResult] = field(default_factory=list)
    failure_kind: FailureKind | None = None
    reason: str | None = None
    cache: str | None = None
    template: str | None = None

    @property
    def annotations(self) -> List[Annotation]:
        out: List[Annotation] = []
        for s in self.steps:
            out.extend(s.annotations)
        return out

    def failed_step(self) -> StepResult | None:
        for s in self.steps:
            if s.conclusion is StepOutcome.FAILURE:
                return s
        return None


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Run:
    """One execution of a pipeline for a single trigger."""
    pipeline: str
    trigger: TriggerEvent
    group_key: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: RunStatus = RunStatus.PENDING
    started_at: datetime = field(default_factory=_now)
    finished_at: datetime | None = None
    env: Dict[str, str] = field(default_factory=dict)
    jobs: Dict[str, JobResult] = field(default_factory=dict)
    annotations: List[Annotation] = field(default_factory=list)
    token: CancelToken = field(default_factory=CancelToken, repr=False)
    cancel_reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.status is RunStatus.CANCELLED or self.token.cancelled

    @property
    def done(self) -> bool:
        return self.finished_at is not None

    def cancel(self, reason: str = "cancelled") -> None:
        # Status flips before the token so no job can report pass/fail first.
        self.status = RunStatus.CANCELLED
        self.cancel_reason = reason
        self.token.cancel(reason)
