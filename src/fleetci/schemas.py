from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .model import EventKind, Run, TriggerEvent

# -------------------- Requests --------------------

class TriggerRequest(BaseModel):
    kind: EventKind
    ref: str
    sha: str = ""
    action: Optional[str] = None
    pr_number: Optional[int] = None
    changed_paths: list[str] = Field(default_factory=list)

    def to_event(self) -> TriggerEvent:
        return TriggerEvent(
            kind=self.kind,
            ref=self.ref,
            sha=self.sha,
            action=self.action,
            pr_number=self.pr_number,
            changed_paths=list(self.changed_paths),
        )

# -------------------- Reports --------------------

class AnnotationOut(BaseModel):
    severity: str
    message: str
    job: str
    step: Optional[str] = None
    title: Optional[str] = None
    file: Optional[str] = None
    line: Optional[int] = None


class StepOut(BaseModel):
    name: str
    key: str
    outcome: str
    conclusion: str
    exit_code: Optional[int] = None
    failure_kind: Optional[str] = None
    duration: float = 0.0


class JobOut(BaseModel):
    name: str
    outcome: str
    failure_kind: Optional[str] = None
    reason: Optional[str] = None
    cache: Optional[str] = None
    template: Optional[str] = None
    steps: list[StepOut] = Field(default_factory=list)


class TriggerOut(BaseModel):
    kind: str
    ref: str
    sha: str = ""
    action: Optional[str] = None
    pr_number: Optional[int] = None
    changed_paths: list[str] = Field(default_factory=list)


class RunOut(BaseModel):
    id: str
    pipeline: str
    status: str
    group_key: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    trigger: TriggerOut
    jobs: list[JobOut] = Field(default_factory=list)
    annotations: list[AnnotationOut] = Field(default_factory=list)

    @classmethod
    def from_run(cls, run: Run) -> "RunOut":
        t = run.trigger
        return cls(
            id=run.id,
            pipeline=run.pipeline,
            status=run.status.value,
            group_key=run.group_key,
            started_at=run.started_at,
            finished_at=run.finished_at,
            cancel_reason=run.cancel_reason,
            trigger=TriggerOut(
                kind=t.kind.value,
                ref=t.ref,
                sha=t.sha,
                action=t.action,
                pr_number=t.pr_number,
                changed_paths=list(t.changed_paths),
            ),
            jobs=[
                JobOut(
                    name=j.name,
                    outcome=j.outcome.value,
                    failure_kind=j.failure_kind.value if j.failure_kind else None,
                    reason=j.reason,
                    cache=j.cache,
                    template=j.template,
                    steps=[
                        StepOut(
                            name=s.name,
                            key=s.key,
                            outcome=s.outcome.value,
                            conclusion=s.conclusion.value,
                            exit_code=s.exit_code,
                            failure_kind=s.failure_kind.value if s.failure_kind else None,
                            duration=s.duration,
                        )
                        for s in j.steps
                    ],
                )
                for j in run.jobs.values()
            ],
            annotations=[
                AnnotationOut(
                    severity=a.severity.value,
                    message=a.message,
                    job=a.job,
                    step=a.step,
                    title=a.title,
                    file=a.file,
                    line=a.line,
                )
                for a in run.annotations
            ],
        )


class TriggerResponse(BaseModel):
    created: bool
    reason: str
    run_id: Optional[str] = None
    group_key: Optional[str] = None
    cancelled: list[str] = Field(default_factory=list)
