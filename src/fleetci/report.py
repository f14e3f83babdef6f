# report.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List

from .model import (
    Annotation,
    FailureKind,
    Job,
    JobOutcome,
    JobResult,
    Run,
    RunStatus,
    Severity,
)
from .ui.console import Console, get_console


PASSING = (JobOutcome.SUCCESS, JobOutcome.SKIPPED)


def _generic_annotation(job: str, res: JobResult) -> Annotation | None:
    """Marker for a raw step error that did not report itself."""
    step = res.failed_step()
    if step is None:
        return Annotation(Severity.ERROR, res.reason or "job failed", job=job)
    if step.annotations:
        return None
    if step.failure_kind is FailureKind.SETUP:
        detail = f"exit code {step.exit_code}" if step.exit_code is not None else step.output.strip()
        msg = f"Setup step '{step.name}' failed: {detail}"
    else:
        msg = f"Process completed with exit code {step.exit_code}."
    return Annotation(Severity.ERROR, msg, job=job, step=step.name)


class Aggregator:
    """
    Turns job results into a run verdict plus annotations.

    - cancelled run: status cancelled, every job cancelled, no annotations
    - soft_fail job that failed (not in setup): outcome -> skipped,
      one warning annotation, does not fail the run
    - otherwise succeeded iff every job is success or skipped
    """

    def __init__(self, console: Console | None = None):
        self.console = console or get_console()

    def finalize(self, run: Run, jobs: List[Job]) -> Run:
        run.finished_at = datetime.now(timezone.utc)
        if run.cancelled:
            run.status = RunStatus.CANCELLED
            run.annotations = []
            reason = run.cancel_reason or run.token.reason
            for res in run.jobs.values():
                res.outcome = JobOutcome.CANCELLED
                res.failure_kind = FailureKind.CANCELLATION
                res.reason = reason
            return run

        by_name: Dict[str, Job] = {j.name: j for j in jobs}
        annotations: List[Annotation] = []

        for name, res in run.jobs.items():
            job = by_name.get(name)
            soft = bool(job and job.soft_fail)

            if res.outcome is JobOutcome.FAILURE and soft and res.failure_kind is not FailureKind.SETUP:
                step = res.failed_step()
                res.outcome = JobOutcome.SKIPPED
                res.reason = "soft-fail"
                if not res.annotations:
                    annotations.append(Annotation(
                        Severity.WARNING,
                        f"{job.title} failed but is allowed to fail"
                        + (f" (step '{step.name}', exit code {step.exit_code})" if step else ""),
                        job=name,
                        step=step.name if step else None,
                    ))
                # operator messages replace the marker, downgraded
                for a in res.annotations:
                    annotations.append(Annotation(
                        Severity.WARNING, a.message, job=a.job, step=a.step,
                        title=a.title, file=a.file, line=a.line,
                    ))
                continue

            annotations.extend(res.annotations)
            if res.outcome is JobOutcome.FAILURE:
                generic = _generic_annotation(name, res)
                if generic is not None:
                    annotations.append(generic)

        run.annotations = annotations
        if all(r.outcome in PASSING for r in run.jobs.values()):
            run.status = RunStatus.SUCCEEDED
        else:
            run.status = RunStatus.FAILED
        return run


def report(run: Run, console: Console | None = None) -> None:
    """Render the final verdict of a run."""
    console = console or get_console()
    if run.status is RunStatus.CANCELLED:
        console.print_run_cancelled(run.id, run.cancel_reason or "cancelled")
        return
    console.print_results(run)
