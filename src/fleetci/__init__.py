from .dsl import (
    always,
    annotate,
    build,
    cache,
    checkout,
    failure,
    job,
    JobBuilder,
    matrix,
    on_pull_request,
    on_push,
    pipeline,
    setup,
    sh,
    step_failed,
    step_succeeded,
    success,
    uses,
    wf,
)
from .model import EventKind, Job, Pipeline, Run, RunStatus, Step, TriggerEvent
from .runner import Orchestrator, load_workflow

__all__ = [
    "always", "annotate", "build", "cache", "checkout", "failure", "job", "JobBuilder",
    "matrix", "on_pull_request", "on_push", "pipeline", "setup", "sh", "step_failed",
    "step_succeeded", "success", "uses", "wf",
    "EventKind", "Job", "Pipeline", "Run", "RunStatus", "Step", "TriggerEvent",
    "Orchestrator", "load_workflow",
]
