# runner.py
from __future__ import annotations

import runpy
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional

from .actions import ActionRegistry
from .cache import CacheManager, CacheStore
from .concurrency import ConcurrencyController, group_key
from .dag import build_dag
from .errors import WorkflowError
from .executor import JobExecutor
from .model import EventKind, Job, JobResult, Pipeline, Run, TriggerEvent, TriggerFilter
from .report import Aggregator, report
from .scheduler import Scheduler
from .settings import Settings
from .triggers import should_trigger
from .ui.console import Console, get_console

if TYPE_CHECKING:
    from .archive import RunArchive


# ----------------------------------------------------------------------
# Workflow loading (local file/module)
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a python file path.

    The file must define one of:
      - workflow() -> Pipeline | List[Job]
      - PIPELINE = Pipeline(...)
      - JOBS = [Job, ...]

    A bare job list becomes a pipeline named after the file that runs on
    every event kind without filters.
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix != ".py":
        raise WorkflowError(f"Workflow must be a .py file, got: {wf_path.name}")

    module_name = f"fleetci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    loaded = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        loaded = globals_dict["workflow"]()
    elif "PIPELINE" in globals_dict:
        loaded = globals_dict["PIPELINE"]
    elif "JOBS" in globals_dict:
        loaded = globals_dict["JOBS"]

    if isinstance(loaded, Pipeline):
        pipeline = loaded
    elif isinstance(loaded, list) and loaded and all(isinstance(j, Job) for j in loaded):
        pipeline = Pipeline(
            name=wf_path.stem,
            jobs=loaded,
            on={kind: TriggerFilter() for kind in EventKind},
        )
    else:
        raise WorkflowError(
            "Workflow must return/define a Pipeline or a non-empty List[Job]. "
            "Define workflow(), PIPELINE = pipeline(...) or JOBS = [Job, ...].",
            path=str(wf_path),
        )

    build_dag(pipeline.jobs)  # fail early on duplicates, missing needs, cycles
    return pipeline


# ----------------------------------------------------------------------
# Orchestration
# ----------------------------------------------------------------------

@dataclass
class TriggerOutcome:
    run: Optional[Run]
    reason: str
    cancelled: List[Run] = field(default_factory=list)


class Orchestrator:
    """
    trigger(event)  -> filters, creates the Run, admits it through the
                       concurrency controller (possibly cancelling older runs)
    execute(run)    -> schedules jobs, aggregates, archives, reports

    trigger() is cheap and synchronous; execute() blocks until the run is
    done and may be called from a background thread.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        *,
        source_root: str | Path = ".",
        settings: Settings | None = None,
        console: Console | None = None,
        controller: ConcurrencyController | None = None,
        archive: "RunArchive | None" = None,
        actions: ActionRegistry | None = None,
    ):
        build_dag(pipeline.jobs)
        self.pipeline = pipeline
        self.settings = settings or Settings.from_env()
        self.console = console or get_console()
        self.controller = controller or ConcurrencyController()
        self.archive = archive

        self.cache = CacheManager(
            CacheStore(self.settings.cache_dir),
            protected_ref=pipeline.protected_ref,
            console=self.console,
        )
        self.executor = JobExecutor(
            source_root=source_root,
            cache=self.cache,
            actions=actions,
            console=self.console,
            work_root=self.settings.work_dir,
            grace_period=self.settings.grace_seconds,
            output_limit=self.settings.output_limit,
        )
        self.scheduler = Scheduler(
            self.executor,
            max_workers=self.settings.max_workers,
            console=self.console,
        )
        self.aggregator = Aggregator(self.console)

        self._lock = threading.Lock()
        self._runs: Dict[str, Run] = {}

    def trigger(self, event: TriggerEvent) -> TriggerOutcome:
        ok, reason = should_trigger(self.pipeline, event)
        if not ok:
            self.console.print_not_triggered(reason)
            return TriggerOutcome(run=None, reason=reason)

        run = Run(
            pipeline=self.pipeline.name,
            trigger=event,
            group_key=group_key(self.pipeline.name, event),
            env=dict(self.pipeline.env),
        )
        for j in self.pipeline.jobs:
            run.jobs[j.name] = JobResult(name=j.name, template=j.template)

        with self._lock:
            self._runs[run.id] = run

        cancelled = self.controller.admit(run, self.pipeline.concurrency)
        for old in cancelled:
            self.console.print_run_cancelled(old.id, old.cancel_reason or "superseded")
        return TriggerOutcome(run=run, reason=reason, cancelled=cancelled)

    def execute(self, run: Run) -> Run:
        try:
            if not run.cancelled:
                self.console.print_run_started(
                    pipeline=run.pipeline,
                    run_id=run.id,
                    ref=run.trigger.ref_name,
                    event=run.trigger.kind.value,
                    group_key=run.group_key,
                    job_count=len(self.pipeline.jobs),
                )
            self.scheduler.dispatch(run, self.pipeline.jobs)
            self.aggregator.finalize(run, self.pipeline.jobs)
        finally:
            self.controller.release(run)
            self.cache.forget_run(run)

        if self.archive is not None:
            self.archive.record(run)
        self._retire(run)
        report(run, self.console)
        return run

    def _retire(self, run: Run) -> None:
        """Archived runs leave memory; without an archive keep the newest `keep_runs`."""
        with self._lock:
            if self.archive is not None:
                self._runs.pop(run.id, None)
                return
            finished = [rid for rid, r in self._runs.items() if r.done]
            for rid in finished[: max(0, len(finished) - self.settings.keep_runs)]:
                del self._runs[rid]

    def handle(self, event: TriggerEvent) -> Optional[Run]:
        """trigger + execute in the calling thread."""
        outcome = self.trigger(event)
        if outcome.run is None:
            return None
        return self.execute(outcome.run)

    def cancel(self, run_id: str, reason: str = "cancelled by user") -> bool:
        run = self.get_run(run_id)
        if run is None or run.done or run.cancelled:
            return False
        run.cancel(reason)
        return True

    def get_run(self, run_id: str) -> Optional[Run]:
        with self._lock:
            return self._runs.get(run_id)

    def runs(self) -> List[Run]:
        with self._lock:
            return sorted(self._runs.values(), key=lambda r: r.started_at, reverse=True)
