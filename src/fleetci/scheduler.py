# scheduler.py
from __future__ import annotations

import os
from concurrent.futures import Future, ThreadPoolExecutor, wait, FIRST_COMPLETED
from typing import Dict, List, Set

from .dag import build_dag, descendants
from .executor import JobExecutor
from .model import FailureKind, Job, JobOutcome, JobResult, Run, RunStatus
from .ui.console import Console, get_console


class Scheduler:
    """
    Dispatches a run's jobs as their dependencies succeed.

    - no unmet dependencies -> submitted to the pool right away, no ordering
    - a dependency failed/skipped/cancelled -> dependents become `skipped`
    - run cancelled -> every job not yet started becomes `cancelled`

    dispatch() never re-executes a job whose result is already terminal, so
    calling it again on a cancelled run is a no-op.
    """

    def __init__(
        self,
        executor: JobExecutor,
        *,
        max_workers: int | None = None,
        console: Console | None = None,
    ):
        self.executor = executor
        self.console = console or get_console()
        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(2, c - 1)
        self.max_workers = max_workers

    def dispatch(self, run: Run, jobs: List[Job]) -> Dict[str, JobResult]:
        by_name, adj, indeg = build_dag(jobs)
        results = run.jobs
        for name, job in by_name.items():
            results.setdefault(name, JobResult(name=name, template=job.template))

        if run.cancelled:
            self._cancel_pending(run)
            return results

        if run.status is RunStatus.PENDING:
            run.status = RunStatus.RUNNING

        indeg = dict(indeg)
        blocked: Set[str] = set()
        ready: List[str] = sorted(n for n, d in indeg.items() if d == 0)
        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="fleetci-job") as pool:
            while ready or in_flight:
                while ready:
                    name = ready.pop(0)
                    current = results[name]
                    if current.outcome.terminal:
                        self._release(name, current, adj, indeg, ready, blocked, results)
                        continue
                    if run.cancelled:
                        self._mark_cancelled(current, run)
                        continue
                    current.outcome = JobOutcome.RUNNING
                    fut = pool.submit(self.executor.run, by_name[name], run)
                    in_flight[fut] = name

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    res = self._collect(fut, name, run)
                    results[name] = res
                    self._release(name, res, adj, indeg, ready, blocked, results)

        if run.cancelled:
            self._cancel_pending(run)
        return results

    def _collect(self, fut: Future, name: str, run: Run) -> JobResult:
        try:
            res = fut.result()
        except Exception as e:  # engine bug, not a step failure; isolate it to this job
            self.console.print_exception(e)
            res = JobResult(
                name=name,
                outcome=JobOutcome.FAILURE,
                failure_kind=FailureKind.STEP,
                reason=f"executor error: {type(e).__name__}: {e}",
            )
        # finished after the run was cancelled: no verdict
        if run.cancelled and res.outcome is not JobOutcome.CANCELLED:
            self._mark_cancelled(res, run)
        return res

    def _release(
        self,
        name: str,
        res: JobResult,
        adj: Dict,
        indeg: Dict[str, int],
        ready: List[str],
        blocked: Set[str],
        results: Dict[str, JobResult],
    ) -> None:
        if res.outcome is JobOutcome.SUCCESS:
            for nxt in sorted(adj[name]):
                indeg[nxt] -= 1
                if indeg[nxt] == 0 and nxt not in blocked:
                    ready.append(nxt)
            return

        for nxt in sorted(descendants(adj, name)):
            if nxt in blocked:
                continue
            blocked.add(nxt)
            dep = results[nxt]
            # dependents of a cancelled job are cancelled by _cancel_pending
            if res.outcome is not JobOutcome.CANCELLED and not dep.outcome.terminal:
                dep.outcome = JobOutcome.SKIPPED
                dep.reason = f"dependency '{name}' {res.outcome.value}"
                self.console.print_job_done(nxt, dep.outcome.value, dep.reason)

    def _mark_cancelled(self, res: JobResult, run: Run) -> None:
        res.outcome = JobOutcome.CANCELLED
        res.failure_kind = FailureKind.CANCELLATION
        res.reason = run.cancel_reason or run.token.reason

    def _cancel_pending(self, run: Run) -> None:
        for res in run.jobs.values():
            if not res.outcome.terminal:
                self._mark_cancelled(res, run)
