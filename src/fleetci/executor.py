# executor.py
from __future__ import annotations

import os
import re
import signal
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Dict, Optional

from .actions import (
    ActionContext,
    ActionRegistry,
    default_registry,
    missing_tools,
    tool_hint,
)
from .cache import CacheManager
from .cancel import CancelToken
from .errors import WorkflowError
from .model import (
    FailureKind,
    Job,
    JobOutcome,
    JobResult,
    Run,
    Step,
    StepOutcome,
    StepResult,
)
from .ui.console import Console, get_console


def _tail(text: str | None, limit: int) -> str:
    text = text or ""
    return text[-limit:] if limit > 0 else text


def _slug(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "-", name).strip("-") or "job"


class JobExecutor:
    """
    Runs one job's steps, in order, inside a fresh temporary workspace.

    Step failures are returned as StepResult/JobResult values; nothing here
    raises for a failing command. The job state machine:

      setup step fails             -> failure (setup_failure), stop at once
      command fails                -> failure (step_failure), later steps run
                                      only if their condition allows
      command fails, continue-on-error
                                   -> recorded (tolerated_failure), job goes on
      run cancelled                -> cancelled, current process terminated
    """

    def __init__(
        self,
        *,
        source_root: str | Path = ".",
        cache: CacheManager | None = None,
        actions: ActionRegistry | None = None,
        console: Console | None = None,
        work_root: str | Path | None = None,
        grace_period: float = 10.0,
        poll_interval: float = 0.1,
        output_limit: int = 4000,
        shell: str = "/bin/sh",
    ):
        self.source_root = Path(source_root).resolve()
        self.cache = cache
        self.actions = actions or default_registry()
        self.console = console or get_console()
        self.work_root = Path(work_root).resolve() if work_root else None
        self.grace_period = grace_period
        self.poll_interval = poll_interval
        self.output_limit = output_limit
        self.shell = shell

    # ------------------------------------------------------------------
    # Job
    # ------------------------------------------------------------------

    def run(self, job: Job, run: Run) -> JobResult:
        result = JobResult(name=job.name, outcome=JobOutcome.RUNNING, template=job.template)
        if run.cancelled:
            result.outcome = JobOutcome.CANCELLED
            result.failure_kind = FailureKind.CANCELLATION
            return result

        self.console.print_job_start(job.name)
        if self.work_root is not None:
            self.work_root.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(
            prefix=f"fleetci-{_slug(job.name)}-",
            dir=str(self.work_root) if self.work_root else None,
            ignore_cleanup_errors=True,
        ) as tmp:
            workspace = Path(tmp)
            env = self._job_env(job, run, workspace)
            self._drive(job, run, workspace, env, result)

        self.console.print_job_done(job.name, result.outcome.value, result.reason)
        return result

    def _job_env(self, job: Job, run: Run, workspace: Path) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(run.env)
        env.update(job.env)
        env.update({
            "CI": "true",
            "FLEETCI": "true",
            "FLEETCI_RUN_ID": run.id,
            "FLEETCI_JOB": job.name,
            "FLEETCI_EVENT": run.trigger.kind.value,
            "FLEETCI_REF": run.trigger.ref_name,
            "FLEETCI_SHA": run.trigger.sha,
            "FLEETCI_WORKSPACE": str(workspace),
        })
        for k, v in job.variant.items():
            env[f"FLEETCI_MATRIX_{k.upper().replace('-', '_')}"] = str(v)
        return env

    def _drive(
        self,
        job: Job,
        run: Run,
        workspace: Path,
        env: Dict[str, str],
        result: JobResult,
    ) -> None:
        outcomes: Dict[str, StepOutcome] = {}
        job_failed = False
        tolerated = False
        prepared = False
        cancelled = False

        for step in job.steps:
            if run.cancelled:
                cancelled = True
                break

            # tools + cache restore happen once, right before the first command step
            if not step.is_setup and not prepared:
                prepared = True
                failure = self._prepare(job, run, workspace, env, result)
                if failure is not None:
                    result.steps.append(failure)
                    job_failed = True
                    result.failure_kind = FailureKind.SETUP
                    result.reason = failure.output
                    break

            if not step.condition.evaluate(job_failed, outcomes):
                self.console.print_step_skipped(job.name, step.name)
                outcomes[step.key] = StepOutcome.SKIPPED
                result.steps.append(StepResult(
                    name=step.name,
                    key=step.key,
                    outcome=StepOutcome.SKIPPED,
                    conclusion=StepOutcome.SKIPPED,
                ))
                continue

            sr = self._run_step(job, step, workspace, env, run.token)
            outcomes[step.key] = sr.outcome
            result.steps.append(sr)

            if sr.outcome is StepOutcome.CANCELLED:
                cancelled = True
                break
            if sr.outcome is not StepOutcome.FAILURE:
                continue

            if step.is_setup or sr.failure_kind is FailureKind.SETUP:
                sr.failure_kind = FailureKind.SETUP
                self.console.print_step_failure(job.name, step.name, sr.exit_code, sr.output)
                job_failed = True
                result.failure_kind = FailureKind.SETUP
                result.reason = f"setup step '{step.name}' failed"
                break

            if step.continue_on_error:
                sr.conclusion = StepOutcome.SUCCESS
                sr.failure_kind = FailureKind.TOLERATED
                tolerated = True
                self.console.print_step_failure(
                    job.name, step.name, sr.exit_code, sr.output, tolerated=True
                )
                continue

            # an annotation step reporting an earlier tolerated failure
            if tolerated and sr.annotations:
                sr.failure_kind = FailureKind.TOLERATED
            else:
                sr.failure_kind = FailureKind.STEP
            self.console.print_step_failure(job.name, step.name, sr.exit_code, sr.output)
            if not job_failed:
                result.failure_kind = sr.failure_kind
                result.reason = f"step '{step.name}' failed"
            job_failed = True

        if cancelled:
            result.outcome = JobOutcome.CANCELLED
            result.failure_kind = FailureKind.CANCELLATION
            result.reason = run.token.reason or run.cancel_reason
            return

        if not prepared and not job_failed:
            failure = self._prepare(job, run, workspace, env, result)
            if failure is not None:
                result.steps.append(failure)
                job_failed = True
                result.failure_kind = FailureKind.SETUP
                result.reason = failure.output

        if job_failed:
            result.outcome = JobOutcome.FAILURE
            return

        result.outcome = JobOutcome.SUCCESS
        if self.cache is not None and job.cache is not None:
            saved = self.cache.save(job, run, workspace)
            self.console.print_cache(job.name, saved.reason)
            result.cache = f"{result.cache}; {saved.reason}" if result.cache else saved.reason

    def _prepare(
        self,
        job: Job,
        run: Run,
        workspace: Path,
        env: Dict[str, str],
        result: JobResult,
    ) -> Optional[StepResult]:
        """Check declared tools, then restore the cache. Returns a failure or None."""
        missing = missing_tools(job.requires, env.get("PATH"))
        if missing:
            hints = "; ".join(f"{t} not found: {tool_hint(t)}" for t in missing)
            self.console.print_step_failure(job.name, "Check required tools", None, hints)
            return StepResult(
                name="Check required tools",
                key="__requires__",
                outcome=StepOutcome.FAILURE,
                conclusion=StepOutcome.FAILURE,
                output=hints,
                failure_kind=FailureKind.SETUP,
            )

        if self.cache is not None and job.cache is not None:
            hit = self.cache.restore(job, run, workspace)
            result.cache = hit.reason
            self.console.print_cache(job.name, hit.reason)
        return None

    # ------------------------------------------------------------------
    # Step
    # ------------------------------------------------------------------

    def _run_step(
        self,
        job: Job,
        step: Step,
        workspace: Path,
        env: Dict[str, str],
        token: CancelToken,
    ) -> StepResult:
        if token.cancelled:
            return StepResult(step.name, step.key, StepOutcome.CANCELLED, StepOutcome.CANCELLED)

        self.console.print_step(job.name, step.name)
        started = time.monotonic()

        def done(exit_code: int | None, output: str = "", **kw) -> StepResult:
            outcome = StepOutcome.SUCCESS if exit_code == 0 else StepOutcome.FAILURE
            return StepResult(
                name=step.name,
                key=step.key,
                outcome=outcome,
                conclusion=outcome,
                exit_code=exit_code,
                output=_tail(output, self.output_limit),
                duration=time.monotonic() - started,
                **kw,
            )

        cwd = (workspace / (step.cwd or ".")).resolve()
        if not cwd.is_dir():
            return done(1, f"step cwd not found: {cwd}")

        script = step.run
        if step.uses:
            try:
                action = self.actions.get(step.uses)
                if action.handler is not None:
                    ctx = ActionContext(job, step, workspace, self.source_root, env)
                    out = action.handler(ctx, dict(step.params))
                    return done(out.exit_code, out.output, annotations=out.annotations)
                script = "\n".join(action.commands(dict(step.params)))
            except WorkflowError as e:
                return done(1, str(e), failure_kind=FailureKind.SETUP)
            except OSError as e:
                return done(1, f"{type(e).__name__}: {e}")

        if not script.strip():
            return done(1, "step has nothing to run", failure_kind=FailureKind.SETUP)

        exit_code, output, cancelled = self._exec(script, cwd, env, token)
        if cancelled:
            return StepResult(
                name=step.name,
                key=step.key,
                outcome=StepOutcome.CANCELLED,
                conclusion=StepOutcome.CANCELLED,
                exit_code=exit_code,
                output=_tail(output, self.output_limit),
                failure_kind=FailureKind.CANCELLATION,
                duration=time.monotonic() - started,
            )
        return done(exit_code, output)

    def _exec(
        self,
        script: str,
        cwd: Path,
        env: Dict[str, str],
        token: CancelToken,
    ) -> tuple[int | None, str, bool]:
        """
        Run `script` with `set -e`, polling the cancellation token.
        Returns (exit_code, combined stdout/stderr, cancelled).
        """
        try:
            proc = subprocess.Popen(
                "set -e\n" + script,
                shell=True,
                executable=self.shell,
                cwd=str(cwd),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                start_new_session=True,  # own process group, so cancel reaches children
            )
        except OSError as e:
            return 127, f"could not start {self.shell}: {e}", False

        while True:
            try:
                out, _ = proc.communicate(timeout=self.poll_interval)
                return proc.returncode, out or "", False
            except subprocess.TimeoutExpired:
                if token.cancelled:
                    out = self._terminate(proc)
                    return proc.returncode, out, True

    def _terminate(self, proc: subprocess.Popen) -> str:
        """SIGTERM the process group; SIGKILL once the grace period is over."""
        self._signal(proc, signal.SIGTERM)
        try:
            out, _ = proc.communicate(timeout=self.grace_period)
        except subprocess.TimeoutExpired:
            self._signal(proc, signal.SIGKILL)
            out, _ = proc.communicate()
        return out or ""

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int) -> None:
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
