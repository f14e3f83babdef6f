"""Console output formatting utilities for fleetci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from fleetci.model import Annotation, JobResult, Run


_OUTCOME_LABELS = {
    "success": "SUCCESS",
    "failure": "FAILED",
    "skipped": "SKIPPED",
    "cancelled": "CANCELLED",
    "pending": "PENDING",
    "running": "RUNNING",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, drop per-step chatter (results and errors still print)
        """
        self.debug = debug
        self.quiet = quiet
        # jobs run on worker threads; one line at a time
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        run_id: str,
        ref: str,
        event: str,
        group_key: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Run ID: {run_id}",
            f"Event: {event} ({ref})",
            f"Concurrency group: {group_key}",
            f"Jobs: {job_count}",
            "",
        )

    def print_run_cancelled(self, run_id: str, reason: str) -> None:
        self._out(f"RUN CANCELLED: {run_id} ({reason})")

    def print_not_triggered(self, reason: str) -> None:
        self._out(f"NO RUN: {reason}")

    def print_job_start(self, name: str) -> None:
        if not self.quiet:
            self._out(f"[{name}] JOB STARTED")

    def print_step(self, job: str, step: str) -> None:
        if not self.quiet:
            self._out(f"[{job}] ▶ {step}")

    def print_step_skipped(self, job: str, step: str) -> None:
        if not self.quiet:
            self._out(f"[{job}] ⏭ {step} (condition not met)")

    def print_step_failure(
        self,
        job: str,
        step: str,
        exit_code: Optional[int],
        output: str = "",
        tolerated: bool = False,
    ) -> None:
        """Print a failed step; output tail only in debug mode."""
        label = "STEP FAILED (continuing)" if tolerated else "STEP FAILED"
        lines = [f"[{job}] {label}: {step}"]
        if exit_code is not None:
            lines.append(f"[{job}] Exit code: {exit_code}")
        if output:
            if self.debug:
                lines.extend(f"[{job}] | {ln}" for ln in output.rstrip().splitlines())
            else:
                last = output.rstrip().splitlines()[-1:] or [""]
                lines.append(f"[{job}] Error: {last[0]}")
        self._out(*lines)

    def print_job_done(self, name: str, outcome: str, reason: Optional[str] = None) -> None:
        label = _OUTCOME_LABELS.get(outcome, outcome.upper())
        line = f"[{name}] STATUS: {label.lower()}"
        if reason:
            line += f" ({reason})"
        self._out(line)

    def print_cache(self, job: str, message: str) -> None:
        if not self.quiet:
            self._out(f"[{job}] CACHE: {message}")

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_annotation(self, annotation: "Annotation") -> None:
        """Render an annotation as a marker, attributed to its job/step."""
        where = annotation.job
        if annotation.step:
            where += f" / {annotation.step}"
        loc = ""
        if annotation.file:
            loc = f" {annotation.file}"
            if annotation.line is not None:
                loc += f":{annotation.line}"
        head = f"{annotation.severity.value.upper()} [{where}]{loc}"
        if annotation.title:
            head += f" {annotation.title}"
        body = annotation.message.strip("\n").splitlines() or [""]
        self._out(head, *(f"  {ln}" for ln in body))

    def print_plan_job(self, name: str, reason: str) -> None:
        """Print job selection plan."""
        self._out(f"  {name} ({reason})")

    def print_results(self, run: "Run") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for result in run.jobs.values():
            lines.append(f"  {result.name}: {_job_label(result)}")
        lines.append(f"RUN: {run.status.value.upper()}")
        self._out(*lines)
        if run.annotations:
            self._out("", "ANNOTATIONS")
            for a in run.annotations:
                self.print_annotation(a)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


def _job_label(result: "JobResult") -> str:
    label = _OUTCOME_LABELS.get(result.outcome.value, result.outcome.value.upper())
    if result.reason:
        label += f" ({result.reason})"
    return label


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
