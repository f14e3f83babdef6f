# concurrency.py
from __future__ import annotations

import threading
from typing import Dict, List

from .model import ConcurrencyPolicy, Run, TriggerEvent


def group_key(pipeline_name: str, event: TriggerEvent) -> str:
    """
    `<pipeline>-<change-request number>` for PR events, `<pipeline>-<sha>`
    otherwise (falls back to the ref when no sha is known).
    """
    ident = event.pr_number if event.pr_number is not None else (event.sha or event.ref)
    return f"{pipeline_name}-{ident}"


def should_cancel_in_progress(policy: ConcurrencyPolicy, event: TriggerEvent) -> bool:
    """Pure predicate: may a new run for `event` cancel older runs in its group?"""
    return policy.cancel_in_progress and event.ref_name != policy.protected_ref


class ConcurrencyController:
    """
    Tracks active runs per concurrency group.

    admit() is the only cross-run interaction in the engine: it cancels
    superseded runs when the policy allows and registers the new one.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Dict[str, List[Run]] = {}

    def admit(self, run: Run, policy: ConcurrencyPolicy) -> List[Run]:
        """Register `run`; return the runs it cancelled."""
        cancelled: List[Run] = []
        with self._lock:
            prior = [r for r in self._active.get(run.group_key, []) if not r.done]
            if prior and should_cancel_in_progress(policy, run.trigger):
                for old in prior:
                    if not old.cancelled:
                        old.cancel(f"superseded by run {run.id}")
                        cancelled.append(old)
                prior = []
            self._active[run.group_key] = prior + [run]
        return cancelled

    def release(self, run: Run) -> None:
        with self._lock:
            runs = self._active.get(run.group_key, [])
            remaining = [r for r in runs if r is not run]
            if remaining:
                self._active[run.group_key] = remaining
            else:
                self._active.pop(run.group_key, None)

    def active(self, key: str) -> List[Run]:
        with self._lock:
            return list(self._active.get(key, []))
