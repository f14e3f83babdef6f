# triggers.py
# Decides whether a trigger event creates a run at all: event kind, action
# types, branch filters and path filters with `!` negation.
from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterable, List, Optional, Tuple

from .model import EventKind, Pipeline, TriggerEvent


@lru_cache(maxsize=512)
def _compile(pattern: str) -> re.Pattern:
    """
    Translate a path glob into a regex.

      **/  -> zero or more directories
      **   -> anything, including '/'
      *    -> anything except '/'
      ?    -> one char except '/'
    """
    out: List[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**/", i):
                out.append("(?:.*/)?")
                i += 3
                continue
            if pattern.startswith("**", i):
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("".join(out) + r"\Z")


def glob_match(path: str, pattern: str) -> bool:
    return _compile(pattern).match(path) is not None


def _last_match(path: str, patterns: Iterable[str]) -> Optional[bool]:
    """
    Walk patterns in order; the last one matching decides.
    Returns True (positive match), False (negated match) or None (no match).
    """
    verdict: Optional[bool] = None
    for p in patterns:
        if p.startswith("!"):
            if glob_match(path, p[1:]):
                verdict = False
        elif glob_match(path, p):
            verdict = True
    return verdict


def is_path_ignored(path: str, paths_ignore: Iterable[str]) -> bool:
    return _last_match(path, paths_ignore) is True


def branch_matches(branch: str, patterns: Iterable[str]) -> bool:
    return _last_match(branch, patterns) is True


def should_trigger(pipeline: Pipeline, event: TriggerEvent) -> Tuple[bool, str]:
    """
    Returns (create_run, reason).

    A run is created only if at least one changed path survives the
    paths-ignore filter. Manual triggers bypass path filtering.
    """
    filt = pipeline.on.get(event.kind)
    if filt is None:
        return False, f"pipeline is not triggered by {event.kind.value} events"

    if filt.types is not None and event.kind is EventKind.PULL_REQUEST:
        if event.action not in filt.types:
            return False, f"action {event.action!r} not in {filt.types}"

    if filt.branches is not None and event.kind is EventKind.PUSH:
        if not branch_matches(event.ref_name, filt.branches):
            return False, f"branch {event.ref_name!r} not matched by {filt.branches}"

    if event.kind is EventKind.MANUAL or not filt.paths_ignore:
        return True, "no path filter"

    for path in event.changed_paths:
        if not is_path_ignored(path, filt.paths_ignore):
            return True, f"changed path {path!r} is not ignored"

    return False, "all changed paths are ignored"
