# dag.py
from __future__ import annotations

from typing import Dict, List, Set, Tuple

from .errors import WorkflowError
from .model import Job


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Job], Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: names of jobs that must succeed BEFORE this job

    Returns (by_name, adj, indeg) where adj maps a job to its dependents.
    An empty `needs` everywhere still yields a graph: every job is a root.
    """
    by_name: Dict[str, Job] = {}
    dupes: Set[str] = set()
    for j in jobs:
        if j.name in by_name:
            dupes.add(j.name)
        by_name[j.name] = j
    if dupes:
        raise WorkflowError(f"Duplicate job names found: {sorted(dupes)}")

    adj: Dict[str, Set[str]] = {n: set() for n in by_name}   # dep -> dependents
    indeg: Dict[str, int] = {n: 0 for n in by_name}

    for job in jobs:
        for dep in job.needs:
            if dep not in by_name:
                raise WorkflowError(
                    f"Job '{job.name}' needs missing job '{dep}'. "
                    f"Known jobs: {sorted(by_name)}"
                )
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

    topo_levels(adj, indeg)  # raises on cycles
    return by_name, adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Group jobs into stages: every job in a stage only needs jobs from
    earlier stages, so a stage can be dispatched all at once.
    """
    remaining = dict(indeg)
    frontier = sorted(n for n, d in remaining.items() if d == 0)
    levels: List[List[str]] = []
    seen = 0

    while frontier:
        levels.append(frontier)
        seen += len(frontier)
        unlocked: Set[str] = set()
        for name in frontier:
            for dependent in adj.get(name, ()):
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    unlocked.add(dependent)
        frontier = sorted(unlocked)

    if seen != len(remaining):
        stuck = sorted(n for n, d in remaining.items() if d > 0)
        raise WorkflowError(f"Job graph has a cycle. Stuck jobs: {stuck}")
    return levels


def descendants(adj: Dict[str, Set[str]], name: str) -> Set[str]:
    """All jobs that transitively depend on `name`."""
    seen: Set[str] = set()
    stack = list(adj.get(name, ()))
    while stack:
        n = stack.pop()
        if n in seen:
            continue
        seen.add(n)
        stack.extend(adj.get(n, ()))
    return seen
