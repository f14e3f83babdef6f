# git.py
# Small, focused wrapper around the Git CLI.
# The CLI uses it to fill in trigger defaults (ref, sha, changed files) when
# a run is started locally rather than from an event.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Raises subprocess.CalledProcessError on a non-zero exit and
    FileNotFoundError if git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd)


def current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Current branch name, or the HEAD sha when detached.
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd)
    return head_sha(cwd) if name == "HEAD" else name


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """True if there are modified, staged or untracked files."""
    return _git(["status", "--porcelain"], cwd) != ""


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files changed between two refs, relative to the repo root.

    Typical usage:
        base = merge_base("origin/main")
        files = changed_files(base)
    """
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd)
    return out.splitlines() if out else []


def working_tree_changes(cwd: Optional[str | Path] = None) -> List[str]:
    """Unstaged + staged + untracked paths."""
    files = set()
    for args in (
        ["diff", "--name-only"],
        ["diff", "--name-only", "--cached"],
        ["ls-files", "--others", "--exclude-standard"],
    ):
        out = _git(args, cwd)
        if out:
            files.update(out.splitlines())
    return sorted(files)


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Commit SHA of the common ancestor of HEAD and `with_ref`."""
    return _git(["merge-base", "HEAD", with_ref], cwd)


def local_changes(compare_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> List[str]:
    """
    What a local run should consider "changed":
      - dirty tree: the working tree changes
      - clean tree: HEAD vs merge-base with compare_ref (HEAD~1 as fallback)
    """
    if is_dirty(cwd):
        return working_tree_changes(cwd)
    try:
        base = merge_base(compare_ref, cwd)
    except subprocess.CalledProcessError:
        # no remote configured, unrelated histories, ...
        base = "HEAD~1"
    try:
        return changed_files(base, "HEAD", cwd)
    except subprocess.CalledProcessError:
        # first commit: everything tracked counts as changed
        out = _git(["ls-files"], cwd)
        return out.splitlines() if out else []
