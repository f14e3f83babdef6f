# cache.py
from __future__ import annotations

import json
import re
import tarfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .model import CacheSpec, Job, Run
from .ui.console import Console, get_console

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Branch-scoped caching:
#   cache_key = "<tag>-<branch>"   e.g. "warm-main"
#
# Restore order: the run's own branch, then the protected line, then cold.
# Save: only after a successful job, only on the protected line, and only
# once per key per run (first job to reserve the key writes it).
#
# Cache artifact:
#   root/<key>.tar.gz            the declared cache paths, workspace-relative
#   root/<key>.manifest.json     what was saved, when, by which run/job
#
# Nothing here may fail a job: every error becomes a miss / skipped save.
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".fleetci/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".fleetci/**",
    "**/__pycache__/**",
    "**/.DS_Store",
]


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str  # human readable
    manifest: Dict


@dataclass(frozen=True)
class CacheSave:
    saved: bool
    key: str
    reason: str


def _slug(ref: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", ref).strip("_") or "default"


def cache_key(tag: str, branch: str) -> str:
    return f"{_slug(tag)}-{_slug(branch)}"


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _inside(path: Path, root: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
        return True
    except ValueError:
        return False


def _tar_add_path(
    tar: tarfile.TarFile,
    workspace: Path,
    src: Path,
    *,
    exclude_globs: List[str],
) -> int:
    """
    Add src (file/dir) into tar under its workspace-relative name.
    Returns number of files added.
    """
    if not src.exists():
        return 0

    files = [src] if src.is_file() else list(_iter_files_under(src))
    added = 0
    for f in files:
        rel = _relpath(f, workspace)
        if _matches_any_glob(rel, exclude_globs):
            continue
        tar.add(str(f), arcname=rel, recursive=False)
        added += 1
    return added


class CacheStore:
    """
    File-based cache store:
      root/
        <key>.tar.gz
        <key>.manifest.json
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{key}.tar.gz"

    def manifest_path(self, key: str) -> Path:
        return self.root / f"{key}.manifest.json"

    def exists(self, key: str) -> bool:
        return self.artifact_path(key).exists() and self.manifest_path(key).exists()

    def restore(self, key: str, workspace: Path) -> CacheHit:
        """
        Extract the artifact for `key` into the workspace.

        NOTE: restore is "overwrite by extraction". Raises on corrupt
        artifacts; callers decide how fatal that is.
        """
        if not self.exists(key):
            return CacheHit(hit=False, key=key, reason="cache miss", manifest={})

        with tarfile.open(str(self.artifact_path(key)), mode="r:gz") as tar:
            tar.extractall(path=str(workspace), filter="data")

        try:
            stored = json.loads(self.manifest_path(key).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            stored = {}
        return CacheHit(hit=True, key=key, reason=f"restored {key}", manifest=stored)

    def save(
        self,
        key: str,
        workspace: Path,
        paths: List[str],
        manifest: Dict,
        *,
        excludes: Optional[List[str]] = None,
    ) -> Dict:
        """
        Save the workspace-relative `paths` as the artifact for `key`.
        Paths escaping the workspace are ignored.

        Build in a tmp file then atomic rename: concurrent readers see either
        the previous entry or the new one (last-committed-wins).
        """
        exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])
        art = self.artifact_path(key)
        tmp = art.with_name(f"{art.name}.{threading.get_ident()}.tmp")
        files = 0
        try:
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for entry in paths:
                    src = (workspace / entry).resolve()
                    if not _inside(src, workspace):
                        continue
                    files += _tar_add_path(tar, workspace, src, exclude_globs=exclude_globs)

            manifest = dict(manifest, key=key, files=files, saved_at_unix=int(time.time()))
            tmp.replace(art)
            self.manifest_path(key).write_text(
                json.dumps(manifest, sort_keys=True, indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)
        return manifest


class CacheManager:
    """
    Policy layer over CacheStore: key computation, protected-line save gate,
    one writer per key per run, and non-fatal error handling.
    """

    def __init__(
        self,
        store: CacheStore,
        protected_ref: str = "main",
        console: Console | None = None,
    ):
        self.store = store
        self.protected_ref = protected_ref
        self.console = console or get_console()
        self._lock = threading.Lock()
        self._reserved: Set[Tuple[str, str]] = set()

    def keys_for(self, spec: CacheSpec, run: Run) -> List[str]:
        keys = [cache_key(spec.tag, run.trigger.ref_name)]
        fallback = cache_key(spec.tag, self.protected_ref)
        if fallback not in keys:
            keys.append(fallback)
        return keys

    def can_save(self, run: Run) -> bool:
        return run.trigger.ref_name == self.protected_ref

    def restore(self, job: Job, run: Run, workspace: Path) -> CacheHit:
        if job.cache is None:
            return CacheHit(hit=False, key="", reason="no cache configured", manifest={})

        keys = self.keys_for(job.cache, run)
        failed: CacheHit | None = None
        for key in keys:
            try:
                hit = self.store.restore(key, workspace)
            except (OSError, tarfile.TarError) as e:
                self.console.print_warning(f"[{job.name}] cache restore failed for {key}: {e}")
                failed = failed or CacheHit(hit=False, key=key, reason=f"restore failed: {e}", manifest={})
                continue
            if hit.hit:
                return hit
        return failed or CacheHit(hit=False, key=keys[0], reason="cache miss", manifest={})

    def save(self, job: Job, run: Run, workspace: Path) -> CacheSave:
        if job.cache is None:
            return CacheSave(saved=False, key="", reason="no cache configured")

        key = cache_key(job.cache.tag, run.trigger.ref_name)
        if not job.cache.save:
            return CacheSave(saved=False, key=key, reason="save disabled for job")
        if not self.can_save(run):
            return CacheSave(
                saved=False, key=key,
                reason=f"not saved: {run.trigger.ref_name!r} is not {self.protected_ref!r}",
            )

        with self._lock:
            if (run.id, key) in self._reserved:
                return CacheSave(saved=False, key=key, reason="another job in this run saved it")
            self._reserved.add((run.id, key))

        try:
            self.store.save(
                key,
                workspace,
                list(job.cache.paths),
                {"run": run.id, "job": job.name, "ref": run.trigger.ref_name},
            )
        except (OSError, tarfile.TarError) as e:
            self.console.print_warning(f"[{job.name}] cache save failed for {key}: {e}")
            return CacheSave(saved=False, key=key, reason=f"save failed: {e}")
        return CacheSave(saved=True, key=key, reason=f"saved {key}")

    def forget_run(self, run: Run) -> None:
        with self._lock:
            self._reserved = {r for r in self._reserved if r[0] != run.id}
