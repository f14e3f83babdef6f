from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass(frozen=True)
class Settings:
    cache_dir: str = ".fleetci/cache"
    work_dir: Optional[str] = None      # None -> system temp dir
    max_workers: Optional[int] = None   # None -> cpu_count - 1
    grace_seconds: float = 10.0
    output_limit: int = 4000
    archive_url: Optional[str] = None   # e.g. sqlite:///.fleetci/runs.db
    workflow: Optional[str] = None
    keep_runs: int = 100                # finished runs held in memory without an archive

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        workers = env.get("FLEETCI_MAX_WORKERS")
        return cls(
            cache_dir=env.get("FLEETCI_CACHE_DIR", ".fleetci/cache"),
            work_dir=env.get("FLEETCI_WORK_DIR") or None,
            max_workers=int(workers) if workers else None,
            grace_seconds=float(env.get("FLEETCI_GRACE_SECONDS", "10")),
            output_limit=int(env.get("FLEETCI_OUTPUT_LIMIT", "4000")),
            archive_url=env.get("FLEETCI_ARCHIVE_URL") or None,
            workflow=env.get("FLEETCI_WORKFLOW") or None,
            keep_runs=int(env.get("FLEETCI_KEEP_RUNS", "100")),
        )
