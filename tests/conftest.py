from __future__ import annotations

import pytest

from fleetci.cache import CacheManager, CacheStore
from fleetci.executor import JobExecutor
from fleetci.settings import Settings
from fleetci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def console():
    c = Console(quiet=True)
    set_console(c)
    return c


@pytest.fixture
def source(tmp_path):
    """A tiny source tree for checkout steps."""
    root = tmp_path / "repo"
    (root / "src").mkdir(parents=True)
    (root / "src" / "lib.rs").write_text("pub fn answer() -> u32 { 42 }\n")
    (root / "README.md").write_text("# demo\n")
    (root / ".git").mkdir()
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    return root


@pytest.fixture
def settings(tmp_path):
    return Settings(
        cache_dir=str(tmp_path / "cache"),
        work_dir=str(tmp_path / "work"),
        max_workers=8,
        grace_seconds=2.0,
    )


@pytest.fixture
def cache_manager(settings, console):
    return CacheManager(CacheStore(settings.cache_dir), protected_ref="main", console=console)


@pytest.fixture
def executor(source, settings, cache_manager, console):
    return JobExecutor(
        source_root=source,
        cache=cache_manager,
        console=console,
        work_root=settings.work_dir,
        grace_period=2.0,
        poll_interval=0.05,
    )
