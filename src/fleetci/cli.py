# cli.py
from __future__ import annotations

import subprocess
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

import click

from fleetci.concurrency import group_key, should_cancel_in_progress
from fleetci.dag import build_dag, topo_levels
from fleetci.errors import CIError
from fleetci.git_facts.git import current_ref, head_sha, local_changes
from fleetci.model import EventKind, RunStatus, TriggerEvent
from fleetci.runner import Orchestrator, load_workflow
from fleetci.schemas import RunOut
from fleetci.settings import Settings
from fleetci.triggers import should_trigger
from fleetci.ui.console import Console, get_console, set_console


EXIT_CODES = {
    RunStatus.SUCCEEDED: 0,
    RunStatus.FAILED: 1,
    RunStatus.CANCELLED: 2,
}


def find_workflow_files() -> list[Path]:
    """fleetci_workflow.py first, then any other *_workflow.py in cwd."""
    current_dir = Path(".")
    default_workflow = current_dir / "fleetci_workflow.py"
    workflow_files = [default_workflow] if default_workflow.exists() else []
    others = sorted(p for p in current_dir.glob("*_workflow.py") if p != default_workflow)
    return workflow_files + others


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument, FLEETCI_WORKFLOW or the cwd.

    Raises:
        SystemExit: If workflow cannot be found or is ambiguous
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  fleetci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if not workflow_files:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", "  fleetci_workflow.py", "  *_workflow.py"],
            suggestion="Create fleetci_workflow.py or pass --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1 and workflow_files[0].name != "fleetci_workflow.py":
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[f"  {f}" for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  fleetci run --workflow fleetci_workflow.py",
        )
        sys.exit(1)

    return workflow_files[0]


def build_event(
    event: str,
    ref: Optional[str],
    sha: Optional[str],
    pr: Optional[int],
    action: str,
    changed: tuple[str, ...],
    compare_ref: str,
    source: Path,
) -> TriggerEvent:
    """Fill in whatever the user did not pass from git."""
    console = get_console()
    kind = EventKind(event)

    def from_git(fn, fallback: str) -> str:
        try:
            return fn(source)
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_debug(f"git unavailable, using {fallback!r}")
            return fallback

    ref = ref or from_git(current_ref, "main")
    sha = sha if sha is not None else from_git(head_sha, "")
    if changed:
        paths = list(changed)
    else:
        try:
            paths = local_changes(compare_ref, source)
        except (subprocess.CalledProcessError, FileNotFoundError):
            paths = []
        console.print_debug(f"changed files from git: {paths}")

    return TriggerEvent(
        kind=kind,
        ref=ref,
        sha=sha,
        action=action if kind is EventKind.PULL_REQUEST else None,
        pr_number=pr if kind is EventKind.PULL_REQUEST else None,
        changed_paths=paths,
    )


def trigger_options(fn):
    options = [
        click.option("--workflow", default=None, help="Workflow file (defaults to fleetci_workflow.py if present)"),
        click.option("--event", type=click.Choice([k.value for k in EventKind]), default="push", show_default=True),
        click.option("--ref", default=None, help="Branch or ref (defaults to the current branch)"),
        click.option("--sha", default=None, help="Commit sha (defaults to HEAD)"),
        click.option("--pr", type=int, default=None, help="Change-request number (pull_request events)"),
        click.option("--action", default="synchronize", show_default=True, help="pull_request action"),
        click.option("--changed", multiple=True, help="Changed path (repeatable). Defaults to git diff."),
        click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against"),
        click.option("--source", default=".", show_default=True, help="Source tree checked out into job workspaces"),
    ]
    for opt in reversed(options):
        fn = opt(fn)
    return fn


@click.group()
@click.option("--debug", is_flag=True, default=False, help="Show stack traces and full step output")
@click.option("--quiet", is_flag=True, default=False, help="Only print results and errors")
@click.pass_context
def cli(ctx, debug, quiet):
    """fleetci: parallel, cache-aware CI pipeline runner."""
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@trigger_options
@click.option("--workers", default=None, type=int, help="Number of parallel jobs")
@click.option("--cache-dir", default=None, help="Cache directory (FLEETCI_CACHE_DIR)")
@click.option("--archive", default=None, help="SQLAlchemy URL to archive the run (FLEETCI_ARCHIVE_URL)")
@click.option("--report", "report_path", default=None, help="Write the run report as JSON to this path")
@click.pass_context
def run(ctx, workflow, event, ref, sha, pr, action, changed, compare_ref, source,
        workers, cache_dir, archive, report_path):
    """Trigger and run a pipeline locally."""
    console = get_console()
    settings = Settings.from_env()
    workflow_path = discover_workflow(workflow or settings.workflow)

    try:
        pipeline = load_workflow(workflow_path)
        overrides = {}
        if workers is not None:
            overrides["max_workers"] = workers
        if cache_dir is not None:
            overrides["cache_dir"] = cache_dir
        if archive is not None:
            overrides["archive_url"] = archive
        settings = replace(settings, **overrides)

        run_archive = None
        if settings.archive_url:
            from fleetci.archive import RunArchive
            run_archive = RunArchive(settings.archive_url)

        source_path = Path(source).resolve()
        trigger = build_event(event, ref, sha, pr, action, changed, compare_ref, source_path)
        orchestrator = Orchestrator(
            pipeline,
            source_root=source_path,
            settings=settings,
            console=console,
            archive=run_archive,
        )
        result = orchestrator.handle(trigger)

        if result is None:
            sys.exit(0)
        if report_path:
            Path(report_path).write_text(RunOut.from_run(result).model_dump_json(indent=2), encoding="utf-8")
        sys.exit(EXIT_CODES.get(result.status, 1))

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except CIError as e:
        console.print_error("Workflow error", e.message, details=[f"{k}={v}" for k, v in e.details.items()])
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@trigger_options
def plan(workflow, event, ref, sha, pr, action, changed, compare_ref, source):
    """Show whether an event would start a run, its group and its stages."""
    console = get_console()
    workflow_path = discover_workflow(workflow or Settings.from_env().workflow)

    try:
        pipeline = load_workflow(workflow_path)
    except CIError as e:
        console.print_error("Workflow error", e.message)
        sys.exit(1)

    trigger = build_event(event, ref, sha, pr, action, changed, compare_ref, Path(source).resolve())
    ok, reason = should_trigger(pipeline, trigger)

    console.print_header(f"{pipeline.name} ({workflow_path.name})")
    console.print_info(f"Event: {trigger.kind.value} {trigger.ref_name}")
    console.print_info(f"Run: {'yes' if ok else 'no'} ({reason})")
    if not ok:
        return

    policy = pipeline.concurrency
    console.print_info(f"Concurrency group: {group_key(pipeline.name, trigger)}")
    console.print_info(f"Cancels in-progress runs: {should_cancel_in_progress(policy, trigger)}")
    console.print_info(f"Saves cache: {trigger.ref_name == pipeline.protected_ref}")

    by_name, adj, indeg = build_dag(pipeline.jobs)
    for idx, level in enumerate(topo_levels(adj, indeg), start=1):
        console.print_info(f"Stage {idx}:")
        for name in level:
            j = by_name[name]
            notes = [f"{len(j.steps)} steps"]
            if j.needs:
                notes.append("needs " + ", ".join(j.needs))
            if j.soft_fail:
                notes.append("soft-fail")
            if j.cache:
                notes.append(f"cache {j.cache.tag}")
            console.print_plan_job(j.title if j.title == name else f"{name}: {j.title}", "; ".join(notes))


@cli.command()
@click.option("--archive", default=None, help="SQLAlchemy URL (FLEETCI_ARCHIVE_URL)")
@click.option("--limit", default=20, show_default=True)
@click.option("--status", default=None, type=click.Choice([s.value for s in RunStatus]))
def runs(archive, limit, status):
    """List archived runs."""
    from fleetci.archive import RunArchive

    console = get_console()
    url = archive or Settings.from_env().archive_url
    if not url:
        console.print_error("No archive configured", "Pass --archive or set FLEETCI_ARCHIVE_URL.")
        sys.exit(1)

    for r in RunArchive(url).list(limit=limit, status=status):
        console.print_info(f"{r.id}  {r.status:<9}  {r.trigger.kind:<12}  {r.trigger.ref}  {r.group_key}")


if __name__ == "__main__":
    cli()
