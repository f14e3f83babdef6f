# actions.py
# Reusable named actions (`uses=...` steps). An action either compiles its
# params into shell commands run like any inline step, or is handled
# in-process (checkout, annotate).
from __future__ import annotations

import shlex
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .errors import WorkflowError
from .model import Annotation, Job, Severity, Step, StepKind


TOOL_HINTS = {
    "cargo": "Install Rust via rustup (https://rustup.rs) or use the setup-rust action.",
    "rustup": "Install rustup (https://rustup.rs).",
    "cargo-hack": "Add `uses('install-tool', tool='cargo-hack')` before steps that need it.",
    "typos": "Install typos (e.g., cargo install typos-cli).",
    "protoc": "Install protobuf-compiler (e.g., apt-get install -y protobuf-compiler).",
    "git": "Install Git or fix PATH.",
    "python3": "Install Python 3 or fix PATH (python3).",
}

CHECKOUT_EXCLUDES = (".git", ".fleetci", "__pycache__")


@dataclass
class ActionContext:
    job: Job
    step: Step
    workspace: Path
    source_root: Path
    env: Dict[str, str]


@dataclass
class ActionOutput:
    exit_code: int
    output: str = ""
    annotations: List[Annotation] = field(default_factory=list)


@dataclass(frozen=True)
class Action:
    """
    name:     what `uses=` refers to
    kind:     default step kind when built via dsl.uses()
    commands: params -> shell commands (run in order, stop on first failure)
    handler:  in-process implementation, takes precedence over commands
    """
    name: str
    kind: StepKind = StepKind.SETUP
    commands: Optional[Callable[[Dict[str, Any]], List[str]]] = None
    handler: Optional[Callable[[ActionContext, Dict[str, Any]], ActionOutput]] = None


# ---------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------

def _checkout(ctx: ActionContext, params: Dict[str, Any]) -> ActionOutput:
    src = ctx.source_root
    if not src.is_dir():
        return ActionOutput(1, f"source root not found: {src}")
    excludes = list(CHECKOUT_EXCLUDES) + list(params.get("exclude", []))
    shutil.copytree(
        src,
        ctx.workspace,
        ignore=shutil.ignore_patterns(*excludes),
        dirs_exist_ok=True,
        symlinks=True,
    )
    return ActionOutput(0, f"checked out {src} -> {ctx.workspace}")


def _install_packages(params: Dict[str, Any]) -> List[str]:
    packages = params.get("packages") or []
    if isinstance(packages, str):
        packages = packages.split()
    if not packages:
        raise WorkflowError("install-packages needs at least one package")
    sudo = "sudo " if params.get("sudo", True) else ""
    return [
        f"{sudo}apt-get update",
        f"{sudo}apt-get install -y " + " ".join(shlex.quote(p) for p in packages),
    ]


def _setup_rust(params: Dict[str, Any]) -> List[str]:
    toolchain = params.get("toolchain", "stable")
    cmd = f"rustup toolchain install {shlex.quote(toolchain)} --profile minimal"
    for component in params.get("components", []):
        cmd += f" --component {shlex.quote(component)}"
    return [cmd, f"rustup default {shlex.quote(toolchain)}"]


def _install_tool(params: Dict[str, Any]) -> List[str]:
    if params.get("command"):
        return [params["command"]]
    tool = params.get("tool")
    if not tool:
        raise WorkflowError("install-tool needs `tool` or `command`")
    return [f"command -v {shlex.quote(tool)} || cargo install --locked {shlex.quote(tool)}"]


def _typos(params: Dict[str, Any]) -> List[str]:
    files = params.get("files", ".")
    if isinstance(files, str):
        files = [files]
    cmd = "typos"
    if params.get("config"):
        cmd += f" --config {shlex.quote(params['config'])}"
    return [cmd + " " + " ".join(shlex.quote(f) for f in files)]


def _annotate(ctx: ActionContext, params: Dict[str, Any]) -> ActionOutput:
    """
    Emit an annotation with the operator's exact message.
    `fail=True` also fails the step (and so the job), like setFailed.
    """
    message = params.get("message")
    if message is None:
        raise WorkflowError("annotate needs a `message`", job=ctx.job.name)
    try:
        severity = Severity(params.get("severity", "error"))
    except ValueError:
        raise WorkflowError(
            f"annotate severity must be one of error, warning, notice; got {params.get('severity')!r}",
            job=ctx.job.name,
        ) from None
    annotation = Annotation(
        severity=severity,
        message=message,
        job=ctx.job.name,
        step=ctx.step.name,
        title=params.get("title"),
        file=params.get("file"),
        line=params.get("line"),
    )
    fail = bool(params.get("fail", severity is Severity.ERROR))
    return ActionOutput(1 if fail else 0, "", [annotation])


class ActionRegistry:
    def __init__(self, actions: Optional[List[Action]] = None):
        self._actions: Dict[str, Action] = {}
        for a in actions or []:
            self.register(a)

    def register(self, action: Action) -> None:
        self._actions[action.name] = action

    def get(self, name: str) -> Action:
        try:
            return self._actions[name]
        except KeyError:
            raise WorkflowError(
                f"Unknown action {name!r}", known=sorted(self._actions)
            ) from None

    def __contains__(self, name: str) -> bool:
        return name in self._actions

    def names(self) -> List[str]:
        return sorted(self._actions)


def default_registry() -> ActionRegistry:
    return ActionRegistry([
        Action("checkout", handler=_checkout),
        Action("install-packages", commands=_install_packages),
        Action("setup-rust", commands=_setup_rust),
        Action("install-tool", commands=_install_tool),
        Action("typos", kind=StepKind.COMMAND, commands=_typos),
        Action("annotate", kind=StepKind.COMMAND, handler=_annotate),
    ])


def tool_hint(tool: str) -> str:
    return TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")


def missing_tools(tools: List[str], path: str | None = None) -> List[str]:
    return [t for t in tools if shutil.which(t, path=path) is None]
