# src/fleetci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .actions import default_registry
from .model import (
    CacheSpec,
    ConcurrencyPolicy,
    Condition,
    EventKind,
    Job,
    Pipeline,
    Severity,
    Step,
    StepKind,
    StepOutcome,
    TriggerFilter,
)


# ---------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------

def success() -> Condition:
    """Run only while nothing has failed (the default)."""
    return Condition("success")


def always() -> Condition:
    return Condition("always")


def failure() -> Condition:
    """Run only once the job has failed."""
    return Condition("failure")


def step_failed(step_id: str) -> Condition:
    """Run if step `step_id` had outcome failure (also when it was tolerated)."""
    return Condition("success", step_id=step_id, outcome=StepOutcome.FAILURE)


def step_succeeded(step_id: str) -> Condition:
    return Condition("success", step_id=step_id, outcome=StepOutcome.SUCCESS)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: str | None = None,
    cwd: str | None = None,
    continue_on_error: bool = False,
    when: Condition | None = None,
) -> Step:
    """Create a shell command step."""
    return Step(
        name=name,
        run=cmd,
        id=id,
        cwd=cwd,
        continue_on_error=continue_on_error,
        condition=when or success(),
    )


def setup(name: str, cmd: str, *, id: str | None = None, cwd: str | None = None) -> Step:
    """Inline setup command (system packages etc). Failing it always fails the job."""
    return Step(name=name, run=cmd, id=id, cwd=cwd, kind=StepKind.SETUP)


def uses(
    action: str,
    name: str | None = None,
    *,
    id: str | None = None,
    when: Condition | None = None,
    continue_on_error: bool = False,
    kind: StepKind | None = None,
    **params: Any,
) -> Step:
    """Reusable action step: uses("install-packages", packages=["protobuf-compiler"])."""
    if kind is None:
        registry = default_registry()
        kind = registry.get(action).kind if action in registry else StepKind.SETUP
    return Step(
        name=name or action,
        id=id,
        uses=action,
        params=dict(params),
        kind=kind,
        continue_on_error=continue_on_error,
        condition=when or success(),
    )


def checkout() -> Step:
    return uses("checkout", "Checkout")


def annotate(
    message: str,
    *,
    name: str = "Report failure",
    severity: str = "error",
    when: Condition | None = None,
    title: str | None = None,
    file: str | None = None,
    line: int | None = None,
    fail: bool | None = None,
) -> Step:
    """
    Surface `message` verbatim as an annotation.
    Error severity fails the step (and job) unless fail=False.
    """
    if severity not in {s.value for s in Severity}:
        raise ValueError(f"annotate severity must be one of error, warning, notice; got {severity!r}")
    params: Dict[str, Any] = {"message": message, "severity": severity}
    for k, v in (("title", title), ("file", file), ("line", line), ("fail", fail)):
        if v is not None:
            params[k] = v
    return uses("annotate", name, when=when, kind=StepKind.COMMAND, **params)


def cache(tag: str, *paths: str, save: bool = True) -> CacheSpec:
    return CacheSpec(tag=tag, paths=list(paths), save=save)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, str]] = None,
    requires: Optional[List[str]] = None,
    soft_fail: bool = False,
    cache: CacheSpec | None = None,
    display_name: str | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    ids = [s.id for s in steps_final if s.id]
    if len(ids) != len(set(ids)):
        raise ValueError(f"job({name!r}) has duplicate step ids: {ids}")

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        env={k: str(v) for k, v in (env or {}).items()},
        requires=list(requires or []),
        soft_fail=soft_fail,
        cache=cache,
        display_name=display_name,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._requires: list[str] = []
        self._soft_fail = False
        self._cache: CacheSpec | None = None
        self._display_name: str | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def requires(self, *tools: str):
        self._requires.extend(tools)
        return self

    def step(self, name: str, run: str, **kw):
        self._steps.append(sh(name, run, **kw))
        return self

    def setup_step(self, name: str, run: str):
        self._steps.append(setup(name, run))
        return self

    def use(self, action: str, name: str | None = None, **params):
        self._steps.append(uses(action, name, **params))
        return self

    def add(self, *steps: Step):
        self._steps.extend(steps)
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def titled(self, display_name: str):
        self._display_name = display_name
        return self

    def allow_failure(self, enabled: bool = True):
        self._soft_fail = enabled
        return self

    def with_cache(self, tag: str, *paths: str, save: bool = True):
        self._cache = cache(tag, *paths, save=save)
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            steps_list=self._steps,
            needs=self._needs,
            env=self._env,
            requires=self._requires,
            soft_fail=self._soft_fail,
            cache=self._cache,
            display_name=self._display_name,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Expands one job template over a small variant set.

    Example:
        matrix("features", ["--all-features", "--no-default-features"], name="hack").jobs(
            lambda v: job(f"hack[{v}]", sh("check", f"cargo hack check {v}"))
        )

    Every variant is a separate Job (own name, own outcome) that remembers
    its template and variant value.
    """

    def __init__(self, key: str, values: Iterable[Any], name: str | None = None):
        self.key = key
        self.values = list(values)
        self.name = name or key

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        out: List[Job] = []
        for v in self.values:
            j = builder(v)
            j.template = j.template or self.name
            j.variant = {**j.variant, self.key: str(v)}
            out.append(j)
        names = [j.name for j in out]
        if len(names) != len(set(names)):
            raise ValueError(f"matrix {self.name!r} produced duplicate job names: {names}")
        return out


def matrix(key: str, values: Iterable[Any], name: str | None = None) -> Matrix:
    return Matrix(key, values, name=name)


# ---------------------------------------------------------------------
# Workflow helpers
# ---------------------------------------------------------------------

def wf(*jobs: Union[Job, List[Job]]) -> List[Job]:
    """
    Flatten jobs (and matrix expansions) into one list.

        def workflow():
            return wf(job(...), matrix(...).jobs(...))
    """
    out: List[Job] = []
    for j in jobs:
        if isinstance(j, list):
            out.extend(j)
        else:
            out.append(j)
    return out


def pipeline(
    name: str,
    *jobs: Union[Job, List[Job]],
    push: TriggerFilter | None = None,
    pull_request: TriggerFilter | None = None,
    manual: bool = False,
    env: Optional[Dict[str, Any]] = None,
    protected_ref: str = "main",
    cancel_in_progress: bool = True,
) -> Pipeline:
    on: Dict[EventKind, TriggerFilter] = {}
    if manual:
        on[EventKind.MANUAL] = TriggerFilter()
    if pull_request is not None:
        on[EventKind.PULL_REQUEST] = pull_request
    if push is not None:
        on[EventKind.PUSH] = push
    return Pipeline(
        name=name,
        jobs=wf(*jobs),
        on=on,
        env={k: str(v) for k, v in (env or {}).items()},
        concurrency=ConcurrencyPolicy(
            cancel_in_progress=cancel_in_progress,
            protected_ref=protected_ref,
        ),
    )


def on_push(branches: Optional[List[str]] = None, paths_ignore: Optional[List[str]] = None) -> TriggerFilter:
    return TriggerFilter(branches=branches, paths_ignore=paths_ignore)


def on_pull_request(
    types: Optional[List[str]] = None,
    paths_ignore: Optional[List[str]] = None,
) -> TriggerFilter:
    return TriggerFilter(types=types, paths_ignore=paths_ignore)
