# src/triggerci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .events import DISPATCH_EVENT, ISSUES_EVENT, PUSH_EVENT, SCHEDULE_EVENT
from .model import JobDefinition, StepDefinition, TriggerSpec, WorkflowDefinition


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: str | None = None,
    cwd: str | None = None,
    shell: str | None = None,
    env: Optional[Dict[str, str]] = None,
    if_: str | None = None,
    continue_on_error: bool = False,
) -> StepDefinition:
    """Create a shell step."""
    return StepDefinition(
        name=name,
        run=cmd,
        id=id,
        working_directory=cwd,
        shell=shell,
        env=env or {},
        condition=if_,
        continue_on_error=continue_on_error,
    )


def uses(
    action: str,
    name: str | None = None,
    *,
    id: str | None = None,
    env: Optional[Dict[str, str]] = None,
    if_: str | None = None,
    continue_on_error: bool = False,
    with_: Optional[Dict[str, Any]] = None,
    **params: Any,
) -> StepDefinition:
    """
    Create an action step. Keyword params become the `with:` inputs;
    underscores are turned into dashes (issue_number -> issue-number).
    Inputs whose names clash with this signature go in `with_`.
    """
    with_params = {k.replace("_", "-"): v for k, v in params.items()}
    with_params.update(with_ or {})
    return StepDefinition(
        name=name or action,
        uses=action,
        id=id,
        with_params=with_params,
        env=env or {},
        condition=if_,
        continue_on_error=continue_on_error,
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: StepDefinition,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[StepDefinition]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    runs_on: Union[str, Iterable[str], None] = None,
    env: Optional[Dict[str, str]] = None,
    if_: str | None = None,
    outputs: Optional[Dict[str, str]] = None,
    continue_on_error: bool = False,
    cwd: str | None = None,  # default working directory for steps missing one
) -> JobDefinition:
    steps_final: List[StepDefinition] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            s if s.working_directory is not None or s.uses else replace(s, working_directory=cwd)
            for s in steps_final
        ]

    return JobDefinition(
        name=name,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        runs_on=frozenset([runs_on] if isinstance(runs_on, str) else (runs_on or ())),
        env={k: str(v) for k, v in (env or {}).items()},
        condition=if_,
        continue_on_error=continue_on_error,
        outputs=outputs or {},
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[StepDefinition] = []
        self._runs_on: list[str] = []
        self._env: dict[str, str] = {}
        self._outputs: dict[str, str] = {}
        self._condition: Optional[str] = None
        self._continue_on_error = False

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def runs_on(self, *labels: str):
        self._runs_on.extend(labels)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def use_action(self, action: str, name: str | None = None, **params):
        self._steps.append(uses(action, name, **params))
        return self

    def with_env(self, **env):
        # env values are always strings for the subprocess
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_output(self, name: str, expression: str):
        self._outputs[name] = expression
        return self

    def when(self, condition: str):
        self._condition = condition
        return self

    def allow_failure(self, enabled: bool = True):
        self._continue_on_error = enabled
        return self

    def build(self) -> JobDefinition:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")

        return JobDefinition(
            name=self.name,
            steps=tuple(self._steps),
            needs=tuple(self._needs),
            runs_on=frozenset(self._runs_on),
            env=self._env,
            condition=self._condition,
            continue_on_error=self._continue_on_error,
            outputs=self._outputs,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander. Each job sees its value as `${{ matrix.<key> }}`.

    Example:
        matrix("py", ["3.11","3.12"]).jobs(
            lambda v: job(f"test-py{v}", sh(...))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], JobDefinition]) -> List[JobDefinition]:
        out: List[JobDefinition] = []
        for v in self.values:
            j = builder(v)
            j = replace(j, matrix={**j.matrix, self.key: v})
            # expose the value as MATRIX_<KEY> unless the job already set it
            var = f"MATRIX_{self.key.upper()}"
            if var not in j.env:
                j = replace(j, env={**j.env, var: str(v)})
            out.append(j)
        return out


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def _listify(values: Union[str, Iterable[str], None]) -> Optional[List[str]]:
    if values is None:
        return None
    return [values] if isinstance(values, str) else list(values)


def on(event: str, **filters: Any) -> TriggerSpec:
    """Generic trigger: on("pull_request", types=["opened"])."""
    return TriggerSpec(event=event, filters={k: v for k, v in filters.items() if v is not None})


def on_issues(*types: str) -> TriggerSpec:
    return on(ISSUES_EVENT, types=list(types) or None)


def on_push(
    *,
    branches: Union[str, Iterable[str], None] = None,
    branches_ignore: Union[str, Iterable[str], None] = None,
    tags: Union[str, Iterable[str], None] = None,
    paths: Union[str, Iterable[str], None] = None,
    paths_ignore: Union[str, Iterable[str], None] = None,
) -> TriggerSpec:
    return on(
        PUSH_EVENT,
        branches=_listify(branches),
        branches_ignore=_listify(branches_ignore),
        tags=_listify(tags),
        paths=_listify(paths),
        paths_ignore=_listify(paths_ignore),
    )


def on_schedule(cron: str) -> TriggerSpec:
    return on(SCHEDULE_EVENT, cron=cron)


def on_dispatch(**inputs: Any) -> TriggerSpec:
    """on_dispatch(name="world") declares an input `name` defaulting to "world"."""
    declared = {k: {"default": v} for k, v in inputs.items()}
    return on(DISPATCH_EVENT, inputs=declared or None)


# ---------------------------------------------------------------------
# Workflow helper (single-file story)
# ---------------------------------------------------------------------

def wf(
    *jobs: Union[JobDefinition, List[JobDefinition]],
    name: str = "workflow",
    on: Union[TriggerSpec, Iterable[TriggerSpec], None] = None,
    env: Optional[Dict[str, str]] = None,
) -> WorkflowDefinition:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...), on=[on_push()]).

    Users can write:
        from triggerci import wf, job, sh, on_issues

        def workflow():
            return wf(
                job(...),
                job(...),
                name="greet",
                on=on_issues("opened"),
            )

    Or use WORKFLOW directly:
        WORKFLOW = wf(job(...), job(...), on=on_push())

    Lists (e.g. from matrix(...).jobs) are flattened. Without `on`, the
    workflow only runs on manual dispatch.
    """
    flat: List[JobDefinition] = []
    for j in jobs:
        flat.extend(j if isinstance(j, list) else [j])

    names = [j.name for j in flat]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ValueError(f"duplicate job names: {dupes}")

    if on is None:
        triggers = [on_dispatch()]
    elif isinstance(on, TriggerSpec):
        triggers = [on]
    else:
        triggers = list(on)

    return WorkflowDefinition(
        name=name,
        triggers=frozenset(triggers),
        jobs={j.name: j for j in flat},
        env={k: str(v) for k, v in (env or {}).items()},
    )


workflow = wf  # alias (avoid naming your function workflow if you use it)
