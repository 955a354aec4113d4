# loader.py
"""
Reading workflow definitions from disk.

Two sources are supported:

  - YAML documents shaped like GitHub Actions workflows (`on`, `jobs`, `steps`)
  - Python files defining `workflow()` or `WORKFLOW`, usually built with
    `triggerci.dsl`
"""
from __future__ import annotations

import logging
import runpy
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml

from .errors import WorkflowLoadError
from .events import DISPATCH_EVENT, SCHEDULE_EVENT
from .model import JobDefinition, StepDefinition, TriggerSpec, WorkflowDefinition, _thaw

log = logging.getLogger(__name__)

YAML_SUFFIXES = (".yml", ".yaml")
WORKFLOW_DIRS = (".triggerci/workflows", ".github/workflows")

_EVENT_ALIASES = {"dispatch": DISPATCH_EVENT}


# ---------------------------------------------------------------------
# Small coercions
# ---------------------------------------------------------------------

def _as_list(value: Any, where: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    raise WorkflowLoadError(f"{where}: expected a string or a list, got {type(value).__name__}")


def _as_mapping(value: Any, where: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise WorkflowLoadError(f"{where}: expected a mapping, got {type(value).__name__}")
    return dict(value)


def _str_env(value: Any, where: str) -> Dict[str, str]:
    env = _as_mapping(value, where)
    out: Dict[str, str] = {}
    for k, v in env.items():
        if isinstance(v, bool):
            v = "true" if v else "false"
        out[str(k)] = "" if v is None else str(v)
    return out


def _condition(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _filter_key(key: Any) -> str:
    return str(key).replace("-", "_")


# ---------------------------------------------------------------------
# on:
# ---------------------------------------------------------------------

def parse_triggers(on: Any) -> List[TriggerSpec]:
    """
    Accepts the three shapes of `on:`

        on: push
        on: [push, issues]
        on:
          issues: {types: [opened]}
          schedule: [{cron: "*/5 * * * *"}]
    """
    if on is None:
        raise WorkflowLoadError("workflow has no 'on' section")
    if isinstance(on, str):
        on = {on: None}
    elif isinstance(on, (list, tuple)):
        on = {str(name): None for name in on}
    elif not isinstance(on, Mapping):
        raise WorkflowLoadError(f"'on' must be a string, list or mapping, got {type(on).__name__}")

    specs: List[TriggerSpec] = []
    for raw_name, raw_filters in on.items():
        name = _EVENT_ALIASES.get(str(raw_name), str(raw_name))

        if name == SCHEDULE_EVENT:
            entries = raw_filters if isinstance(raw_filters, list) else [raw_filters]
            for entry in entries:
                cron = entry.get("cron") if isinstance(entry, Mapping) else entry
                if not cron:
                    raise WorkflowLoadError("schedule entries need a 'cron' expression")
                specs.append(TriggerSpec(event=name, filters={"cron": str(cron)}))
            continue

        filters: Dict[str, Any] = {}
        for key, value in _as_mapping(raw_filters, f"on.{name}").items():
            key = _filter_key(key)
            if key == "inputs":
                filters[key] = _as_mapping(value, f"on.{name}.inputs")
            elif isinstance(value, str):
                filters[key] = [value]
            else:
                filters[key] = value
        specs.append(TriggerSpec(event=name, filters=filters))
    return specs


# ---------------------------------------------------------------------
# jobs / steps
# ---------------------------------------------------------------------

def parse_step(data: Any, where: str) -> StepDefinition:
    if not isinstance(data, Mapping):
        raise WorkflowLoadError(f"{where}: a step must be a mapping")
    run = data.get("run")
    uses = data.get("uses")
    name = data.get("name") or uses or (str(run).strip().splitlines()[0] if run else None)
    try:
        return StepDefinition(
            name=str(name or where),
            run=None if run is None else str(run),
            uses=None if uses is None else str(uses),
            with_params=_as_mapping(data.get("with"), f"{where}.with"),
            env=_str_env(data.get("env"), f"{where}.env"),
            condition=_condition(data.get("if")),
            id=None if data.get("id") is None else str(data["id"]),
            shell=data.get("shell"),
            working_directory=data.get("working-directory") or data.get("working_directory"),
            continue_on_error=bool(data.get("continue-on-error", data.get("continue_on_error", False))),
        )
    except ValueError as e:
        raise WorkflowLoadError(f"{where}: {e}") from e


def parse_job(name: str, data: Any) -> JobDefinition:
    where = f"jobs.{name}"
    if not isinstance(data, Mapping):
        raise WorkflowLoadError(f"{where}: a job must be a mapping")
    raw_steps = data.get("steps") or []
    if not isinstance(raw_steps, list) or not raw_steps:
        raise WorkflowLoadError(f"{where}: a job needs a non-empty 'steps' list")
    steps = [parse_step(s, f"{where}.steps[{i}]") for i, s in enumerate(raw_steps)]

    ids = [s.id for s in steps if s.id]
    if len(ids) != len(set(ids)):
        raise WorkflowLoadError(f"{where}: step ids must be unique, got {ids}")

    return JobDefinition(
        name=name,
        steps=tuple(steps),
        needs=tuple(_as_list(data.get("needs"), f"{where}.needs")),
        runs_on=frozenset(_as_list(data.get("runs-on", data.get("runs_on")), f"{where}.runs-on")),
        env=_str_env(data.get("env"), f"{where}.env"),
        condition=_condition(data.get("if")),
        continue_on_error=bool(data.get("continue-on-error", data.get("continue_on_error", False))),
        outputs={str(k): str(v) for k, v in _as_mapping(data.get("outputs"), f"{where}.outputs").items()},
        matrix={str(k): v for k, v in _as_mapping(data.get("matrix"), f"{where}.matrix").items()},
    )


def parse_workflow(data: Any, *, source: str | None = None, default_name: str | None = None) -> WorkflowDefinition:
    """Build a WorkflowDefinition from a decoded workflow document."""
    if not isinstance(data, Mapping):
        raise WorkflowLoadError("a workflow document must be a mapping")

    # YAML 1.1 reads a bare `on:` key as boolean True
    on = data["on"] if "on" in data else data.get(True)
    jobs_data = _as_mapping(data.get("jobs"), "jobs")
    if not jobs_data:
        raise WorkflowLoadError("workflow defines no jobs")

    name = data.get("name") or default_name or (Path(source).stem if source else "workflow")
    return WorkflowDefinition(
        name=str(name),
        triggers=frozenset(parse_triggers(on)),
        jobs={str(job_name): parse_job(str(job_name), job) for job_name, job in jobs_data.items()},
        env=_str_env(data.get("env"), "env"),
        source=source,
    )


# ---------------------------------------------------------------------
# Serialization (agent lease payloads)
# ---------------------------------------------------------------------

def _step_to_dict(step: StepDefinition) -> Dict[str, Any]:
    d: Dict[str, Any] = {"name": step.name}
    if step.id:
        d["id"] = step.id
    if step.run is not None:
        d["run"] = step.run
    if step.uses is not None:
        d["uses"] = step.uses
    if step.with_params:
        d["with"] = _thaw(step.with_params)
    if step.env:
        d["env"] = dict(step.env)
    if step.condition is not None:
        d["if"] = step.condition
    if step.shell:
        d["shell"] = step.shell
    if step.working_directory:
        d["working-directory"] = step.working_directory
    if step.continue_on_error:
        d["continue-on-error"] = True
    return d


def _trigger_filters(spec: TriggerSpec) -> Any:
    if not spec.filters:
        return None
    return {k.replace("_", "-") if k != "inputs" else k: _thaw(v) for k, v in spec.filters.items()}


def workflow_to_dict(wf: WorkflowDefinition) -> Dict[str, Any]:
    """Inverse of `parse_workflow` (up to defaults)."""
    on: Dict[str, Any] = {}
    for spec in sorted(wf.triggers, key=lambda t: (t.event, str(t.filters.get("cron", "")))):
        if spec.event == SCHEDULE_EVENT:
            on.setdefault(SCHEDULE_EVENT, []).append({"cron": spec.filters["cron"]})
        else:
            on[spec.event] = _trigger_filters(spec)

    jobs: Dict[str, Any] = {}
    for name, job in wf.jobs.items():
        j: Dict[str, Any] = {"steps": [_step_to_dict(s) for s in job.steps]}
        if job.needs:
            j["needs"] = list(job.needs)
        if job.runs_on:
            j["runs-on"] = sorted(job.runs_on)
        if job.env:
            j["env"] = dict(job.env)
        if job.condition is not None:
            j["if"] = job.condition
        if job.continue_on_error:
            j["continue-on-error"] = True
        if job.outputs:
            j["outputs"] = dict(job.outputs)
        if job.matrix:
            j["matrix"] = dict(job.matrix)
        jobs[name] = j

    d: Dict[str, Any] = {"name": wf.name, "on": on, "jobs": jobs}
    if wf.env:
        d["env"] = dict(wf.env)
    return d


# ---------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------

def _load_python(path: Path) -> WorkflowDefinition:
    module_name = f"triggerci_workflow_{path.stem}"
    try:
        globals_dict = runpy.run_path(str(path), run_name=module_name)
    except Exception as e:
        raise WorkflowLoadError(f"{path.name}: {type(e).__name__}: {e}") from e

    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            result = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise WorkflowLoadError(
                    f"{path.name}: workflow() was called with arguments (name collision with the helper). "
                    "Use `wf` instead: `from triggerci import wf, job, sh`"
                ) from e
            raise
    elif "WORKFLOW" in globals_dict:
        result = globals_dict["WORKFLOW"]
    else:
        raise WorkflowLoadError(f"{path.name}: define workflow() or WORKFLOW")

    if isinstance(result, Mapping):
        return parse_workflow(result, source=str(path), default_name=path.stem)
    if not isinstance(result, WorkflowDefinition):
        raise WorkflowLoadError(
            f"{path.name}: workflow() must return a WorkflowDefinition (see triggerci.dsl.wf), "
            f"got {type(result).__name__}"
        )
    if result.source is None:
        result = replace(result, source=str(path))
    return result


def load_workflow(path: str | Path) -> WorkflowDefinition:
    """Load one workflow file (.yml/.yaml or .py)."""
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise WorkflowLoadError(f"workflow file not found: {wf_path}")

    if wf_path.suffix == ".py":
        return _load_python(wf_path)
    if wf_path.suffix in YAML_SUFFIXES:
        try:
            data = yaml.safe_load(wf_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise WorkflowLoadError(f"{wf_path.name}: invalid YAML: {e}") from e
        try:
            return parse_workflow(data, source=str(wf_path), default_name=wf_path.stem)
        except WorkflowLoadError as e:
            raise WorkflowLoadError(f"{wf_path.name}: {e}") from e
    raise WorkflowLoadError(f"unsupported workflow file type: {wf_path.name}")


def discover_workflows(root: str | Path = ".") -> List[Path]:
    """
    Workflow files under `root`: YAML files in .triggerci/workflows and
    .github/workflows, plus *_workflow.py at the top level.
    """
    base = Path(root)
    found: List[Path] = []
    for d in WORKFLOW_DIRS:
        wf_dir = base / d
        if wf_dir.is_dir():
            found.extend(sorted(p for p in wf_dir.iterdir() if p.suffix in YAML_SUFFIXES))
    found.extend(sorted(base.glob("*_workflow.py")))
    return found


def load_workflows(paths: Iterable[str | Path]) -> List[WorkflowDefinition]:
    workflows: List[WorkflowDefinition] = []
    seen: Dict[str, str] = {}
    for p in paths:
        wf = load_workflow(p)
        if wf.name in seen:
            raise WorkflowLoadError(f"duplicate workflow name {wf.name!r} in {p} and {seen[wf.name]}")
        seen[wf.name] = str(p)
        log.debug("loaded workflow %r from %s (%d jobs)", wf.name, p, len(wf.jobs))
        workflows.append(wf)
    return workflows
