# engine.py
"""
End-to-end pipeline: event -> trigger match -> job graph -> scheduled run.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .dag import build_graph
from .errors import CyclicDependencyError, ExpressionError, UnknownJobReferenceError
from .events import DISPATCH_EVENT, schedule_tick
from .expressions import ExpressionContext, interpolate_mapping
from .logs import get_masker
from .model import Event, Run, RunStatus, TriggerSpec, WorkflowDefinition, _thaw
from .runners import RUN_ID_VAR, RunnerPool
from .scheduler import Reporter, RunContext, run_dag
from .triggers import TriggerMatcher

log = logging.getLogger(__name__)


def _dig(data: Mapping[str, Any], *keys: str) -> Any:
    cur: Any = data
    for k in keys:
        if not isinstance(cur, Mapping):
            return None
        cur = cur.get(k)
    return cur


def dispatch_inputs(spec: Optional[TriggerSpec], event: Event) -> Dict[str, Any]:
    """Declared input defaults overlaid with the values the dispatch carried."""
    inputs: Dict[str, Any] = {}
    declared = spec.filters.get("inputs") if spec is not None else None
    if isinstance(declared, Mapping):
        for name, decl in declared.items():
            default = decl.get("default") if isinstance(decl, Mapping) else decl
            if default is not None:
                inputs[str(name)] = _thaw(default)
    given = event.payload.get("inputs")
    if isinstance(given, Mapping):
        inputs.update(_thaw(given))
    return inputs


class Engine:
    """
    Holds the loaded workflows and the runner pool, and turns events into
    runs.

    The trigger matcher is kept for the engine's lifetime so a schedule tick
    delivered twice still starts each workflow once.
    """

    def __init__(
        self,
        workflows: Iterable[WorkflowDefinition],
        runners: RunnerPool,
        *,
        secrets: Optional[Mapping[str, str]] = None,
        env: Optional[Mapping[str, str]] = None,
        max_parallel: Optional[int] = None,
        repository: Optional[str] = None,
        reporter: Optional[Reporter] = None,
    ):
        self.workflows: List[WorkflowDefinition] = list(workflows)
        self.runners = runners
        self.secrets: Dict[str, str] = {k: str(v) for k, v in (secrets or {}).items()}
        self.env: Dict[str, str] = dict(env or {})
        self.max_parallel = max_parallel
        self.repository = repository
        self.reporter = reporter
        self.matcher = TriggerMatcher()
        get_masker().add(*self.secrets.values())

    # ---- matching ----

    def matching(self, event: Event) -> List[Tuple[WorkflowDefinition, TriggerSpec]]:
        matched: List[Tuple[WorkflowDefinition, TriggerSpec]] = []
        for wf in self.workflows:
            m = self.matcher.match(event, wf.triggers, workflow=wf.name)
            if m:
                matched.append((wf, m.spec))
        return matched

    def handle(self, event: Event) -> List[Run]:
        """Start one run per matching workflow. No match, no run."""
        runs: List[Run] = []
        for wf, spec in self.matching(event):
            run = self.prepare(wf, event)
            runs.append(self.execute(run, trigger=spec))
        if not runs:
            log.info("%s event matched no workflow", event.name)
        return runs

    def tick(self, now=None) -> List[Run]:
        return self.handle(schedule_tick(now))

    # ---- running ----

    def prepare(self, workflow: WorkflowDefinition, event: Event, *, run_id: str | None = None) -> Run:
        return Run(workflow, event, run_id=run_id)

    def start(self, workflow: WorkflowDefinition, event: Event, *, run_id: str | None = None) -> Run:
        """Run `workflow` for `event` without trigger matching (manual dispatch, agent leases)."""
        spec = next((t for t in workflow.triggers if t.event == DISPATCH_EVENT), None)
        return self.execute(self.prepare(workflow, event, run_id=run_id), trigger=spec)

    def execute(self, run: Run, *, trigger: Optional[TriggerSpec] = None) -> Run:
        try:
            graph = build_graph(run.workflow)
        except (CyclicDependencyError, UnknownJobReferenceError) as e:
            # nothing started: jobs stay pending
            log.error("workflow %r rejected: %s", run.workflow.name, e)
            with run._lock:
                run.status = RunStatus.FAILURE
                run.error = str(e)
            return run

        inputs = dispatch_inputs(trigger, run.event) if run.event.name == DISPATCH_EVENT else {}
        github = self.github_context(run)
        try:
            env = self.run_env(run, github, inputs)
        except ExpressionError as e:
            with run._lock:
                run.status = RunStatus.FAILURE
                run.error = f"workflow env: {e}"
            return run

        log.info("run %s: workflow %r on %s", run.id, run.workflow.name, run.event.name)
        context = RunContext(github=github, inputs=inputs, env=env, secrets=self.secrets)
        return run_dag(
            run,
            graph,
            self.runners,
            context=context,
            max_parallel=self.max_parallel,
            reporter=self.reporter,
        )

    # ---- contexts ----

    def github_context(self, run: Run) -> Dict[str, Any]:
        payload = _thaw(run.event.payload)
        repository = (
            _dig(payload, "repository", "full_name")
            or self.repository
            or _dig(payload, "repository", "name")
            or ""
        )
        return {
            "event_name": run.event.name,
            "event": payload,
            "action": run.event.action or "",
            "ref": payload.get("ref") or "",
            "sha": payload.get("after") or payload.get("sha") or "",
            "repository": repository,
            "repository_owner": repository.split("/", 1)[0] if "/" in repository else "",
            "actor": _dig(payload, "sender", "login") or "",
            "run_id": run.id,
            "workflow": run.workflow.name,
        }

    def run_env(self, run: Run, github: Mapping[str, Any], inputs: Mapping[str, Any]) -> Dict[str, str]:
        env: Dict[str, str] = {
            "CI": "true",
            "TRIGGERCI": "true",
            RUN_ID_VAR: run.id,
            "TRIGGERCI_WORKFLOW": run.workflow.name,
            "TRIGGERCI_EVENT_NAME": run.event.name,
            "GITHUB_EVENT_NAME": run.event.name,
            "GITHUB_REF": str(github.get("ref") or ""),
            "GITHUB_SHA": str(github.get("sha") or ""),
        }
        if github.get("repository"):
            env["GITHUB_REPOSITORY"] = str(github["repository"])
        env.update(self.env)

        ctx = ExpressionContext(
            contexts={"github": github, "inputs": inputs, "secrets": self.secrets, "env": dict(env)}
        )
        env.update({k: str(v) for k, v in interpolate_mapping(run.workflow.env, ctx).items()})
        return env
