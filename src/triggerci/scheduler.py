# scheduler.py
from __future__ import annotations

import heapq
import logging
import os
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol

from .dag import JobGraph
from .errors import ExpressionError, RunnerUnavailableError
from .expressions import JobState, evaluate_condition
from .logs import SecretMasker, get_masker
from .model import JobDefinition, JobStatus, Run, RunStatus
from .runners import RunnerPool
from .steps import JobOutcome, JobScope, execute_steps

log = logging.getLogger(__name__)


class Reporter(Protocol):
    """Receives progress callbacks (the CLI console implements this)."""

    def job_started(self, run: Run, job: str) -> None: ...

    def job_finished(self, run: Run, job: str, status: JobStatus) -> None: ...


@dataclass
class RunContext:
    """Per-run values shared by every job's scope."""
    github: Mapping[str, Any] = field(default_factory=dict)
    inputs: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    secrets: Mapping[str, str] = field(default_factory=dict)


def default_parallelism() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _tolerated(job: JobDefinition, status: JobStatus) -> bool:
    return status is JobStatus.SUCCESS or (status is JobStatus.FAILURE and job.continue_on_error)


def _needs_context(run: Run, graph: JobGraph, node: int) -> Dict[str, Any]:
    needs: Dict[str, Any] = {}
    for dep in graph.dependencies(node):
        name = graph.jobs[dep].name
        result = run.jobs[name]
        needs[name] = {"result": result.status.value, "outputs": dict(result.outputs)}
    return needs


def _run_job(
    run: Run,
    job: JobDefinition,
    scope: JobScope,
    runners: RunnerPool,
    masker: SecretMasker,
) -> JobOutcome:
    try:
        runner = runners.select(job.runs_on)
    except RunnerUnavailableError as e:
        return JobOutcome(status=JobStatus.FAILURE, steps=[], error=str(e))
    scope.runner_labels = frozenset(runner.labels)
    return execute_steps(scope, runner, cancelled=lambda: run.cancel_requested, masker=masker)


def run_dag(
    run: Run,
    graph: JobGraph,
    runners: RunnerPool,
    *,
    context: Optional[RunContext] = None,
    max_parallel: int | None = None,
    reporter: Optional[Reporter] = None,
    masker: SecretMasker | None = None,
) -> Run:
    """
    Walk the job graph and drive `run` to a terminal state.

    - a job is considered only once all of its dependencies are terminal
    - ready jobs are dispatched in declaration order, at most `max_parallel`
      at a time
    - a job whose dependencies did not all succeed is skipped, unless its
      `if:` calls a status function (always(), failure(), ...) and holds;
      dependencies marked continue_on_error count as succeeded
    """
    ctx = context or RunContext()
    masker = masker or get_masker()
    if max_parallel is None:
        max_parallel = default_parallelism()
    max_parallel = max(1, max_parallel)

    indeg = [len(graph.dependencies(i)) for i in range(len(graph))]
    ready: List[int] = [i for i, d in enumerate(indeg) if d == 0]
    heapq.heapify(ready)
    in_flight: Dict[Future, int] = {}

    def release(node: int) -> None:
        for child in graph.dependents(node):
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(ready, child)

    def scope_for(node: int) -> JobScope:
        job = graph.jobs[node]
        return JobScope(
            job=job,
            env=ctx.env,
            github=ctx.github,
            needs=_needs_context(run, graph, node),
            inputs=ctx.inputs,
            secrets=ctx.secrets,
            matrix=job.matrix,
        )

    def finish(node: int, status: JobStatus, error: str | None = None, step: str | None = None) -> None:
        name = graph.jobs[node].name
        if run.transition(name, status):
            run.jobs[name].error = error
            if status is JobStatus.FAILURE and not graph.jobs[node].continue_on_error:
                run.record_failure(name, step)
        if reporter is not None:
            reporter.job_finished(run, name, run.jobs[name].status)
        release(node)

    with run._lock:
        if run.status is RunStatus.QUEUED:
            run.status = RunStatus.RUNNING

    with ThreadPoolExecutor(max_workers=max_parallel, thread_name_prefix=f"run-{run.id[:8]}") as pool:
        while ready or in_flight:
            # schedule ready jobs in declaration order, up to the parallelism cap
            while ready and len(in_flight) < max_parallel and not run.cancel_requested:
                node = heapq.heappop(ready)
                job = graph.jobs[node]
                scope = scope_for(node)

                satisfied = all(
                    _tolerated(graph.jobs[d], run.jobs[graph.jobs[d].name].status)
                    for d in graph.dependencies(node)
                )
                state = JobState(failed=not satisfied, cancelled=run.cancel_requested)
                try:
                    should_run = evaluate_condition(job.condition, scope.context(ctx.env, {}, state))
                except ExpressionError as e:
                    if run.transition(job.name, JobStatus.RUNNING) and reporter is not None:
                        reporter.job_started(run, job.name)
                    finish(node, JobStatus.FAILURE, error=f"condition: {e}")
                    continue

                if not should_run:
                    log.debug("job '%s' skipped", job.name)
                    finish(node, JobStatus.SKIPPED)
                    continue

                if not run.transition(job.name, JobStatus.RUNNING):
                    release(node)
                    continue
                if reporter is not None:
                    reporter.job_started(run, job.name)
                fut = pool.submit(_run_job, run, job, scope, runners, masker)
                in_flight[fut] = node

            if not in_flight:
                # cancelled with nothing running: pending jobs were already cancelled
                break

            done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
            for fut in done:
                node = in_flight.pop(fut)
                name = graph.jobs[node].name
                try:
                    outcome = fut.result()
                except Exception as e:
                    log.exception("job '%s' crashed", name)
                    outcome = JobOutcome(status=JobStatus.FAILURE, steps=[], error=f"{type(e).__name__}: {e}")

                result = run.jobs[name]
                result.steps = outcome.steps
                result.outputs = outcome.outputs
                status = outcome.status
                if status is JobStatus.CANCELLED and not run.cancel_requested:
                    status = JobStatus.FAILURE
                finish(node, status, error=outcome.error, step=outcome.failed_step)

    with run._lock:
        if run.cancel_requested:
            run.status = RunStatus.CANCELLED
        elif any(
            r.status is JobStatus.FAILURE and not graph.job(name).continue_on_error
            for name, r in run.jobs.items()
        ):
            run.status = RunStatus.FAILURE
        else:
            run.status = RunStatus.SUCCESS

    log.info("run %s finished: %s", run.id, run.status.value)
    return run
