# steps.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional

from .errors import ExpressionError, StepExecutionError
from .expressions import (
    ExpressionContext,
    JobState,
    evaluate_condition,
    interpolate,
    interpolate_mapping,
)
from .logs import SecretMasker, get_masker
from .model import JobDefinition, JobStatus, StepDefinition, StepResult, StepStatus
from .runners import Runner, StepOutcome

log = logging.getLogger(__name__)


@dataclass
class JobScope:
    """
    Read-only inputs for one job: the contexts its expressions may see.

    `env` is the job's starting environment (defaults + workflow env); the
    job's own `env:` is layered on top by `execute_steps`.
    """
    job: JobDefinition
    env: Mapping[str, str] = field(default_factory=dict)
    github: Mapping[str, Any] = field(default_factory=dict)
    needs: Mapping[str, Any] = field(default_factory=dict)
    inputs: Mapping[str, Any] = field(default_factory=dict)
    secrets: Mapping[str, str] = field(default_factory=dict)
    matrix: Mapping[str, Any] = field(default_factory=dict)
    runner_labels: frozenset = frozenset()

    def context(
        self,
        env: Mapping[str, str],
        steps: Mapping[str, Any],
        state: JobState,
    ) -> ExpressionContext:
        return ExpressionContext(
            contexts={
                "github": self.github,
                "env": dict(env),
                "steps": {k: dict(v) for k, v in steps.items()},
                "needs": self.needs,
                "inputs": self.inputs,
                "secrets": self.secrets,
                "matrix": self.matrix,
                "job": {"status": "failure" if state.failed else "success"},
                "runner": {"labels": sorted(self.runner_labels)},
            },
            state=state,
        )


@dataclass
class JobOutcome:
    status: JobStatus
    steps: List[StepResult]
    outputs: Dict[str, str] = field(default_factory=dict)
    failed_step: Optional[str] = None
    error: Optional[str] = None


def _step_key(step: StepDefinition, index: int) -> str:
    return step.id or f"__step_{index}"


def execute_steps(
    scope: JobScope,
    runner: Runner,
    *,
    cancelled: Any = None,
    masker: SecretMasker | None = None,
) -> JobOutcome:
    """
    Run a job's steps in order on one runner.

    `cancelled` is a zero-argument callable polled before every step.
    A failed step (without continue_on_error) marks the job failed; later
    steps only run when their condition calls a status function such as
    always() or failure().
    """
    masker = masker or get_masker()
    job = scope.job
    is_cancelled = cancelled or (lambda: False)

    results: List[StepResult] = []
    steps_ctx: Dict[str, Dict[str, Any]] = {}
    failed = False
    failed_step: Optional[str] = None
    error: Optional[str] = None

    env: Dict[str, str] = dict(scope.env)
    try:
        env.update({k: str(v) for k, v in interpolate_mapping(job.env, scope.context(env, {}, JobState())).items()})
    except ExpressionError as e:
        return JobOutcome(status=JobStatus.FAILURE, steps=[], error=f"job env: {e}")

    for index, step in enumerate(job.steps):
        key = _step_key(step, index)

        if is_cancelled():
            results.append(StepResult(name=step.name, id=step.id, status=StepStatus.CANCELLED))
            steps_ctx[key] = {"outputs": {}, "outcome": "cancelled", "conclusion": "cancelled"}
            continue

        ctx = scope.context(env, steps_ctx, JobState(failed=failed))
        try:
            should_run = evaluate_condition(step.condition, ctx)
        except ExpressionError as e:
            message = f"condition: {e}"
            results.append(StepResult(name=step.name, id=step.id, status=StepStatus.FAILURE, error=message))
            steps_ctx[key] = {"outputs": {}, "outcome": "failure", "conclusion": "failure"}
            if not failed:
                failed, failed_step, error = True, step.name, message
            continue

        if not should_run:
            log.debug("[%s] step '%s' skipped", job.name, step.name)
            results.append(StepResult(name=step.name, id=step.id, status=StepStatus.SKIPPED))
            steps_ctx[key] = {"outputs": {}, "outcome": "skipped", "conclusion": "skipped"}
            continue

        outcome = _run_one(scope, runner, step, env, steps_ctx, failed)
        outcome.log = masker.mask(outcome.log)

        # variables a step exports become env for the steps after it
        env.update(outcome.env)

        status = StepStatus.SUCCESS if outcome.ok else StepStatus.FAILURE
        step_error = None
        if not outcome.ok:
            step_error = str(StepExecutionError(job=job.name, step=step.name, exit_code=outcome.exit_code,
                                                message=outcome.log.strip().splitlines()[-1] if outcome.log.strip() else ""))
            log.info("%s", step_error)

        results.append(
            StepResult(
                name=step.name,
                id=step.id,
                status=status,
                exit_code=outcome.exit_code,
                outputs=dict(outcome.outputs),
                error=step_error,
            )
        )
        conclusion = "success" if (outcome.ok or step.continue_on_error) else "failure"
        steps_ctx[key] = {"outputs": dict(outcome.outputs), "outcome": status.value, "conclusion": conclusion}

        if not outcome.ok and not step.continue_on_error and not failed:
            failed, failed_step, error = True, step.name, step_error

    if is_cancelled():
        return JobOutcome(status=JobStatus.CANCELLED, steps=results, failed_step=failed_step, error=error)

    outputs: Dict[str, str] = {}
    final_ctx = scope.context(env, steps_ctx, JobState(failed=failed))
    for name, expr in job.outputs.items():
        try:
            outputs[name] = str(interpolate(expr, final_ctx))
        except ExpressionError as e:
            log.warning("[%s] output '%s' could not be evaluated: %s", job.name, name, e)

    return JobOutcome(
        status=JobStatus.FAILURE if failed else JobStatus.SUCCESS,
        steps=results,
        outputs=outputs,
        failed_step=failed_step,
        error=error,
    )


def _run_one(
    scope: JobScope,
    runner: Runner,
    step: StepDefinition,
    env: Dict[str, str],
    steps_ctx: Dict[str, Dict[str, Any]],
    failed: bool,
) -> StepOutcome:
    state = JobState(failed=failed)
    try:
        base_ctx = scope.context(env, steps_ctx, state)
        step_env = dict(env)
        step_env.update({k: str(v) for k, v in interpolate_mapping(step.env, base_ctx).items()})

        # the step's own env is visible to its run/with expressions
        ctx = scope.context(step_env, steps_ctx, state)
        resolved = replace(
            step,
            run=interpolate(step.run, ctx) if step.run is not None else None,
            with_params=interpolate_mapping(step.with_params, ctx),
            env=step_env,
        )
    except ExpressionError as e:
        return StepOutcome(exit_code=1, log=str(e))

    log.debug("[%s] running step '%s' (%s)", scope.job.name, step.name, step.kind.value)
    try:
        return runner.execute(resolved, step_env)
    except Exception as e:
        # a crashing runner or action fails only this step
        return StepOutcome(exit_code=1, log=f"{type(e).__name__}: {e}")
