# tests/conftest.py
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

import pytest

from triggerci.model import JobDefinition, StepDefinition, TriggerSpec, WorkflowDefinition
from triggerci.runners import RunnerPool, StepOutcome


# ── Helpers ─────────────────────────────────────────────────────

Script = Union[StepOutcome, Callable[[StepDefinition, Mapping[str, str]], StepOutcome]]


class FakeRunner:
    """
    In-memory runner. Outcomes are scripted per step name; unknown steps
    succeed. Every call is recorded as (step name, env snapshot).
    """

    def __init__(
        self,
        labels=("self-hosted", "local", "linux", "ubuntu-latest"),
        script: Optional[Dict[str, Script]] = None,
        delay: float = 0.0,
    ):
        self.labels = frozenset(labels)
        self.script: Dict[str, Script] = dict(script or {})
        self.delay = delay
        self.calls: List[Tuple[str, Dict[str, str]]] = []
        self.steps: List[StepDefinition] = []
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def execute(self, step: StepDefinition, env: Mapping[str, str]) -> StepOutcome:
        with self._lock:
            self.calls.append((step.name, dict(env)))
            self.steps.append(step)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            scripted = self.script.get(step.name)
            if scripted is None:
                return StepOutcome(exit_code=0)
            if callable(scripted):
                return scripted(step, env)
            return scripted
        finally:
            with self._lock:
                self.active -= 1

    @property
    def names(self) -> List[str]:
        return [name for name, _env in self.calls]


def step(name: str, run: str = "true", **kwargs) -> StepDefinition:
    return StepDefinition(name=name, run=run, **kwargs)


def job(name: str, *steps: StepDefinition, needs=(), **kwargs) -> JobDefinition:
    return JobDefinition(name=name, steps=steps or (step(f"{name}-step"),), needs=tuple(needs), **kwargs)


def workflow(*jobs: JobDefinition, name: str = "wf", triggers=None, env=None) -> WorkflowDefinition:
    return WorkflowDefinition(
        name=name,
        triggers=frozenset(triggers or [TriggerSpec("workflow_dispatch")]),
        jobs={j.name: j for j in jobs},
        env=env or {},
    )


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def pool(fake_runner: FakeRunner) -> RunnerPool:
    return RunnerPool([fake_runner])


@pytest.fixture(autouse=True)
def _reset_triggerci_logger():
    # the CLI installs its own handler and stops propagation; caplog needs it back
    logger = logging.getLogger("triggerci")
    yield
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
