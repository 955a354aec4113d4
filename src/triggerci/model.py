# model.py
from __future__ import annotations

import copy
import itertools
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .errors import InvalidTransitionError


# ----------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------

class EventKind(str, Enum):
    ISSUE_OPENED = "issue_opened"
    PUSH = "push"
    SCHEDULE = "schedule"
    DISPATCH = "dispatch"
    WEBHOOK_OTHER = "webhook-other"


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class Event:
    """
    A normalized external event.

    `name` is the raw webhook event name (issues, push, schedule,
    workflow_dispatch, ...); `kind` is the coarse classification.
    The payload is deep-copied and frozen on creation.
    """
    kind: EventKind
    name: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", _freeze(copy.deepcopy(_thaw(self.payload))))

    @property
    def action(self) -> Optional[str]:
        return self.payload.get("action")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "name": self.name,
            "payload": _thaw(self.payload),
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Event:
        return cls(
            kind=EventKind(data["kind"]),
            name=data["name"],
            payload=data.get("payload") or {},
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


# ----------------------------------------------------------------------
# Workflow definition
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class TriggerSpec:
    """One `on:` entry: an event name plus its filters (types, branches, cron, ...)."""
    event: str
    filters: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "filters", _freeze(dict(self.filters)))

    def __hash__(self) -> int:
        return hash((self.event, repr(sorted((k, repr(v)) for k, v in self.filters.items()))))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TriggerSpec):
            return NotImplemented
        return self.event == other.event and dict(self.filters) == dict(other.filters)


class StepKind(str, Enum):
    RUN = "run"
    USES = "uses"


@dataclass(frozen=True)
class StepDefinition:
    """
    A single step: either a shell command (`run`) or a reusable action (`uses`).

    Exactly one of the two is set; `kind` tells which.
    """
    name: str
    run: Optional[str] = None
    uses: Optional[str] = None
    with_params: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    condition: Optional[str] = None
    id: Optional[str] = None
    shell: Optional[str] = None
    working_directory: Optional[str] = None
    continue_on_error: bool = False

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise ValueError(f"Step '{self.name}' must define exactly one of run/uses")
        object.__setattr__(self, "with_params", MappingProxyType(dict(self.with_params)))
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    @property
    def kind(self) -> StepKind:
        return StepKind.RUN if self.run is not None else StepKind.USES

    def __hash__(self) -> int:
        return hash((self.name, self.id, self.run, self.uses))


@dataclass(frozen=True)
class JobDefinition:
    name: str
    steps: Tuple[StepDefinition, ...]
    needs: Tuple[str, ...] = ()
    runs_on: FrozenSet[str] = frozenset()
    env: Mapping[str, str] = field(default_factory=dict)
    condition: Optional[str] = None
    continue_on_error: bool = False
    outputs: Mapping[str, str] = field(default_factory=dict)
    # values of the matrix combination this job was expanded from
    matrix: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "needs", tuple(self.needs))
        object.__setattr__(self, "runs_on", frozenset(self.runs_on))
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))
        object.__setattr__(self, "outputs", MappingProxyType(dict(self.outputs)))
        object.__setattr__(self, "matrix", MappingProxyType(dict(self.matrix)))

    def __hash__(self) -> int:
        return hash((self.name, self.needs))


@dataclass(frozen=True)
class WorkflowDefinition:
    name: str
    triggers: FrozenSet[TriggerSpec]
    jobs: Mapping[str, JobDefinition]
    env: Mapping[str, str] = field(default_factory=dict)
    source: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "triggers", frozenset(self.triggers))
        # insertion order of `jobs` is the declaration order
        object.__setattr__(self, "jobs", MappingProxyType(dict(self.jobs)))
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))

    def __hash__(self) -> int:
        return hash((self.name, tuple(self.jobs)))


# ----------------------------------------------------------------------
# Run state
# ----------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (JobStatus.PENDING, JobStatus.RUNNING)


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.SKIPPED, JobStatus.CANCELLED},
    JobStatus.RUNNING: {JobStatus.SUCCESS, JobStatus.FAILURE, JobStatus.CANCELLED},
}


@dataclass
class StepResult:
    name: str
    id: Optional[str]
    status: StepStatus
    exit_code: Optional[int] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class JobResult:
    status: JobStatus = JobStatus.PENDING
    steps: List[StepResult] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    started_seq: Optional[int] = None
    finished_seq: Optional[int] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None


class Run:
    """
    One execution of a workflow for a matched event.

    Job state is only changed through `transition()` and `cancel()`, both under
    a single lock. Every transition draws from a logical clock so ordering
    between jobs can be checked after the fact.
    """

    def __init__(self, workflow: WorkflowDefinition, event: Event, run_id: str | None = None):
        self.id = run_id or uuid.uuid4().hex
        self.workflow = workflow
        self.event = event
        self.status = RunStatus.QUEUED
        self.jobs: Dict[str, JobResult] = {name: JobResult() for name in workflow.jobs}
        self.error: Optional[str] = None
        self.failed_job: Optional[str] = None
        self.failed_step: Optional[str] = None

        self._lock = threading.RLock()
        self._clock = itertools.count(1)
        self._cancelled = threading.Event()

    # ---- state ----

    @property
    def job_statuses(self) -> Dict[str, JobStatus]:
        with self._lock:
            return {name: r.status for name, r in self.jobs.items()}

    @property
    def cancel_requested(self) -> bool:
        return self._cancelled.is_set()

    @property
    def finished(self) -> bool:
        with self._lock:
            return all(r.status.terminal for r in self.jobs.values())

    def transition(self, job: str, target: JobStatus) -> bool:
        """
        Move `job` to `target`.

        Returns False (and changes nothing) when the job is already terminal:
        a cancelled job's late outcome must not overwrite the cancellation.
        """
        with self._lock:
            result = self.jobs[job]
            if result.status.terminal:
                return False
            if target not in _TRANSITIONS[result.status]:
                raise InvalidTransitionError(job=job, current=result.status.value, target=target.value)
            result.status = target
            seq = next(self._clock)
            now = time.monotonic()
            if target is JobStatus.RUNNING:
                result.started_seq, result.started_at = seq, now
            else:
                result.finished_seq, result.finished_at = seq, now
            return True

    def cancel(self) -> None:
        """Cancel every non-terminal job. Safe to call any number of times."""
        with self._lock:
            self._cancelled.set()
            for name, result in self.jobs.items():
                if not result.status.terminal:
                    self.transition(name, JobStatus.CANCELLED)
            if self.status in (RunStatus.QUEUED, RunStatus.RUNNING):
                self.status = RunStatus.CANCELLED

    def record_failure(self, job: str, step: str | None) -> None:
        with self._lock:
            if self.failed_job is None:
                self.failed_job, self.failed_step = job, step

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "id": self.id,
                "workflow": self.workflow.name,
                "status": self.status.value,
                "error": self.error,
                "failed_job": self.failed_job,
                "failed_step": self.failed_step,
                "jobs": {name: r.status.value for name, r in self.jobs.items()},
            }
