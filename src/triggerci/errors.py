# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


class TriggerciError(Exception):
    """Base class for every error raised by triggerci."""


# ----------------------------------------------------------------------
# Graph construction (fail the Run before any job starts)
# ----------------------------------------------------------------------

@dataclass
class CyclicDependencyError(TriggerciError):
    cycle: List[str]

    def __str__(self) -> str:
        return f"Job graph has a cycle: {' -> '.join(self.cycle)}"


@dataclass
class UnknownJobReferenceError(TriggerciError):
    job: str
    missing: str
    known: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"Job '{self.job}' needs unknown job '{self.missing}'. Known jobs: {self.known}"


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------

@dataclass
class StepExecutionError(TriggerciError):
    """A step finished with a nonzero exit status."""
    job: str
    step: str
    exit_code: int
    message: str = ""

    def __str__(self) -> str:
        text = f"[{self.job}] step '{self.step}' failed (exit={self.exit_code})"
        if self.message:
            text += f": {self.message}"
        return text


@dataclass
class InvalidTransitionError(TriggerciError):
    job: str
    current: str
    target: str

    def __str__(self) -> str:
        return f"Job '{self.job}' cannot move from {self.current} to {self.target}"


class RunnerUnavailableError(TriggerciError):
    """No registered runner carries every label a job asks for."""


class ActionNotFoundError(TriggerciError):
    """A `uses:` reference does not resolve to a registered action."""


# ----------------------------------------------------------------------
# Triggers / expressions / loading
# ----------------------------------------------------------------------

@dataclass
class TriggerEvaluationError(TriggerciError):
    event: str
    reason: str

    def __str__(self) -> str:
        return f"Malformed '{self.event}' trigger: {self.reason}"


@dataclass
class ExpressionError(TriggerciError):
    expression: str
    reason: str
    position: Optional[int] = None

    def __str__(self) -> str:
        where = f" at {self.position}" if self.position is not None else ""
        return f"Invalid expression{where}: {self.reason} in {self.expression!r}"


class WorkflowLoadError(TriggerciError):
    """A workflow document or file could not be turned into a definition."""


# ----------------------------------------------------------------------
# Artifacts
# ----------------------------------------------------------------------

class ArtifactExistsError(TriggerciError):
    """Artifacts are write-once: the name is already taken in this store."""


class ArtifactNotFoundError(TriggerciError):
    pass
