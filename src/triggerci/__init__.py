from .dsl import job, sh, uses, matrix, workflow, wf, JobBuilder, build, on, on_dispatch, on_issues, on_push, on_schedule
from .engine import Engine
from .scheduler import run_dag
from .model import Event, EventKind, JobDefinition, JobStatus, Run, RunStatus, StepDefinition, TriggerSpec, WorkflowDefinition

__all__ = [
    "job", "sh", "uses", "matrix", "workflow", "wf", "JobBuilder", "build",
    "on", "on_dispatch", "on_issues", "on_push", "on_schedule",
    "Engine", "run_dag",
    "Event", "EventKind", "JobDefinition", "JobStatus", "Run", "RunStatus",
    "StepDefinition", "TriggerSpec", "WorkflowDefinition",
]
