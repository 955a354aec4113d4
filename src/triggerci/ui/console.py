"""Console output formatting utilities for triggerci."""

from __future__ import annotations

import sys
from typing import List, Optional

from triggerci.logs import SecretMasker, get_masker
from triggerci.model import JobStatus, Run, StepStatus


class Console:
    """Centralized console output formatting. Every line goes through the secret masker."""

    def __init__(self, debug: bool = False, masker: SecretMasker | None = None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces and step logs
            masker: Secret masker; defaults to the process-wide one
        """
        self.debug = debug
        self.masker = masker or get_masker()

    def _out(self, text: str = "", *, err: bool = False) -> None:
        print(self.masker.mask(text), file=sys.stderr if err else sys.stdout)

    def print_run_started(
        self,
        workflow: str,
        event: str,
        job_count: int,
        run_id: str | None = None,
    ) -> None:
        """Print run start information."""
        self._out("\nRUN STARTED")
        self._out(f"Workflow: {workflow}")
        self._out(f"Event: {event}")
        if run_id:
            self._out(f"Run ID: {run_id}")
        self._out(f"Jobs: {job_count}")
        self._out()

    # ---- scheduler callbacks ----

    def job_started(self, run: Run, job: str) -> None:
        self.print_job_start(job)

    def job_finished(self, run: Run, job: str, status: JobStatus) -> None:
        result = run.jobs[job]
        for step in result.steps:
            self.print_step(step.name, step.status)
            if step.status is StepStatus.FAILURE:
                self.print_failure(step.name, step.error or "", exit_code=step.exit_code)
        if status is JobStatus.SKIPPED:
            self._out(f"\nJOB SKIPPED: {job}")
        elif status is JobStatus.FAILURE and not result.steps:
            self.print_failure(job, result.error or "", is_job=True)
        else:
            self._out(f"JOB {status.value.upper()}: {job}")

    # ---- pieces ----

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"\nJOB STARTED: {name}")

    def print_step(self, name: str, status: StepStatus) -> None:
        """Print a finished step."""
        self._out(f"STEP: {name} ({status.value})")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        self._out(f"{prefix}: {name}")
        if exit_code is not None:
            self._out(f"Exit code: {exit_code}")
        if hint:
            self._out(f"Hint: {hint}")
        if self.debug:
            self._out(f"Error details: {reason}")
        elif reason:
            # first line only outside debug mode
            self._out(f"Error: {reason.splitlines()[0]}")

    def print_plan(self, workflow: str, stages: List[List[str]], triggers: List[str]) -> None:
        """Print a validated workflow: its triggers and job stages."""
        self._out(f"\nWORKFLOW: {workflow}")
        self._out("Triggers:")
        for t in triggers:
            self._out(f"  {t}")
        self._out("Stages:")
        for i, stage in enumerate(stages, 1):
            self._out(f"  {i}. {', '.join(stage)}")

    def print_results(self, run: Run) -> None:
        """Print final results summary."""
        self._out("\n" + "=" * 40)
        self._out(f"RESULTS ({run.workflow.name})")
        self._out("=" * 40)
        if run.error:
            self._out(f"  error: {run.error}")
        for job, status in run.job_statuses.items():
            self._out(f"  {job}: {status.value.upper()}")
        self._out(f"Run: {run.status.value.upper()}")
        if run.failed_job:
            where = run.failed_job + (f" / {run.failed_step}" if run.failed_step else "")
            self._out(f"First failure: {where}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        self._out(f"\nERROR: {title}", err=True)
        self._out(f"{message}", err=True)
        if details:
            for detail in details:
                self._out(f"  {detail}", err=True)
        if suggestion:
            self._out(f"\n{suggestion}", err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            self._out("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)), err=True)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_agent_started(
        self,
        agent_id: str,
        api: str,
        poll_interval: int,
    ) -> None:
        """Print agent start information."""
        self._out("\nAGENT STARTED")
        self._out(f"Agent ID: {agent_id}")
        self._out(f"API: {api}")
        self._out(f"Polling every: {poll_interval}s")
        self._out()

    def print_lease_acquired(self, workflow: str, run_id: str) -> None:
        """Print lease acquisition message."""
        self._out("\nLEASE ACQUIRED")
        self._out(f"Workflow: {workflow}")
        self._out(f"Run ID: {run_id}")

    def print_execution_complete(
        self,
        status: str,
        duration: Optional[float] = None,
    ) -> None:
        """Print execution completion message."""
        self._out("\nEXECUTION COMPLETE")
        self._out(f"Status: {status}")
        if duration is not None:
            self._out(f"Duration: {duration:.1f}s")

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
