# agent/executor.py
from __future__ import annotations

import io
import logging
import subprocess
import sys
import threading
from pathlib import Path
from typing import Callable, Mapping, Optional

from triggerci.engine import Engine
from triggerci.loader import parse_workflow
from triggerci.logs import get_masker
from triggerci.runners import RunnerPool
from triggerci.ui.console import Console

from .api_client import APIClient, APIError
from .models import ExecutionResult, Lease

log = logging.getLogger(__name__)

RunnerFactory = Callable[[Path], RunnerPool]


class LogCapture:
    """
    Context manager that captures stdout/stderr for later submission to API.

    Logs are captured in a buffer and sent at completion via complete_lease(),
    masked so registered secret values never leave the agent.
    """

    def __init__(self):
        self.log_buffer = io.StringIO()
        self.original_stdout = sys.stdout
        self.original_stderr = sys.stderr

    def __enter__(self):
        self.original_stdout = sys.stdout
        self.original_stderr = sys.stderr
        sys.stdout = self
        sys.stderr = self
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        sys.stdout = self.original_stdout
        sys.stderr = self.original_stderr

    def write(self, text: str) -> int:
        self.log_buffer.write(text)
        return len(text)

    def flush(self) -> None:
        pass

    def get_logs(self) -> str:
        return get_masker().mask(self.log_buffer.getvalue())


def _git(args: list[str], cwd: Optional[Path] = None) -> None:
    result = subprocess.run(["git", *args], cwd=cwd, check=False, capture_output=True, text=True)
    if result.returncode != 0:
        raise RuntimeError(f"git {args[0]} failed: {result.stderr.strip()}")


def _clone_or_update_repo(repo_url: str, ref: str, work_dir: Path) -> Path:
    """
    Clone or update a repository and check out `ref`.

    Raises:
        RuntimeError: If git operations fail
    """
    work_dir.mkdir(parents=True, exist_ok=True)
    repo_name = repo_url.rstrip("/").split("/")[-1].replace(".git", "")
    repo_path = work_dir / repo_name

    try:
        if repo_path.exists():
            _git(["fetch", "origin"], cwd=repo_path)
        else:
            _git(["clone", repo_url, str(repo_path)])
        checkout = ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref
        _git(["checkout", checkout], cwd=repo_path)
    except FileNotFoundError:
        raise RuntimeError("git command not found. Please install Git.")

    return repo_path


class CancelWatcher(threading.Thread):
    """Polls the control plane and cancels the local run when asked to."""

    def __init__(self, api_client: APIClient, run_id: str, on_cancel: Callable[[], None], interval: float = 5.0):
        super().__init__(name=f"cancel-watch-{run_id[:8]}", daemon=True)
        self.api_client = api_client
        self.run_id = run_id
        self.on_cancel = on_cancel
        self.interval = interval
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                if self.api_client.cancel_requested(self.run_id):
                    log.info("run %s: cancellation requested", self.run_id)
                    self.on_cancel()
                    return
            except APIError as e:
                log.warning("run %s: cancel poll failed: %s", self.run_id, e)


def execute_lease(
    lease: Lease,
    api_client: APIClient,
    work_dir: Path,
    make_runners: RunnerFactory,
    *,
    secrets: Optional[Mapping[str, str]] = None,
    max_parallel: Optional[int] = None,
    cancel_poll: float = 5.0,
    debug: bool = False,
) -> ExecutionResult:
    """
    Execute a leased run with a local engine.

    The run executes in a checkout of the event's repository when the
    payload names one, otherwise in `work_dir`.
    """
    log_capture = LogCapture()
    watcher: Optional[CancelWatcher] = None

    try:
        with log_capture:
            workflow = parse_workflow(lease.workflow_doc)
            event = lease.event

            workspace = work_dir
            if lease.repo_url:
                workspace = _clone_or_update_repo(lease.repo_url, lease.ref, work_dir)
            workspace.mkdir(parents=True, exist_ok=True)

            engine = Engine(
                [workflow],
                make_runners(workspace),
                secrets=secrets,
                max_parallel=max_parallel,
                reporter=Console(debug=debug),
            )
            run = engine.prepare(workflow, event, run_id=lease.run_id)

            watcher = CancelWatcher(api_client, lease.run_id, run.cancel, interval=cancel_poll)
            watcher.start()
            # matched server-side; the trigger is only needed for dispatch input defaults
            spec = next((t for t in workflow.triggers if t.event == event.name), None)
            engine.execute(run, trigger=spec)

        return ExecutionResult(
            status=run.status.value,
            jobs={name: s.value for name, s in run.job_statuses.items()},
            logs=log_capture.get_logs(),
            error=run.error,
            failed_job=run.failed_job,
            failed_step=run.failed_step,
        )
    except Exception as e:
        log.exception("run %s could not be executed", lease.run_id)
        logs = log_capture.get_logs()
        error_msg = get_masker().mask(f"{type(e).__name__}: {e}")
        return ExecutionResult(
            status="failure",
            logs=f"{logs}\nError: {error_msg}" if logs else error_msg,
            error=error_msg,
        )
    finally:
        if watcher is not None:
            watcher.stop()
