# agent/agent.py
from __future__ import annotations

import signal
import time
from pathlib import Path
from typing import Mapping, Optional

from .api_client import APIClient, APIError
from .executor import RunnerFactory, execute_lease
from .models import Lease
from triggerci.ui.console import get_console


class Agent:
    """triggerci agent: polls the control plane for runs and executes them locally."""

    def __init__(
        self,
        api_url: str,
        agent_id: str,
        make_runners: RunnerFactory,
        poll_interval: int = 5,
        *,
        secrets: Optional[Mapping[str, str]] = None,
        max_parallel: Optional[int] = None,
        work_dir: str | Path = ".triggerci/agent_work",
        api_client: Optional[APIClient] = None,
    ):
        """
        Initialize agent.

        Args:
            api_url: Base URL of the API
            agent_id: Unique identifier for this agent instance
            make_runners: Builds the runner pool for a run's workspace
            poll_interval: Seconds to wait between polls when no runs are queued
            secrets: Secret values for the expression context; never sent to the API
        """
        self.api_client = api_client or APIClient(api_url, agent_id)
        self.make_runners = make_runners
        self.poll_interval = poll_interval
        self.secrets = dict(secrets or {})
        self.max_parallel = max_parallel
        self.work_dir = Path(work_dir)
        self.running = True

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        console = get_console()
        console.print_info(f"\nReceived signal {signum}, shutting down after the current run...")
        self.running = False

    def run(self, max_runs: Optional[int] = None) -> int:
        """Run the agent loop. Returns the number of runs executed."""
        console = get_console()
        console.print_agent_started(
            agent_id=self.api_client.agent_id,
            api=self.api_client.base_url,
            poll_interval=self.poll_interval,
        )

        executed = 0
        while self.running and (max_runs is None or executed < max_runs):
            try:
                lease = self.api_client.claim_lease()
                if lease:
                    console.print_lease_acquired(workflow=lease.workflow, run_id=lease.run_id)
                    self.execute(lease)
                    executed += 1
                else:
                    time.sleep(self.poll_interval)
            except APIError as e:
                console.print_error(
                    "API error",
                    str(e),
                    suggestion="Check API connectivity and retry.",
                )
                time.sleep(self.poll_interval)

        console.print_info("Agent stopped.")
        return executed

    def execute(self, lease: Lease) -> None:
        """Execute a single lease and report the outcome."""
        console = get_console()
        start_time = time.time()

        result = execute_lease(
            lease,
            self.api_client,
            self.work_dir,
            self.make_runners,
            secrets=self.secrets,
            max_parallel=self.max_parallel,
            cancel_poll=self.poll_interval,
            debug=console.debug,
        )

        try:
            self.api_client.complete_lease(lease.run_id, result)
        except APIError as e:
            console.print_error(
                "Failed to send completion",
                f"Could not send completion status to API: {e}",
            )

        console.print_execution_complete(status=result.status, duration=time.time() - start_time)
        if result.error:
            console.print_info(f"Error: {result.error}")

        # Show logs in debug mode
        if console.debug and result.logs:
            console.print_info(f"\nLogs for {lease.workflow}:")
            console.print_info("=" * 60)
            console.print_info(result.logs)
            console.print_info("=" * 60)
