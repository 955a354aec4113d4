# agent/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Dict, Any

from triggerci.model import Event


@dataclass
class Lease:
    """Represents a run lease from the API (ClaimedRun response)."""
    run_id: str
    workflow: str
    payload_json: Dict[str, Any]  # workflow document + event
    lease_expires_at: str  # ISO format timestamp

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Lease:
        """Create Lease from API ClaimedRun response dictionary."""
        return cls(
            run_id=data["run_id"],
            workflow=data["workflow"],
            payload_json=data["payload_json"],
            lease_expires_at=data["lease_expires_at"],
        )

    @property
    def workflow_doc(self) -> Dict[str, Any]:
        return self.payload_json.get("workflow", {})

    @property
    def event(self) -> Event:
        return Event.from_dict(self.payload_json["event"])

    @property
    def repo_url(self) -> str:
        """Clone URL of the repository the event came from, if the payload names one."""
        repo = self.payload_json.get("event", {}).get("payload", {}).get("repository") or {}
        return repo.get("clone_url", "") if isinstance(repo, dict) else ""

    @property
    def ref(self) -> str:
        return self.payload_json.get("event", {}).get("payload", {}).get("ref") or "HEAD"


@dataclass
class ExecutionResult:
    """Result of executing a run lease."""
    status: str  # "success" | "failure" | "cancelled"
    jobs: Dict[str, str] = field(default_factory=dict)
    logs: str = ""
    error: Optional[str] = None
    failed_job: Optional[str] = None
    failed_step: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API submission."""
        return {
            "status": self.status,
            "jobs": self.jobs,
            "logs": self.logs,
            "error": self.error,
            "failed_job": self.failed_job,
            "failed_step": self.failed_step,
        }
