# agent/api_client.py
from __future__ import annotations

import json
import time
import urllib.error
import urllib.request
from typing import Any, Dict, Optional
from urllib.parse import urljoin

from triggerci.errors import TriggerciError

from .models import ExecutionResult, Lease


class APIError(TriggerciError):
    """A control-plane call failed. `status` is the HTTP code, None for network errors."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class APIClient:
    """
    Thin JSON-over-HTTP client for the control plane.

    Network errors (connection refused, DNS, timeouts) are retried up to
    `retries` times with a linear backoff; HTTP errors are not, the server
    already answered.
    """

    def __init__(
        self,
        base_url: str,
        agent_id: str,
        timeout: float = 30.0,
        retries: int = 2,
        backoff: float = 1.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.agent_id = agent_id
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff

    # -------------------- Transport --------------------

    def _build(self, method: str, path: str, data: Optional[dict]) -> urllib.request.Request:
        body = None if data is None else json.dumps(data).encode("utf-8")
        return urllib.request.Request(
            urljoin(self.base_url + "/", path.lstrip("/")),
            data=body,
            headers={"Content-Type": "application/json", "X-Triggerci-Agent": self.agent_id},
            method=method,
        )

    def _request(self, method: str, path: str, data: Optional[dict] = None) -> dict:
        """Send one call; an empty body (204) comes back as {}."""
        attempt = 0
        while True:
            req = self._build(method, path, data)
            try:
                with urllib.request.urlopen(req, timeout=self.timeout) as response:
                    raw = response.read().decode("utf-8")
                break
            except urllib.error.HTTPError as e:
                detail = e.read().decode("utf-8", errors="replace") if e.fp else ""
                raise APIError(f"{method} {path} -> {e.code} {e.reason}. {detail}".rstrip(), status=e.code) from None
            except urllib.error.URLError as e:
                if attempt >= self.retries:
                    raise APIError(f"Network error talking to {self.base_url}: {e.reason}") from None
                attempt += 1
                time.sleep(self.backoff * attempt)

        if not raw:
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise APIError(f"Invalid JSON from {method} {path}: {e}") from None

    # -------------------- Lease protocol --------------------

    def claim_lease(self) -> Optional[Lease]:
        """Lease the next queued run, or None when the queue is empty."""
        response = self._request("POST", "/leases/claim", data={"agent_id": self.agent_id})
        if not response:
            return None
        try:
            return Lease.from_dict(response)
        except (KeyError, TypeError):
            raise APIError(f"Malformed lease response: {response!r}") from None

    def complete_lease(self, run_id: str, result: ExecutionResult) -> None:
        body: Dict[str, Any] = {"agent_id": self.agent_id, **result.to_dict()}
        self._request("POST", f"/leases/{run_id}/complete", data=body)

    def get_run(self, run_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/runs/{run_id}")

    def cancel_requested(self, run_id: str) -> bool:
        return bool(self.get_run(run_id).get("cancel_requested"))
