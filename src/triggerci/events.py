# events.py
"""
Event ingestion: turn webhook deliveries, schedule ticks, manual dispatches
and the local git checkout into normalized `Event` records.
"""
from __future__ import annotations

import json
import logging
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from . import git_facts
from .errors import TriggerciError
from .model import Event, EventKind

log = logging.getLogger(__name__)

DISPATCH_EVENT = "workflow_dispatch"
SCHEDULE_EVENT = "schedule"
PUSH_EVENT = "push"
ISSUES_EVENT = "issues"

_EVENT_HEADER = "x-github-event"


class EventParseError(TriggerciError):
    """A webhook delivery could not be read as an event."""


def classify(name: str, payload: Mapping[str, Any]) -> EventKind:
    if name == ISSUES_EVENT and payload.get("action") == "opened":
        return EventKind.ISSUE_OPENED
    if name == PUSH_EVENT:
        return EventKind.PUSH
    if name == SCHEDULE_EVENT:
        return EventKind.SCHEDULE
    if name in (DISPATCH_EVENT, "dispatch"):
        return EventKind.DISPATCH
    return EventKind.WEBHOOK_OTHER


def normalize(
    name: str,
    payload: Optional[Mapping[str, Any]] = None,
    *,
    timestamp: Optional[datetime] = None,
) -> Event:
    """Build an Event from a raw event name and payload."""
    name = (name or "").strip()
    if not name:
        raise EventParseError("event name is required")
    if name == "dispatch":
        name = DISPATCH_EVENT
    payload = dict(payload or {})
    event = Event(
        kind=classify(name, payload),
        name=name,
        payload=payload,
        timestamp=timestamp or datetime.now(timezone.utc),
    )
    log.debug("ingested %s event (kind=%s, action=%s)", event.name, event.kind.value, event.action)
    return event


def from_webhook(headers: Mapping[str, str], body: bytes | str | Mapping[str, Any]) -> Event:
    """
    Normalize a GitHub-style webhook delivery.

    The event name comes from the X-GitHub-Event header; the body is the JSON
    payload (already decoded, or raw bytes).
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    name = lowered.get(_EVENT_HEADER)
    if not name:
        raise EventParseError("missing X-GitHub-Event header")

    if isinstance(body, Mapping):
        payload = dict(body)
    else:
        try:
            payload = json.loads(body or "{}")
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise EventParseError(f"webhook body is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise EventParseError("webhook body must be a JSON object")

    return normalize(name, payload)


def dispatch(
    workflow: str | None = None,
    *,
    ref: str = "refs/heads/main",
    inputs: Optional[Dict[str, Any]] = None,
) -> Event:
    """A manual run request, optionally addressed to one workflow by name."""
    payload: Dict[str, Any] = {"ref": ref, "inputs": dict(inputs or {})}
    if workflow:
        payload["workflow"] = workflow
    return normalize(DISPATCH_EVENT, payload)


def floor_to_minute(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.replace(second=0, microsecond=0)


def schedule_tick(now: Optional[datetime] = None) -> Event:
    """The event for one scheduler tick; ticks have minute resolution."""
    tick = floor_to_minute(now or datetime.now(timezone.utc))
    return normalize(SCHEDULE_EVENT, {"tick": tick.isoformat()}, timestamp=tick)


def push_from_git(cwd: str | Path = ".", *, compare_ref: str = "origin/main") -> Event:
    """
    Describe the local checkout as a push: current ref, HEAD sha and the
    files changed relative to `compare_ref`.
    """
    root = git_facts.repo_root(cwd)
    ref = git_facts.current_ref(root)
    repository = {"name": root.name}
    try:
        repository["clone_url"] = git_facts.remote_url(cwd=root)
    except subprocess.CalledProcessError:
        log.debug("no origin remote in %s", root)
    payload = {
        "ref": ref,
        "after": git_facts.head_sha(root),
        "changed_files": git_facts.changed_since(compare_ref, cwd=root),
        "repository": repository,
    }
    return normalize(PUSH_EVENT, payload)
