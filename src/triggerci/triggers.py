# triggers.py
"""
Trigger matching: decide whether a workflow's `on:` declarations accept an
event.

Webhook-shaped triggers match on the event name and, when declared, on the
payload's action (`types`). Push triggers also filter on branch/tag and
changed-path globs. Schedule triggers evaluate a cron expression against the
tick (minute resolution) and fire at most once per tick.
"""
from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Dict, Iterable, List, Optional, Tuple

from croniter import croniter

from .errors import TriggerEvaluationError
from .events import DISPATCH_EVENT, PUSH_EVENT, SCHEDULE_EVENT, floor_to_minute
from .model import Event, TriggerSpec, _thaw

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TriggerMatch:
    matched: bool
    spec: Optional[TriggerSpec] = None

    def __bool__(self) -> bool:
        return self.matched


NO_MATCH = TriggerMatch(False)


# ----------------------------------------------------------------------
# Glob helpers (`*` stays inside one path segment, `**` crosses them)
# ----------------------------------------------------------------------

@lru_cache(maxsize=512)
def _glob_regex(pattern: str) -> re.Pattern:
    out: List[str] = []
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if c == "*":
            if pattern[i:i + 2] == "**":
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("".join(out) + r"\Z")


def glob_match(pattern: str, value: str) -> bool:
    return _glob_regex(pattern).match(value) is not None


def filter_patterns(patterns: List[str], value: str) -> bool:
    """
    Apply an ordered include list where `!pattern` entries exclude again.
    The last pattern that matches decides.
    """
    included = False
    for pattern in patterns:
        if pattern.startswith("!"):
            if glob_match(pattern[1:], value):
                included = False
        elif glob_match(pattern, value):
            included = True
    return included


# ----------------------------------------------------------------------
# Filter accessors
# ----------------------------------------------------------------------

def _string_list(spec: TriggerSpec, key: str) -> Optional[List[str]]:
    raw = spec.filters.get(key)
    if raw is None:
        return None
    if isinstance(raw, str):
        return [raw]
    if isinstance(raw, (list, tuple)) and all(isinstance(v, str) for v in raw):
        return list(raw)
    raise TriggerEvaluationError(event=spec.event, reason=f"'{key}' must be a string or a list of strings")


def _matches_types(spec: TriggerSpec, event: Event) -> bool:
    types = _string_list(spec, "types")
    if types is None:
        return True
    return event.action in types


def _split_ref(ref: str) -> Tuple[str, str]:
    if ref.startswith("refs/heads/"):
        return "branch", ref[len("refs/heads/"):]
    if ref.startswith("refs/tags/"):
        return "tag", ref[len("refs/tags/"):]
    return "other", ref


def _matches_ref(spec: TriggerSpec, event: Event) -> bool:
    branches = _string_list(spec, "branches")
    branches_ignore = _string_list(spec, "branches_ignore")
    tags = _string_list(spec, "tags")
    tags_ignore = _string_list(spec, "tags_ignore")
    if branches is not None and branches_ignore is not None:
        raise TriggerEvaluationError(event=spec.event, reason="'branches' and 'branches_ignore' are exclusive")
    if tags is not None and tags_ignore is not None:
        raise TriggerEvaluationError(event=spec.event, reason="'tags' and 'tags_ignore' are exclusive")

    branch_filtered = branches is not None or branches_ignore is not None
    tag_filtered = tags is not None or tags_ignore is not None
    if not branch_filtered and not tag_filtered:
        return True

    kind, name = _split_ref(str(event.payload.get("ref") or ""))
    if kind == "branch":
        if not branch_filtered:
            return False
        if branches is not None:
            return filter_patterns(branches, name)
        return not filter_patterns(branches_ignore or [], name)
    if kind == "tag":
        if not tag_filtered:
            return False
        if tags is not None:
            return filter_patterns(tags, name)
        return not filter_patterns(tags_ignore or [], name)
    return False


def _matches_paths(spec: TriggerSpec, event: Event) -> bool:
    paths = _string_list(spec, "paths")
    paths_ignore = _string_list(spec, "paths_ignore")
    if paths is None and paths_ignore is None:
        return True
    if paths is not None and paths_ignore is not None:
        raise TriggerEvaluationError(event=spec.event, reason="'paths' and 'paths_ignore' are exclusive")

    changed = event.payload.get("changed_files")
    if changed is None:
        # no file list in the delivery: path filters cannot rule the event out
        log.debug("push event carries no changed_files; path filters not applied")
        return True
    if paths is not None:
        return any(filter_patterns(paths, f) for f in changed)
    return not all(filter_patterns(paths_ignore or [], f) for f in changed)


# ----------------------------------------------------------------------
# Matcher
# ----------------------------------------------------------------------

class TriggerMatcher:
    """
    Stateful only for schedules: remembers the last tick each
    (workflow, cron) pair fired on so a tick is never matched twice.
    """

    def __init__(self) -> None:
        self._fired: Dict[Tuple[str, str], datetime] = {}
        self._lock = threading.Lock()

    def match(self, event: Event, triggers: Iterable[TriggerSpec], *, workflow: str = "") -> TriggerMatch:
        ordered = sorted(triggers, key=lambda t: (t.event, repr(sorted(t.filters.items(), key=lambda kv: kv[0]))))
        for spec in ordered:
            try:
                if self._evaluate(spec, event, workflow):
                    log.debug("workflow %r matched %s trigger", workflow, spec.event)
                    return TriggerMatch(True, spec)
            except TriggerEvaluationError as e:
                log.warning("workflow %r: %s (treated as non-matching)", workflow, e)
        return NO_MATCH

    def _evaluate(self, spec: TriggerSpec, event: Event, workflow: str) -> bool:
        if spec.event != event.name:
            return False
        if spec.event == SCHEDULE_EVENT:
            return self._matches_schedule(spec, event, workflow)
        if spec.event == DISPATCH_EVENT:
            target = event.payload.get("workflow")
            return target in (None, "", workflow)
        if not _matches_types(spec, event):
            return False
        if spec.event == PUSH_EVENT:
            return _matches_ref(spec, event) and _matches_paths(spec, event)
        return True

    def _matches_schedule(self, spec: TriggerSpec, event: Event, workflow: str) -> bool:
        cron = spec.filters.get("cron")
        if not isinstance(cron, str) or not cron.strip():
            raise TriggerEvaluationError(event=spec.event, reason="schedule trigger needs a 'cron' string")
        if not croniter.is_valid(cron):
            raise TriggerEvaluationError(event=spec.event, reason=f"invalid cron expression {cron!r}")

        tick = floor_to_minute(event.timestamp)
        if not croniter.match(cron, tick):
            return False

        key = (workflow, cron)
        with self._lock:
            if self._fired.get(key) == tick:
                return False
            self._fired[key] = tick
        return True


def matches(event: Event, triggers: Iterable[TriggerSpec], *, workflow: str = "") -> TriggerMatch:
    """One-shot match with a fresh matcher (no schedule memory)."""
    return TriggerMatcher().match(event, triggers, workflow=workflow)


def describe(spec: TriggerSpec) -> str:
    parts: List[str] = [spec.event]
    for key, value in sorted(spec.filters.items()):
        parts.append(f"{key}={_thaw(value)}")
    return " ".join(parts)
