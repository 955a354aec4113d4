# config.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import FrozenSet, Mapping, Optional

from .artifacts import DEFAULT_ARTIFACTS_DIR

DEFAULT_RUNNER_LABELS = "self-hosted,local,linux,ubuntu-latest"


def _labels(raw: str) -> FrozenSet[str]:
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    """Local engine settings, read from TRIGGERCI_* environment variables."""
    max_parallel: Optional[int] = None
    artifacts_dir: str = DEFAULT_ARTIFACTS_DIR
    runner_labels: FrozenSet[str] = _labels(DEFAULT_RUNNER_LABELS)
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        raw_parallel = env.get("TRIGGERCI_MAX_PARALLEL", "").strip()
        try:
            max_parallel = int(raw_parallel) if raw_parallel else None
        except ValueError:
            raise ValueError(f"TRIGGERCI_MAX_PARALLEL must be an integer, got {raw_parallel!r}") from None
        return cls(
            max_parallel=max_parallel,
            artifacts_dir=env.get("TRIGGERCI_ARTIFACTS_DIR", DEFAULT_ARTIFACTS_DIR),
            runner_labels=_labels(env.get("TRIGGERCI_RUNNER_LABELS", DEFAULT_RUNNER_LABELS)),
            log_level=env.get("TRIGGERCI_LOG_LEVEL", "WARNING").upper(),
        )
