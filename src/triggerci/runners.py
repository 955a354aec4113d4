# runners.py
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Mapping, Optional, Protocol

from .errors import ActionNotFoundError, RunnerUnavailableError
from .model import StepDefinition, StepKind

if TYPE_CHECKING:
    from .actions import ActionRegistry
    from .artifacts import ArtifactStore

log = logging.getLogger(__name__)

OUTPUT_FILE_VAR = "TRIGGERCI_OUTPUT"
ENV_FILE_VAR = "TRIGGERCI_ENV"
RUN_ID_VAR = "TRIGGERCI_RUN_ID"

# keep the tail of the combined output, enough to explain a failure
LOG_TAIL = 4000


@dataclass
class StepOutcome:
    """What a runner reports back for one step."""
    exit_code: int
    outputs: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)  # variables exported for later steps
    log: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class Runner(Protocol):
    labels: FrozenSet[str]

    def execute(self, step: StepDefinition, env: Mapping[str, str]) -> StepOutcome:
        ...


# ----------------------------------------------------------------------
# key=value / heredoc files written by steps
# ----------------------------------------------------------------------

def parse_kv_file(path: Path) -> Dict[str, str]:
    """
    Parse an output/env file. Two line forms:

        name=value
        name<<DELIM
        multi-line value
        DELIM
    """
    if not path.exists():
        return {}
    values: Dict[str, str] = {}
    lines = path.read_text(encoding="utf-8").splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, delim = line.split("<<", 1)
            body: List[str] = []
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            if i >= len(lines):
                raise ValueError(f"unterminated heredoc for {name!r} in {path.name}")
            i += 1  # skip delimiter
            values[name.strip()] = "\n".join(body)
        elif "=" in line:
            name, value = line.split("=", 1)
            values[name.strip()] = value
        else:
            raise ValueError(f"malformed line in {path.name}: {line!r}")
    return values


# ----------------------------------------------------------------------
# Local runner
# ----------------------------------------------------------------------

def _shell_command(shell: Optional[str], script: Path) -> List[str]:
    if shell in (None, "", "bash"):
        if shutil.which("bash"):
            return ["bash", "--noprofile", "--norc", "-eo", "pipefail", str(script)]
        if shell == "bash":
            raise FileNotFoundError("bash is not available on this runner")
        return ["sh", "-e", str(script)]
    if shell == "sh":
        return ["sh", "-e", str(script)]
    if shell == "python":
        return [sys.executable, str(script)]
    # custom shell template, e.g. "perl {0}"
    if "{0}" in shell:
        return [part.replace("{0}", str(script)) for part in shell.split()]
    raise ValueError(f"unsupported shell: {shell!r}")


class LocalRunner:
    """
    Executes steps on this machine.

    `run` steps become a script executed with subprocess; steps publish
    outputs/exported variables by appending to the files named by
    $TRIGGERCI_OUTPUT and $TRIGGERCI_ENV. `uses` steps are dispatched to the
    action registry.
    """

    def __init__(
        self,
        workspace: str | Path = ".",
        *,
        labels: Iterable[str] = ("self-hosted", "local"),
        actions: Optional["ActionRegistry"] = None,
        artifacts: Optional["ArtifactStore"] = None,
        inherit_environ: bool = True,
    ):
        self.workspace = Path(workspace).resolve()
        self.labels = frozenset(labels)
        self.actions = actions
        self.artifacts = artifacts
        self.inherit_environ = inherit_environ

    def __repr__(self) -> str:
        return f"LocalRunner(labels={sorted(self.labels)})"

    def execute(self, step: StepDefinition, env: Mapping[str, str]) -> StepOutcome:
        if step.kind is StepKind.RUN:
            return self._run_shell(step, env)
        return self._run_action(step, env)

    def _run_shell(self, step: StepDefinition, env: Mapping[str, str]) -> StepOutcome:
        cwd = (self.workspace / (step.working_directory or ".")).resolve()
        if not cwd.exists():
            return StepOutcome(exit_code=1, log=f"working directory not found: {cwd}")

        with tempfile.TemporaryDirectory(prefix="triggerci-step-") as tmp:
            tmp_path = Path(tmp)
            script = tmp_path / ("step.py" if step.shell == "python" else "step.sh")
            script.write_text(step.run or "", encoding="utf-8")
            output_file = tmp_path / "output"
            env_file = tmp_path / "env"
            output_file.touch()
            env_file.touch()

            proc_env = os.environ.copy() if self.inherit_environ else {}
            proc_env.update({k: str(v) for k, v in env.items()})
            proc_env[OUTPUT_FILE_VAR] = str(output_file)
            proc_env[ENV_FILE_VAR] = str(env_file)

            try:
                cmd = _shell_command(step.shell, script)
            except (ValueError, FileNotFoundError) as e:
                return StepOutcome(exit_code=127, log=str(e))

            try:
                proc = subprocess.run(
                    cmd,
                    cwd=str(cwd),
                    env=proc_env,
                    text=True,
                    capture_output=True,
                )
            except FileNotFoundError as e:
                return StepOutcome(exit_code=127, log=f"shell not found: {e}")

            log_text = (proc.stdout or "") + (proc.stderr or "")
            try:
                outputs = parse_kv_file(output_file)
                exported = parse_kv_file(env_file)
            except ValueError as e:
                return StepOutcome(exit_code=proc.returncode or 1, log=f"{log_text[-LOG_TAIL:]}\n{e}")

            return StepOutcome(
                exit_code=proc.returncode,
                outputs=outputs,
                env=exported,
                log=log_text[-LOG_TAIL:],
            )

    def _run_action(self, step: StepDefinition, env: Mapping[str, str]) -> StepOutcome:
        if self.actions is None:
            raise ActionNotFoundError(f"runner has no action registry (step '{step.name}' uses {step.uses})")
        action = self.actions.resolve(step.uses or "")
        # Import here to avoid circular import
        from .actions import ActionCall

        store = self.artifacts
        run_id = env.get(RUN_ID_VAR)
        if store is not None and run_id:
            store = store.for_run(run_id)
        call = ActionCall(
            params=dict(step.with_params),
            env=dict(env),
            workspace=self.workspace,
            artifacts=store,
        )
        return action(call)


# ----------------------------------------------------------------------
# Runner selection
# ----------------------------------------------------------------------

class RunnerPool:
    """Label-based runner selection: first runner whose labels cover `runs-on`."""

    def __init__(self, runners: Iterable[Runner] = ()):
        self._runners: List[Runner] = list(runners)

    def add(self, runner: Runner) -> None:
        self._runners.append(runner)

    def __len__(self) -> int:
        return len(self._runners)

    def select(self, labels: Iterable[str]) -> Runner:
        wanted = frozenset(labels)
        for runner in self._runners:
            if wanted <= runner.labels:
                return runner
        available = [sorted(r.labels) for r in self._runners]
        raise RunnerUnavailableError(f"no runner with labels {sorted(wanted)} (available: {available})")
