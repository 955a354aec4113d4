# tests/test_cli.py
from __future__ import annotations

import json
import os
from pathlib import Path
from textwrap import dedent

import pytest
from click.testing import CliRunner

from triggerci.cli import cli, collect_secrets


# ── Helpers ─────────────────────────────────────────────────────

GREET = """
    name: greet
    on:
      issues:
        types: [opened]
      workflow_dispatch:
        inputs:
          who:
            default: nobody
    jobs:
      hello:
        steps:
          - id: say
            run: |
              echo "hello ${{ inputs.who }}${{ github.event.issue.user.login }}" > greeting.txt
              echo "done=yes" >> "$TRIGGERCI_OUTPUT"
      after:
        needs: hello
        steps:
          - run: test -f greeting.txt
"""

BROKEN = """
    name: broken
    on: push
    jobs:
      a:
        needs: b
        steps: [{run: "true"}]
      b:
        needs: a
        steps: [{run: "true"}]
"""

LEAKY = """
    name: leaky
    on: workflow_dispatch
    jobs:
      leak:
        steps:
          - run: |
              echo "token is $TOKEN"
              exit 4
            env:
              TOKEN: ${{ secrets.API_TOKEN }}
"""


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for key in ("TRIGGERCI_MAX_PARALLEL", "TRIGGERCI_ARTIFACTS_DIR", "TRIGGERCI_RUNNER_LABELS", "TRIGGERCI_LOG_LEVEL"):
        monkeypatch.delenv(key, raising=False)
    wf_dir = tmp_path / ".triggerci" / "workflows"
    wf_dir.mkdir(parents=True)
    (wf_dir / "greet.yml").write_text(dedent(GREET), encoding="utf-8")
    return tmp_path


def _write(path: Path, text: str) -> str:
    path.write_text(dedent(text), encoding="utf-8")
    return str(path)


def _invoke(*args: str, input: str | None = None):
    return CliRunner().invoke(cli, list(args), input=input)


# ── Commands ────────────────────────────────────────────────────

class TestRun:
    def test_issue_opened_runs_the_workflow(self, project):
        payload = project / "issue.json"
        payload.write_text(json.dumps({"action": "opened", "issue": {"number": 1, "user": {"login": "ann"}}}))

        result = _invoke("run", "issues", "--payload", str(payload))

        assert result.exit_code == 0, result.output
        assert "RUN STARTED" in result.output
        assert "Run: SUCCESS" in result.output
        assert (project / "greeting.txt").read_text().strip() == "hello ann"

    def test_payload_from_stdin(self, project):
        result = _invoke("run", "issues", "--payload", "-", input=json.dumps({"action": "opened"}))
        assert result.exit_code == 0, result.output

    def test_no_match_is_not_an_error(self, project):
        result = _invoke("run", "issues", "--payload", "-", input=json.dumps({"action": "closed"}))
        assert result.exit_code == 0
        assert "No workflow matched the issues event." in result.output

    def test_invalid_payload(self, project):
        result = _invoke("run", "issues", "--payload", "-", input="{nope")
        assert result.exit_code == 2

    def test_failing_step_exits_nonzero_and_masks_secrets(self, project):
        leaky = _write(project / "leaky.yml", LEAKY)

        result = _invoke("--workflow", leaky, "--secret", "API_TOKEN=tops3cret-value", "dispatch", "leaky")

        assert result.exit_code == 1
        assert "tops3cret-value" not in result.output
        assert "***" in result.output
        assert "Run: FAILURE" in result.output
        assert "First failure: leak" in result.output


class TestDispatch:
    def test_inputs(self, project):
        result = _invoke("dispatch", "greet", "--input", "who=bob")
        assert result.exit_code == 0, result.output
        assert (project / "greeting.txt").read_text().strip() == "hello bob"

    def test_default_input(self, project):
        assert _invoke("dispatch", "greet").exit_code == 0
        assert (project / "greeting.txt").read_text().strip() == "hello nobody"

    def test_unknown_workflow_matches_nothing(self, project):
        result = _invoke("dispatch", "other")
        assert result.exit_code == 0
        assert "No workflow matched" in result.output

    def test_bad_input_pair(self, project):
        assert _invoke("dispatch", "greet", "--input", "novalue").exit_code == 2


class TestTickAndValidate:
    def test_tick_without_schedules(self, project):
        result = _invoke("tick", "--at", "2024-05-01T03:00:00+00:00")
        assert result.exit_code == 0
        assert "No workflow matched the schedule event." in result.output

    def test_validate_prints_the_plan(self, project):
        result = _invoke("validate")
        assert result.exit_code == 0, result.output
        assert "WORKFLOW: greet" in result.output
        assert "1. hello" in result.output
        assert "2. after" in result.output
        assert "issues types=['opened']" in result.output

    def test_validate_reports_cycles(self, project):
        broken = _write(project / "broken.yml", BROKEN)
        result = _invoke("--workflow", broken, "validate")
        assert result.exit_code == 1
        assert "Invalid workflow 'broken'" in result.output
        assert "cycle" in result.output

    def test_no_workflows(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = _invoke("validate")
        assert result.exit_code == 1
        assert "No workflow file found" in result.output


class TestSecrets:
    def test_sources_in_order(self, tmp_path):
        secrets_file = tmp_path / "secrets.yml"
        secrets_file.write_text("A: from-file\nB: from-file\n", encoding="utf-8")
        environ = {"TRIGGERCI_SECRET_A": "from-env", "TRIGGERCI_SECRET_C": "from-env", "OTHER": "x"}

        secrets = collect_secrets(("B=from-flag",), str(secrets_file), environ=environ)

        assert secrets == {"A": "from-file", "B": "from-flag", "C": "from-env"}


class TestServe:
    def test_starts_uvicorn_with_the_app(self, tmp_path, monkeypatch):
        uvicorn = pytest.importorskip("uvicorn")
        calls = []
        monkeypatch.setattr(uvicorn, "run", lambda app, **kw: calls.append((app, kw)))
        monkeypatch.setenv("WORKFLOWS_DIR", "placeholder")

        result = _invoke("--debug", "serve", "--port", "9000", "--workflows-dir", str(tmp_path))

        assert result.exit_code == 0, result.output
        assert calls == [("triggerci.server.app:app", {"host": "127.0.0.1", "port": 9000, "log_level": "debug"})]
        assert Path(os.environ["WORKFLOWS_DIR"]) == tmp_path.resolve()
