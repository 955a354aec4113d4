# tests/test_loader.py
from __future__ import annotations

from pathlib import Path
from textwrap import dedent

import pytest

from triggerci.errors import WorkflowLoadError
from triggerci.loader import (
    discover_workflows,
    load_workflow,
    load_workflows,
    parse_triggers,
    parse_workflow,
    workflow_to_dict,
)
from triggerci.model import StepKind, TriggerSpec

REPO_ROOT = Path(__file__).resolve().parents[1]


# ── Helpers ─────────────────────────────────────────────────────

def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dedent(text), encoding="utf-8")
    return path


MINIMAL = """
    name: ci
    on: push
    jobs:
      build:
        steps:
          - run: make
"""


# ── on: ────────────────────────────────────────────────────────

class TestParseTriggers:
    def test_string_and_list(self):
        assert parse_triggers("push") == [TriggerSpec("push")]
        assert parse_triggers(["push", "issues"]) == [TriggerSpec("push"), TriggerSpec("issues")]

    def test_mapping_with_filters(self):
        specs = parse_triggers(
            {
                "issues": {"types": ["opened"]},
                "push": {"branches": "main", "paths-ignore": ["docs/**"]},
                "dispatch": {"inputs": {"name": {"default": "world"}}},
            }
        )
        assert specs == [
            TriggerSpec("issues", {"types": ["opened"]}),
            TriggerSpec("push", {"branches": ["main"], "paths_ignore": ["docs/**"]}),
            TriggerSpec("workflow_dispatch", {"inputs": {"name": {"default": "world"}}}),
        ]

    def test_one_spec_per_cron(self):
        specs = parse_triggers({"schedule": [{"cron": "0 3 * * *"}, {"cron": "*/5 * * * *"}]})
        assert {s.filters["cron"] for s in specs} == {"0 3 * * *", "*/5 * * * *"}
        assert all(s.event == "schedule" for s in specs)

    @pytest.mark.parametrize("on", [None, 42, {"schedule": [{}]}, {"push": ["not", "a", "mapping"]}])
    def test_invalid(self, on):
        with pytest.raises(WorkflowLoadError):
            parse_triggers(on)


# ── Documents ───────────────────────────────────────────────────

class TestParseWorkflow:
    def test_yaml_bare_on_key(self, tmp_path):
        wf = load_workflow(_write(tmp_path / "ci.yml", MINIMAL))
        assert wf.name == "ci"
        assert wf.triggers == frozenset({TriggerSpec("push")})
        step = wf.jobs["build"].steps[0]
        assert step.name == "make"
        assert step.kind is StepKind.RUN

    def test_name_defaults_to_file_stem(self, tmp_path):
        wf = load_workflow(_write(tmp_path / "nightly.yaml", MINIMAL.replace("    name: ci\n", "")))
        assert wf.name == "nightly"

    def test_job_fields(self):
        wf = parse_workflow(
            {
                "on": "push",
                "env": {"DEBUG": True, "N": 3},
                "jobs": {
                    "a": {"steps": [{"run": "true"}]},
                    "b": {
                        "needs": "a",
                        "runs-on": ["self-hosted", "linux"],
                        "if": "always()",
                        "continue-on-error": True,
                        "outputs": {"v": "${{ steps.s.outputs.v }}"},
                        "steps": [
                            {
                                "id": "s",
                                "uses": "actions/upload-artifact@v4",
                                "with": {"name": "x", "path": "dist"},
                                "working-directory": "sub",
                            }
                        ],
                    },
                },
            }
        )
        b = wf.jobs["b"]
        assert wf.env == {"DEBUG": "true", "N": "3"}
        assert list(wf.jobs) == ["a", "b"]
        assert b.needs == ("a",)
        assert b.runs_on == frozenset({"self-hosted", "linux"})
        assert b.condition == "always()"
        assert b.continue_on_error
        assert b.steps[0].name == "actions/upload-artifact@v4"
        assert b.steps[0].with_params == {"name": "x", "path": "dist"}
        assert b.steps[0].working_directory == "sub"

    @pytest.mark.parametrize(
        "doc",
        [
            [],
            {"on": "push"},
            {"on": "push", "jobs": {"a": {"steps": []}}},
            {"on": "push", "jobs": {"a": {"steps": [{"name": "neither"}]}}},
            {"on": "push", "jobs": {"a": {"steps": [{"run": "x", "uses": "y"}]}}},
            {"on": "push", "jobs": {"a": {"steps": [{"id": "s", "run": "x"}, {"id": "s", "run": "y"}]}}},
            {"jobs": {"a": {"steps": [{"run": "x"}]}}},
        ],
    )
    def test_invalid_documents(self, doc):
        with pytest.raises(WorkflowLoadError):
            parse_workflow(doc)

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(WorkflowLoadError):
            load_workflow(_write(tmp_path / "bad.yml", "on: [push\n"))

    def test_serialized_form_parses_back(self):
        original = parse_workflow(
            {
                "name": "roundtrip",
                "on": {"push": {"branches": ["main"]}, "schedule": [{"cron": "0 1 * * *"}]},
                "jobs": {
                    "a": {
                        "steps": [{"id": "s", "run": "echo", "env": {"X": "1"}}],
                        "outputs": {"o": "v"},
                        "matrix": {"py": "3.12"},
                    }
                },
            }
        )
        assert dict(original.jobs["a"].matrix) == {"py": "3.12"}
        again = parse_workflow(workflow_to_dict(original))
        assert again == original


# ── Files ───────────────────────────────────────────────────────

class TestFiles:
    def test_bundled_issue_comment_workflow(self):
        wf = load_workflow(REPO_ROOT / ".triggerci" / "workflows" / "issue_comment.yml")
        assert wf.triggers == frozenset({TriggerSpec("issues", {"types": ["opened"]})})
        assert list(wf.jobs) == ["comment-with-action", "comment-with-api"]
        create = wf.jobs["comment-with-action"].steps[1]
        assert create.uses == "peter-evans/create-or-update-comment@v4"
        assert create.with_params["reactions"] == "+1"
        assert wf.jobs["comment-with-action"].outputs == {"comment-id": "${{ steps.comment.outputs.comment-id }}"}

    def test_python_workflow_function(self, tmp_path):
        path = _write(
            tmp_path / "deploy_workflow.py",
            """
            from triggerci import wf, job, sh, on_dispatch

            def workflow():
                return wf(job("deploy", sh("Ship", "echo ship")), name="deploy", on=on_dispatch(env="prod"))
            """,
        )
        wf = load_workflow(path)
        assert wf.name == "deploy"
        assert wf.source == str(path.resolve())
        assert wf.triggers == frozenset({TriggerSpec("workflow_dispatch", {"inputs": {"env": {"default": "prod"}}})})

    def test_python_workflow_constant_as_mapping(self, tmp_path):
        path = _write(
            tmp_path / "docs_workflow.py",
            """
            WORKFLOW = {"on": "push", "jobs": {"docs": {"steps": [{"run": "make docs"}]}}}
            """,
        )
        assert load_workflow(path).name == "docs_workflow"

    @pytest.mark.parametrize(
        "body",
        ["x = 1\n", "def workflow():\n    return 42\n", "raise RuntimeError('boom')\n"],
    )
    def test_broken_python_workflows(self, tmp_path, body):
        with pytest.raises(WorkflowLoadError):
            load_workflow(_write(tmp_path / "broken_workflow.py", body))

    def test_unsupported_and_missing_files(self, tmp_path):
        with pytest.raises(WorkflowLoadError):
            load_workflow(_write(tmp_path / "ci.json", "{}"))
        with pytest.raises(WorkflowLoadError):
            load_workflow(tmp_path / "absent.yml")

    def test_discovery(self, tmp_path):
        _write(tmp_path / ".triggerci" / "workflows" / "b.yml", MINIMAL.replace("ci", "b"))
        _write(tmp_path / ".github" / "workflows" / "a.yaml", MINIMAL.replace("ci", "a"))
        _write(tmp_path / ".github" / "workflows" / "notes.txt", "ignored")
        _write(tmp_path / "extra_workflow.py", "WORKFLOW = None\n")

        found = discover_workflows(tmp_path)

        assert [p.name for p in found] == ["b.yml", "a.yaml", "extra_workflow.py"]

    def test_duplicate_names(self, tmp_path):
        one = _write(tmp_path / "one.yml", MINIMAL)
        two = _write(tmp_path / "two.yml", MINIMAL)
        with pytest.raises(WorkflowLoadError):
            load_workflows([one, two])
