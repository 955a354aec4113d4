# tests/test_actions.py
from __future__ import annotations

import pytest

from triggerci import actions
from triggerci.actions import ActionCall, ActionRegistry, default_registry
from triggerci.artifacts import ArtifactStore
from triggerci.errors import ActionNotFoundError
from triggerci.model import StepDefinition
from triggerci.runners import LocalRunner, StepOutcome


# ── Helpers ─────────────────────────────────────────────────────

@pytest.fixture
def api_calls(monkeypatch):
    calls = []

    def fake_request(url, token, data, method="POST"):
        calls.append((method, url, data))
        return {"id": 99}

    monkeypatch.setattr(actions, "_api_request", fake_request)
    return calls


def _call(tmp_path, env=None, **params) -> ActionCall:
    return ActionCall(params=params, env=env or {}, workspace=tmp_path)


# ── Registry ────────────────────────────────────────────────────

class TestRegistry:
    def test_refs_ignore_version_and_case(self):
        registry = default_registry()
        assert registry.resolve("actions/upload-artifact@v4") is actions.upload_artifact
        assert registry.resolve("TriggerCI/Upload-Artifact") is actions.upload_artifact
        assert registry.resolve("peter-evans/create-or-update-comment@v4") is actions.create_or_update_comment

    def test_unknown_action(self):
        with pytest.raises(ActionNotFoundError):
            default_registry().resolve("someone/else@v1")

    def test_decorator(self):
        registry = ActionRegistry()

        @registry.action("me/hello", "hello")
        def hello(call):
            return StepOutcome(exit_code=0, outputs={"greeting": f"hi {call.param('who', 'you')}"})

        assert registry.names() == ["hello", "me/hello"]
        assert registry.resolve("hello@main") is hello


# ── Artifact actions through a runner ───────────────────────────

class TestArtifactActions:
    def test_upload_and_download_steps(self, tmp_path):
        ws = tmp_path / "ws"
        ws.mkdir()
        (ws / "out.txt").write_text("data", encoding="utf-8")
        runner = LocalRunner(ws, actions=default_registry(), artifacts=ArtifactStore(tmp_path / "store"))

        up = runner.execute(
            StepDefinition(name="up", uses="actions/upload-artifact@v4", with_params={"name": "out", "path": "out.txt"}),
            {},
        )
        assert up.ok, up.log
        assert up.outputs == {"artifact-name": "out", "file-count": "1"}

        again = runner.execute(
            StepDefinition(name="up2", uses="actions/upload-artifact@v4", with_params={"name": "out", "path": "out.txt"}),
            {},
        )
        assert not again.ok
        assert "already exists" in again.log

        down = runner.execute(
            StepDefinition(name="down", uses="actions/download-artifact@v4", with_params={"name": "out", "path": "fetched"}),
            {},
        )
        assert down.ok, down.log
        assert (ws / "fetched" / "out.txt").read_text(encoding="utf-8") == "data"

    def test_artifacts_belong_to_the_run(self, tmp_path):
        ws = tmp_path / "ws"
        ws.mkdir()
        (ws / "out.txt").write_text("data", encoding="utf-8")
        store = ArtifactStore(tmp_path / "store")
        runner = LocalRunner(ws, actions=default_registry(), artifacts=store)
        up = StepDefinition(name="up", uses="triggerci/upload-artifact", with_params={"name": "out", "path": "out.txt"})

        assert runner.execute(up, {"TRIGGERCI_RUN_ID": "run-1"}).ok
        assert runner.execute(up, {"TRIGGERCI_RUN_ID": "run-2"}).ok

        missing = runner.execute(
            StepDefinition(name="down", uses="triggerci/download-artifact", with_params={"name": "out"}),
            {"TRIGGERCI_RUN_ID": "run-3"},
        )
        assert not missing.ok
        assert sorted(p.name for p in store.root.iterdir()) == ["run-1", "run-2", "run-3"]

    def test_without_store(self, tmp_path):
        outcome = actions.upload_artifact(_call(tmp_path, name="x", path="a"))
        assert outcome.exit_code == 1


# ── Issue comments ──────────────────────────────────────────────

class TestCreateOrUpdateComment:
    def test_creates_a_comment_and_reacts(self, tmp_path, api_calls):
        outcome = actions.create_or_update_comment(
            _call(
                tmp_path,
                token="t0ken",
                repository="octo/app",
                **{"issue-number": 5, "body": "Thanks!", "reactions": "+1, rocket"},
            )
        )

        assert outcome.ok, outcome.log
        assert outcome.outputs == {"comment-id": "99"}
        assert api_calls == [
            ("POST", "https://api.github.com/repos/octo/app/issues/5/comments", {"body": "Thanks!"}),
            ("POST", "https://api.github.com/repos/octo/app/issues/comments/99/reactions", {"content": "+1"}),
            ("POST", "https://api.github.com/repos/octo/app/issues/comments/99/reactions", {"content": "rocket"}),
        ]

    def test_updates_an_existing_comment(self, tmp_path, api_calls):
        outcome = actions.create_or_update_comment(
            _call(
                tmp_path,
                env={"GITHUB_TOKEN": "env-token", "GITHUB_REPOSITORY": "octo/app"},
                **{"comment-id": "7", "body": "edited"},
            )
        )
        assert outcome.ok
        assert api_calls == [
            ("PATCH", "https://api.github.com/repos/octo/app/issues/comments/7", {"body": "edited"}),
        ]

    @pytest.mark.parametrize(
        "env,params,message",
        [
            ({}, {"repository": "octo/app", "issue-number": 1, "body": "x"}, "no token"),
            ({"GITHUB_TOKEN": "t"}, {"repository": "app", "issue-number": 1, "body": "x"}, "owner/name"),
            ({"GITHUB_TOKEN": "t"}, {"repository": "o/a", "issue-number": 1, "body": "x", "reactions": "wow"}, "unsupported"),
            ({"GITHUB_TOKEN": "t"}, {"repository": "o/a", "body": "x"}, "issue-number"),
            ({"GITHUB_TOKEN": "t"}, {"repository": "o/a", "issue-number": 1}, "body"),
        ],
    )
    def test_input_errors(self, tmp_path, api_calls, env, params, message):
        outcome = actions.create_or_update_comment(_call(tmp_path, env=env, **params))
        assert outcome.exit_code == 1
        assert message in outcome.log
        assert api_calls == []
