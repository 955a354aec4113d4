# tests/test_engine.py
from __future__ import annotations

from datetime import datetime, timezone

from conftest import FakeRunner, job, step, workflow
from triggerci import events
from triggerci.actions import default_registry
from triggerci.artifacts import ArtifactStore
from triggerci.engine import Engine, dispatch_inputs
from triggerci.logs import get_masker
from triggerci.model import JobStatus, RunStatus, StepDefinition, TriggerSpec
from triggerci.runners import LocalRunner, RunnerPool


# ── Helpers ─────────────────────────────────────────────────────

def _engine(*workflows, runner=None, **kwargs) -> Engine:
    return Engine(workflows, RunnerPool([runner or FakeRunner()]), max_parallel=2, **kwargs)


ISSUE_OPENED = TriggerSpec("issues", {"types": ["opened"]})


class TestHandle:
    def test_no_matching_workflow_creates_no_run(self):
        engine = _engine(workflow(job("a"), triggers=[ISSUE_OPENED]))
        assert engine.handle(events.normalize("issues", {"action": "closed"})) == []

    def test_each_matching_workflow_gets_a_run(self):
        runner = FakeRunner()
        engine = _engine(
            workflow(job("a"), name="greet", triggers=[ISSUE_OPENED]),
            workflow(job("b"), name="label", triggers=[TriggerSpec("issues")]),
            workflow(job("c"), name="ci", triggers=[TriggerSpec("push")]),
            runner=runner,
        )

        runs = engine.handle(events.normalize("issues", {"action": "opened"}))

        assert [r.workflow.name for r in runs] == ["greet", "label"]
        assert all(r.status is RunStatus.SUCCESS for r in runs)
        assert sorted(runner.names) == ["a-step", "b-step"]

    def test_graph_error_fails_the_run_before_any_job(self):
        runner = FakeRunner()
        engine = _engine(workflow(job("a", needs=["b"]), job("b", needs=["a"])), runner=runner)

        [run] = engine.handle(events.dispatch())

        assert run.status is RunStatus.FAILURE
        assert "cycle" in run.error
        assert set(run.job_statuses.values()) == {JobStatus.PENDING}
        assert runner.calls == []

    def test_start_skips_matching(self):
        wf = workflow(job("a"), triggers=[ISSUE_OPENED])
        run = _engine(wf).start(wf, events.dispatch("wf"), run_id="fixed-id")
        assert run.id == "fixed-id"
        assert run.status is RunStatus.SUCCESS


class TestSchedules:
    def test_tick_starts_a_scheduled_workflow_once(self):
        wf = workflow(job("nightly"), name="nightly", triggers=[TriggerSpec("schedule", {"cron": "0 3 * * *"})])
        engine = _engine(wf)
        at = datetime(2024, 5, 1, 3, 0, 20, tzinfo=timezone.utc)

        assert len(engine.tick(at)) == 1
        assert engine.tick(at.replace(second=50)) == []
        assert engine.tick(at.replace(hour=4)) == []


class TestArtifacts:
    def test_consecutive_runs_upload_the_same_name(self, tmp_path):
        ws = tmp_path / "ws"
        ws.mkdir()
        (ws / "report.txt").write_text("ok", encoding="utf-8")
        store = ArtifactStore(tmp_path / "artifacts")
        runner = LocalRunner(ws, actions=default_registry(), artifacts=store)
        keep = StepDefinition(
            name="keep",
            uses="triggerci/upload-artifact",
            with_params={"name": "test-report", "path": "report.txt"},
        )
        engine = _engine(workflow(job("test", keep)), runner=runner)

        [first] = engine.handle(events.dispatch())
        [second] = engine.handle(events.dispatch())

        assert first.status is RunStatus.SUCCESS, first.jobs["test"].steps
        assert second.status is RunStatus.SUCCESS, second.jobs["test"].steps
        assert store.for_run(first.id).names() == ["test-report"]
        assert store.for_run(second.id).names() == ["test-report"]


class TestContexts:
    def test_dispatch_inputs_defaults_and_overrides(self):
        spec = TriggerSpec("workflow_dispatch", {"inputs": {"name": {"default": "world"}, "level": "low"}})
        assert dispatch_inputs(spec, events.dispatch()) == {"name": "world", "level": "low"}
        given = events.dispatch(inputs={"name": "bob"})
        assert dispatch_inputs(spec, given) == {"name": "bob", "level": "low"}
        assert dispatch_inputs(None, given) == {"name": "bob"}

    def test_inputs_and_github_context_reach_steps(self):
        runner = FakeRunner()
        wf = workflow(
            job("a", step("s", env={"WHO": "${{ inputs.name }}", "EV": "${{ github.event_name }}"})),
            triggers=[TriggerSpec("workflow_dispatch", {"inputs": {"name": {"default": "world"}}})],
            env={"GREETING": "hello ${{ inputs.name }}"},
        )
        _engine(wf, runner=runner).handle(events.dispatch(inputs={"name": "bob"}))

        env = runner.calls[0][1]
        assert env["WHO"] == "bob"
        assert env["EV"] == "workflow_dispatch"
        assert env["GREETING"] == "hello bob"
        assert env["CI"] == "true"
        assert env["TRIGGERCI_WORKFLOW"] == "wf"

    def test_repository_comes_from_the_payload(self):
        runner = FakeRunner()
        wf = workflow(job("a"), triggers=[TriggerSpec("push")])
        event = events.normalize(
            "push",
            {"ref": "refs/heads/main", "after": "abc123", "repository": {"full_name": "octo/app"}},
        )
        [run] = _engine(wf, runner=runner, repository="fallback/repo").handle(event)

        env = runner.calls[0][1]
        assert env["GITHUB_REPOSITORY"] == "octo/app"
        assert env["GITHUB_SHA"] == "abc123"
        assert env["GITHUB_REF"] == "refs/heads/main"
        assert run.status is RunStatus.SUCCESS

    def test_bad_workflow_env_fails_the_run(self):
        wf = workflow(job("a"), env={"X": "${{ broken( }}"})
        [run] = _engine(wf).handle(events.dispatch())
        assert run.status is RunStatus.FAILURE
        assert run.error.startswith("workflow env:")

    def test_secrets_are_registered_for_masking(self):
        _engine(workflow(job("a")), secrets={"TOKEN": "engine-secret-value"})
        assert get_masker().mask("token=engine-secret-value") == "token=***"
