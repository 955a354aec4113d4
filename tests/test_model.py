# tests/test_model.py
from __future__ import annotations

from types import MappingProxyType

import pytest

from conftest import job, step, workflow
from triggerci.errors import InvalidTransitionError
from triggerci.events import normalize
from triggerci.model import Event, EventKind, JobStatus, Run, RunStatus, StepDefinition, StepKind


def _run(*jobs) -> Run:
    return Run(workflow(*jobs), normalize("workflow_dispatch", {}))


class TestEvent:
    def test_payload_is_deep_copied_and_frozen(self):
        raw = {"issue": {"number": 1, "labels": ["bug"]}}
        event = Event(kind=EventKind.ISSUE_OPENED, name="issues", payload=raw)
        raw["issue"]["number"] = 2
        raw["issue"]["labels"].append("x")

        assert event.payload["issue"]["number"] == 1
        assert event.payload["issue"]["labels"] == ("bug",)
        assert isinstance(event.payload, MappingProxyType)
        with pytest.raises(TypeError):
            event.payload["issue"]["number"] = 3  # type: ignore[index]

    def test_round_trips_through_dict(self):
        event = normalize("issues", {"action": "opened", "issue": {"number": 7}})
        again = Event.from_dict(event.to_dict())
        assert again.kind is EventKind.ISSUE_OPENED
        assert again.name == "issues"
        assert again.action == "opened"
        assert again.payload["issue"]["number"] == 7
        assert again.timestamp == event.timestamp


class TestStepDefinition:
    def test_exactly_one_of_run_or_uses(self):
        with pytest.raises(ValueError):
            StepDefinition(name="neither")
        with pytest.raises(ValueError):
            StepDefinition(name="both", run="echo", uses="a/b@v1")

    def test_kind(self):
        assert StepDefinition(name="s", run="echo").kind is StepKind.RUN
        assert StepDefinition(name="u", uses="a/b@v1").kind is StepKind.USES


class TestRunTransitions:
    def test_legal_path_draws_increasing_sequence_numbers(self):
        run = _run(job("a"))
        assert run.transition("a", JobStatus.RUNNING)
        assert run.transition("a", JobStatus.SUCCESS)
        result = run.jobs["a"]
        assert result.status is JobStatus.SUCCESS
        assert result.started_seq < result.finished_seq

    def test_pending_can_be_skipped(self):
        run = _run(job("a"))
        assert run.transition("a", JobStatus.SKIPPED)
        assert run.jobs["a"].status is JobStatus.SKIPPED

    @pytest.mark.parametrize("target", [JobStatus.SUCCESS, JobStatus.FAILURE, JobStatus.PENDING])
    def test_illegal_from_pending(self, target):
        run = _run(job("a"))
        with pytest.raises(InvalidTransitionError):
            run.transition("a", target)

    def test_running_cannot_be_skipped(self):
        run = _run(job("a"))
        run.transition("a", JobStatus.RUNNING)
        with pytest.raises(InvalidTransitionError):
            run.transition("a", JobStatus.SKIPPED)

    def test_terminal_jobs_ignore_late_outcomes(self):
        run = _run(job("a"))
        run.transition("a", JobStatus.RUNNING)
        run.cancel()
        assert run.transition("a", JobStatus.SUCCESS) is False
        assert run.jobs["a"].status is JobStatus.CANCELLED


class TestRunCancel:
    def test_cancel_is_idempotent(self):
        run = _run(job("A"), job("B", needs=["A"]))
        run.transition("A", JobStatus.RUNNING)

        run.cancel()
        first = run.job_statuses
        run.cancel()

        assert first == {"A": JobStatus.CANCELLED, "B": JobStatus.CANCELLED}
        assert run.job_statuses == first
        assert run.status is RunStatus.CANCELLED
        assert run.cancel_requested

    def test_cancel_leaves_finished_jobs_alone(self):
        run = _run(job("A"), job("B"))
        run.transition("A", JobStatus.RUNNING)
        run.transition("A", JobStatus.SUCCESS)
        run.cancel()
        assert run.job_statuses == {"A": JobStatus.SUCCESS, "B": JobStatus.CANCELLED}

    def test_first_failure_is_kept(self):
        run = _run(job("A"), job("B"))
        run.record_failure("A", "build")
        run.record_failure("B", "test")
        assert (run.failed_job, run.failed_step) == ("A", "build")

    def test_to_dict(self):
        run = _run(job("A", step("one")))
        d = run.to_dict()
        assert d["workflow"] == "wf"
        assert d["status"] == "queued"
        assert d["jobs"] == {"A": "pending"}
