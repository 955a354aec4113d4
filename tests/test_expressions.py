# tests/test_expressions.py
from __future__ import annotations

import pytest

from triggerci.errors import ExpressionError
from triggerci.expressions import (
    ExpressionContext,
    JobState,
    compile_expression,
    evaluate,
    evaluate_condition,
    interpolate,
    to_string,
)


# ── Helpers ─────────────────────────────────────────────────────

def _ctx(failed: bool = False, cancelled: bool = False) -> ExpressionContext:
    return ExpressionContext(
        contexts={
            "github": {"event_name": "push", "ref": "refs/heads/main", "labels": ["bug", "ui"]},
            "inputs": {"name": "world", "count": "3"},
            "steps": {"build": {"outputs": {"version": "1.2.0"}, "conclusion": "success"}},
            "env": {"GREETING": "hi"},
        },
        state=JobState(failed=failed, cancelled=cancelled),
    )


# ── Evaluation ──────────────────────────────────────────────────

class TestEvaluate:
    @pytest.mark.parametrize(
        "source,expected",
        [
            ("github.event_name == 'push'", True),
            ("github.event_name == 'PUSH'", True),
            ("github.event_name != 'push'", False),
            ("GitHub.Event_Name", "push"),
            ("github['ref']", "refs/heads/main"),
            ("github.labels[1]", "ui"),
            ("github.missing", None),
            ("github.missing.deeper", None),
            ("steps.build.outputs.version", "1.2.0"),
            ("inputs.count > 2", True),
            ("inputs.count == 3", True),
            ("!github.missing", True),
            ("'' || 'fallback'", "fallback"),
            ("inputs.name && 'yes'", "yes"),
            ("(1 < 2) && (2 <= 2)", True),
            ("contains(github.labels, 'BUG')", True),
            ("contains('hello world', 'WORLD')", True),
            ("startsWith(github.ref, 'refs/heads/')", True),
            ("endsWith(github.ref, '/develop')", False),
            ("format('{0}-{1}', inputs.name, 1)", "world-1"),
            ("join(github.labels, ', ')", "bug, ui"),
            ("fromJSON('{\"a\": [1, 2]}').a[0]", 1),
            ("'it''s'", "it's"),
            ("null == ''", True),
        ],
    )
    def test_expressions(self, source, expected):
        assert evaluate(source, _ctx()) == expected

    def test_wrapped_source_is_unwrapped(self):
        assert compile_expression("${{ github.event_name }}").source.strip() == "github.event_name"

    @pytest.mark.parametrize("source", ["1 ==", "github.", "nope(1)", "contains('a')", "a @ b", "(1", ""])
    def test_invalid(self, source):
        with pytest.raises(ExpressionError):
            evaluate(source, _ctx())

    def test_status_functions_take_no_arguments(self):
        with pytest.raises(ExpressionError):
            evaluate("always(1)", _ctx())

    @pytest.mark.parametrize(
        "value,text",
        [(None, ""), (True, "true"), (False, "false"), (3.0, "3"), (1.5, "1.5"), ("x", "x")],
    )
    def test_to_string(self, value, text):
        assert to_string(value) == text


# ── Conditions ──────────────────────────────────────────────────

class TestConditions:
    def test_missing_condition_means_success(self):
        assert evaluate_condition(None, _ctx())
        assert not evaluate_condition(None, _ctx(failed=True))
        assert not evaluate_condition("", _ctx(cancelled=True))

    def test_plain_condition_is_gated_on_success(self):
        assert evaluate_condition("github.event_name == 'push'", _ctx())
        assert not evaluate_condition("github.event_name == 'push'", _ctx(failed=True))

    def test_status_functions(self):
        assert evaluate_condition("always()", _ctx(failed=True))
        assert evaluate_condition("failure()", _ctx(failed=True))
        assert not evaluate_condition("failure()", _ctx())
        assert evaluate_condition("cancelled()", _ctx(cancelled=True))
        assert not evaluate_condition("success()", _ctx(failed=True))

    def test_failure_combined_with_a_test(self):
        ctx = _ctx(failed=True)
        assert evaluate_condition("failure() && github.event_name == 'push'", ctx)
        assert not evaluate_condition("failure() && github.event_name == 'schedule'", ctx)

    def test_wrapped_condition(self):
        assert evaluate_condition("${{ inputs.name == 'world' }}", _ctx())


class TestInterpolate:
    def test_replaces_every_placeholder(self):
        text = "hello ${{ inputs.name }} from ${{ github.event_name }}"
        assert interpolate(text, _ctx()) == "hello world from push"

    def test_non_strings_and_plain_text_pass_through(self):
        assert interpolate(5, _ctx()) == 5
        assert interpolate("no placeholders", _ctx()) == "no placeholders"

    def test_missing_value_renders_empty(self):
        assert interpolate("[${{ inputs.nope }}]", _ctx()) == "[]"

    def test_error_propagates(self):
        with pytest.raises(ExpressionError):
            interpolate("${{ 1 == }}", _ctx())
