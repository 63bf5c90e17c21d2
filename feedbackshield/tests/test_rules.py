"""Tests for detection rule expressions and the retry helper."""

import pytest

from feedbackshield.errors import UpstreamUnavailable, ValidationError
from feedbackshield.utils.retry import call_with_retry, is_transient
from feedbackshield.utils.rules import (
    AllOf,
    AnyOf,
    Condition,
    DetectionRule,
    Not,
    evaluate,
    fired_rules,
)


class TestEvaluate:
    def test_condition(self):
        assert evaluate(Condition("calls", ">", 5), {"calls": 6}) is True
        assert evaluate(Condition("calls", ">", 5), {"calls": 5}) is False

    def test_membership(self):
        assert evaluate(Condition("lang", "in", ("sv", "en")), {"lang": "sv"}) is True

    def test_missing_feature_is_false(self):
        assert evaluate(Condition("calls", ">=", 0), {}) is False
        assert evaluate(Condition("calls", ">=", 0), {"calls": None}) is False

    def test_combinators(self):
        features = {"a": 1, "b": 2}
        assert evaluate(AllOf(Condition("a", "==", 1), Condition("b", "==", 2)), features)
        assert not evaluate(AllOf(Condition("a", "==", 1), Condition("b", "==", 3)), features)
        assert evaluate(AnyOf(Condition("a", "==", 9), Condition("b", "==", 2)), features)
        assert evaluate(Not(Condition("a", "==", 9)), features)

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValidationError):
            Condition("a", "~=", 1)

    def test_unknown_node_rejected(self):
        with pytest.raises(TypeError):
            evaluate("a > 1", {"a": 2})

    def test_fired_rules_in_order(self):
        rules = [
            DetectionRule("r.one", "first", Condition("x", ">", 1)),
            DetectionRule("r.two", "second", Condition("x", ">", 10)),
            DetectionRule("r.three", "third", Condition("x", "<", 5)),
        ]
        assert fired_rules(rules, {"x": 3}) == ["r.one", "r.three"]


class TestCallWithRetry:
    def test_success_first_try(self):
        result, attempts = call_with_retry(lambda: "ok", max_retries=2, sleep=lambda _: None)
        assert (result, attempts) == ("ok", 1)

    def test_retries_transient_then_succeeds(self):
        outcomes = [UpstreamUnavailable("flaky", transient=True), "ok"]
        delays = []

        def fn():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        result, attempts = call_with_retry(fn, max_retries=2, base_delay=0.5, sleep=delays.append)
        assert result == "ok"
        assert attempts == 2
        assert delays == [0.5]

    def test_backoff_grows_and_is_capped(self):
        delays = []

        def fn():
            raise UpstreamUnavailable("down", transient=True)

        with pytest.raises(UpstreamUnavailable):
            call_with_retry(fn, max_retries=4, base_delay=1.0, max_delay=3.0, sleep=delays.append)
        assert delays == [1.0, 2.0, 3.0, 3.0]

    def test_non_transient_not_retried(self):
        calls = []

        def fn():
            calls.append(1)
            raise UpstreamUnavailable("bad", transient=False)

        with pytest.raises(UpstreamUnavailable):
            call_with_retry(fn, max_retries=3, sleep=lambda _: None)
        assert len(calls) == 1

    def test_validation_errors_are_never_transient(self):
        assert is_transient(ValidationError("bad")) is False
        assert is_transient(UpstreamUnavailable("slow", transient=True)) is True
