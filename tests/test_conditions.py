"""Tests for the condition language."""

import pytest

from dagrun import conditions
from dagrun.conditions import (
    And,
    Contains,
    Equals,
    Field,
    JobResult,
    Literal,
    Not,
    StatusCheck,
    evaluate,
    parse_condition,
)
from dagrun.errors import ConditionError, ConfigurationError
from dagrun.model import RunContext


@pytest.fixture
def pr():
    return RunContext(
        event="pull_request",
        ref="refs/heads/feature/login",
        pr_title="Week 3 Assignment",
        pr_labels=("student", "homework"),
        inputs={"target": "staging"},
    )


# -------------------------------------------------------------------------
# Evaluation
# -------------------------------------------------------------------------

def test_absent_condition_is_true(pr):
    assert evaluate(None, pr) is True
    assert evaluate("   ", pr) is True


@pytest.mark.parametrize(
    "expr, expected",
    [
        ("event == 'pull_request'", True),
        ("event != 'pull_request'", False),
        ("branch == 'feature/login'", True),
        ("startsWith(branch, 'feature/')", True),
        ("endsWith(ref, '/login')", True),
        ("contains(pr.title, 'Week')", True),
        ("contains(pr.title, 'week')", False),  # case-sensitive
        ("contains(pr.labels, 'student')", True),
        ("contains(pr.labels, 'stud')", False),  # list membership, not substring
        ("inputs.target == 'staging'", True),
        ("inputs.missing == ''", True),
        ("tag == ''", True),
        ("!(event == 'push')", True),
        ("not event == 'push'", True),
        ("event == 'push' || contains(pr.title, 'Assignment')", True),
        ("event == 'pull_request' and contains(pr.title, 'Student')", False),
        ("true", True),
        ("false || false", False),
    ],
)
def test_string_conditions(pr, expr, expected):
    assert evaluate(expr, pr) is expected


def test_multiline_condition(pr):
    expr = """
      event == 'pull_request' &&
      (contains(pr.title, 'student-submission') ||
       contains(pr.title, 'Week'))
    """
    assert evaluate(expr, pr) is True


def test_typed_nodes_compose_with_operators(pr):
    cond = Equals(Field("event"), Literal("pull_request")) & ~Contains(Field("pr.labels"), Literal("wip"))
    assert isinstance(cond, And)
    assert evaluate(cond, pr) is True
    assert evaluate(cond | Literal(False), pr) is True


def test_tag_field():
    ctx = RunContext(event="push", ref="refs/tags/v1.2.0")
    assert evaluate("startsWith(tag, 'v1.')", ctx) is True
    assert evaluate("branch == ''", ctx) is True


def test_evaluation_is_idempotent(pr):
    cond = "event == 'pull_request' && contains(pr.labels, 'student')"
    first = evaluate(cond, pr)
    assert all(evaluate(cond, pr) == first for _ in range(5))


# -------------------------------------------------------------------------
# Upstream results
# -------------------------------------------------------------------------

def test_status_checks(pr):
    ok = {"a": "succeeded", "b": "skipped"}
    bad = {"a": "failed", "b": "succeeded"}
    cancelled = {"a": "cancelled"}

    assert evaluate("success()", pr, ok) is True
    assert evaluate("success()", pr, bad) is False
    assert evaluate("failure()", pr, bad) is True
    assert evaluate("failure()", pr, ok) is False
    assert evaluate("cancelled()", pr, cancelled) is True
    assert evaluate("cancelled()", pr, ok) is False
    assert evaluate("always()", pr, bad) is True


def test_needs_result(pr):
    assert evaluate("needs.test.result == 'failed'", pr, {"test": "failed"}) is True
    assert evaluate(Equals(JobResult("test"), Literal("succeeded")), pr, {"test": "succeeded"}) is True


def test_status_awareness():
    assert conditions.is_status_aware(parse_condition("always()"))
    assert conditions.is_status_aware(parse_condition("event == 'push' && needs.a.result == 'failed'"))
    assert not conditions.is_status_aware(parse_condition("event == 'push'"))
    assert not conditions.is_status_aware(None)
    assert conditions.referenced_jobs(parse_condition("needs.a.result == 'x' || needs.b.result == 'y'")) == {"a", "b"}


# -------------------------------------------------------------------------
# Errors
# -------------------------------------------------------------------------

@pytest.mark.parametrize(
    "expr",
    [
        "github.event_name == 'push'",   # unknown field
        "event = 'push'",                # bad operator
        "contains(pr.title)",            # arity
        "matches(ref, 'x')",             # unknown function
        "event == 'push' &&",            # dangling operator
        "(event == 'push'",              # unbalanced
        "event == 'push' $",             # stray character
    ],
)
def test_malformed_conditions_raise(expr):
    with pytest.raises(ConditionError) as info:
        conditions.validate(expr, [])
    assert isinstance(info.value, ConfigurationError)


def test_needs_must_reference_a_dependency():
    assert conditions.validate("needs.build.result == 'succeeded'", ["build"]) is not None
    with pytest.raises(ConditionError, match="not a dependency"):
        conditions.validate("needs.lint.result == 'succeeded'", ["build"], owner="deploy")


def test_not_node_from_parser():
    node = parse_condition("event != 'push'")
    assert isinstance(node, Not)
    assert isinstance(node.term, Equals)


def test_status_check_node():
    assert parse_condition("failure()") == StatusCheck("failure")


def test_bang_binds_tighter_than_comparison(pr):
    assert parse_condition("!event == 'push'") == Equals(Not(Field("event")), Literal("push"))
    assert parse_condition("not event == 'push'") == Not(Equals(Field("event"), Literal("push")))
    assert evaluate("!(event == 'push') && !false", pr)
