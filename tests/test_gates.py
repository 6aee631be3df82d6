import pytest

from gateci.errors import GateAlreadyConsumedError
from gateci.gates import (
    GateDecision,
    GateEvaluator,
    GateOutcome,
    GatePolicy,
    GateResult,
    MetricViolation,
)

BUGS = MetricViolation("bugs", "3", "0")
COVERAGE = MetricViolation("coverage", "61.2", "80")
SMELLS = MetricViolation("code_smells", "40", "10")


def evaluate(result, policy=None, key=None):
    return GateEvaluator().evaluate(result, policy or GatePolicy(), key=key)


def test_pass_proceeds():
    verdict = evaluate(GateResult.passed())
    assert verdict.decision is GateDecision.PROCEED


def test_blocking_metric_blocks_even_with_warn_only_violations():
    policy = GatePolicy.of(blocking_metrics=["bugs"], warn_only_metrics=["coverage"])
    verdict = evaluate(GateResult.failed(COVERAGE, BUGS), policy)
    assert verdict.decision is GateDecision.BLOCK
    assert verdict.reasons == ["blocking metric violated: bugs=3 (threshold 0)"]


def test_only_warn_only_violations_escalate():
    policy = GatePolicy.of(blocking_metrics=["bugs"], warn_only_metrics=["coverage"])
    verdict = evaluate(GateResult.failed(COVERAGE), policy)
    assert verdict.decision is GateDecision.ESCALATE
    assert "coverage" in verdict.reasons[0]


def test_other_violation_blocks_when_no_blocking_set():
    policy = GatePolicy.of(warn_only_metrics=["coverage"])
    verdict = evaluate(GateResult.failed(COVERAGE, SMELLS), policy)
    assert verdict.decision is GateDecision.BLOCK
    assert verdict.reasons == ["metric violated: code_smells=40 (threshold 10)"]


def test_other_violation_escalates_when_blocking_set_is_explicit():
    policy = GatePolicy.of(blocking_metrics=["bugs"])
    verdict = evaluate(GateResult.failed(SMELLS), policy)
    assert verdict.decision is GateDecision.ESCALATE
    assert verdict.reasons == ["non-blocking metric violated: code_smells=40 (threshold 10)"]


def test_fail_without_violations_blocks():
    verdict = evaluate(GateResult.failed(detail="quality gate status ERROR"))
    assert verdict.decision is GateDecision.BLOCK
    assert verdict.reasons == ["quality gate status ERROR"]


@pytest.mark.parametrize(
    "fail_on_error, decision",
    [(True, GateDecision.BLOCK), (False, GateDecision.ESCALATE)],
)
def test_tool_error_follows_fail_on_error(fail_on_error, decision):
    policy = GatePolicy.of(fail_on_error=fail_on_error)
    verdict = evaluate(GateResult.error("scanner unreachable"), policy)
    assert verdict.decision is decision
    assert "scanner unreachable" in verdict.reasons[0]


def test_error_is_never_a_pass():
    result = GateResult.error("timeout talking to server")
    assert result.outcome is GateOutcome.ERROR
    assert evaluate(result).decision is not GateDecision.PROCEED


def test_result_can_only_be_consumed_once_per_key():
    evaluator = GateEvaluator()
    result = GateResult.passed()
    evaluator.evaluate(result, GatePolicy(), key="run-1/analyze/scan")
    with pytest.raises(GateAlreadyConsumedError):
        evaluator.evaluate(result, GatePolicy(), key="run-1/analyze/scan")
    # a different run is a different result
    evaluator.evaluate(result, GatePolicy(), key="run-2/analyze/scan")


def test_policy_rejects_metric_in_both_sets():
    with pytest.raises(ValueError):
        GatePolicy.of(blocking_metrics=["bugs"], warn_only_metrics=["bugs"])


def test_violation_describe():
    assert MetricViolation("bugs").describe() == "bugs"
    assert MetricViolation("bugs", "2").describe() == "bugs=2"
