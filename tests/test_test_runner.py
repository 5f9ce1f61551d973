"""
TestRunner tests: node report parsing, aggregation across nodes and the
four success-criteria kinds.
"""
import asyncio
import json

import pytest

from fleetloop.agents.test_runner import (
    TestRunner,
    get_predicate,
    parse_node_report,
    register_predicate,
    throughput_stats,
)
from fleetloop.core.errors import RemoteConnectError
from fleetloop.models.test_plan import TestPlan
from fleetloop.models.test_result import MetricResult, SuiteResult, TestResult

from conftest import FakeExecutor, make_fleet, result


def nat_result(direct=(1000, 986), nat=(1000, 875), relay=(100, 100)) -> TestResult:
    return TestResult(suites=[SuiteResult(suite="nat-traversal", metrics={
        "direct": MetricResult(attempted=direct[0], succeeded=direct[1]),
        "nat": MetricResult(attempted=nat[0], succeeded=nat[1]),
        "relay": MetricResult(attempted=relay[0], succeeded=relay[1]),
    })])


def threshold_plan(**thresholds) -> TestPlan:
    return TestPlan(project="p", focus="nat-traversal",
                    success_criteria={"kind": "threshold", "thresholds": thresholds})


@pytest.fixture
def runner():
    return TestRunner(executor=None)


# ---------------------------------------------------------------------------
# Threshold
# ---------------------------------------------------------------------------
def test_threshold_single_metric_below_fails(runner):
    plan = threshold_plan(direct=99, nat=85, relay=100)
    out = runner.evaluate(plan, nat_result())
    assert out.passed is False
    failing = [r.metric for r in out.criteria_rows if not r.passed]
    assert failing == ["direct"]


def test_threshold_all_met_passes(runner):
    plan = threshold_plan(direct=99, nat=85, relay=100)
    out = runner.evaluate(plan, nat_result(direct=(1000, 995), nat=(1000, 910)))
    assert out.passed is True
    assert [r.actual for r in out.criteria_rows] == [99.5, 91.0, 100.0]


def test_threshold_missing_metric_fails(runner):
    plan = threshold_plan(direct=90, hole_punch=50)
    out = runner.evaluate(plan, nat_result())
    assert out.passed is False
    missing = next(r for r in out.criteria_rows if r.metric == "hole_punch")
    assert missing.actual is None
    assert missing.note == "not observed"


def test_threshold_exact_boundary_passes(runner):
    plan = threshold_plan(nat=87.5)
    assert runner.evaluate(plan, nat_result()).passed is True


def test_threshold_compares_unrounded_rate(runner):
    # 989996 / 1000000 = 98.9996%, which would round up to 99.0
    plan = threshold_plan(direct=99)
    out = runner.evaluate(plan, nat_result(direct=(1_000_000, 989_996)))
    assert out.passed is False
    assert out.criteria_rows[0].actual == 99.0
    assert out.criteria_rows[0].passed is False


# ---------------------------------------------------------------------------
# All-pass
# ---------------------------------------------------------------------------
def test_all_pass_requires_every_check(runner):
    plan = TestPlan(project="p", focus="nat-traversal")
    assert runner.evaluate(plan, nat_result(direct=(10, 10), nat=(10, 10))).passed is True
    assert runner.evaluate(plan, nat_result(direct=(10, 9), nat=(10, 10))).passed is False


def test_all_pass_with_no_checks_fails(runner):
    plan = TestPlan(project="p", focus="nat-traversal")
    empty = TestResult(suites=[SuiteResult(suite="nat-traversal", node_errors={"n1": "unreachable"})])
    assert runner.evaluate(plan, empty).passed is False


# ---------------------------------------------------------------------------
# Improvement
# ---------------------------------------------------------------------------
def test_improvement_without_baseline_passes(runner):
    plan = TestPlan(project="p", focus="nat-traversal", success_criteria={"kind": "improvement"})
    out = runner.evaluate(plan, nat_result())
    assert out.passed is True
    assert all(r.note == "no baseline" for r in out.criteria_rows)


def test_improvement_detects_drop(runner):
    plan = TestPlan(project="p", focus="nat-traversal", success_criteria={"kind": "improvement"})
    previous = nat_result()
    assert runner.evaluate(plan, nat_result(nat=(1000, 900)), previous).passed is True
    assert runner.evaluate(plan, nat_result(nat=(1000, 800)), previous).passed is False


# ---------------------------------------------------------------------------
# Custom
# ---------------------------------------------------------------------------
def test_custom_predicate_registered(runner):
    @register_predicate("relay-perfect")
    def relay_perfect(res):
        return res.rate_for("relay") == 100.0

    plan = TestPlan(project="p", success_criteria={"kind": "custom", "predicate": "relay-perfect"})
    predicate = get_predicate("relay-perfect")
    assert predicate is relay_perfect
    assert runner.evaluate(plan, nat_result(), predicate=predicate).passed is True
    assert runner.evaluate(plan, nat_result(relay=(10, 9)), predicate=predicate).passed is False


def test_custom_predicate_missing_fails(runner):
    plan = TestPlan(project="p", success_criteria={"kind": "custom", "predicate": "nope"})
    out = runner.evaluate(plan, nat_result(), predicate=get_predicate("nope"))
    assert out.passed is False
    assert out.criteria_rows[0].note == "predicate not registered"


def test_custom_predicate_raising_fails(runner):
    plan = TestPlan(project="p", success_criteria={"kind": "custom", "predicate": "boom"})

    def boom(res):
        raise RuntimeError("bad predicate")

    out = runner.evaluate(plan, nat_result(), predicate=boom)
    assert out.passed is False
    assert "RuntimeError" in out.criteria_rows[0].note


# ---------------------------------------------------------------------------
# Regressions
# ---------------------------------------------------------------------------
def test_regressions_against_reference():
    reference = nat_result()
    assert TestRunner.regressions(reference, nat_result()) == []
    found = TestRunner.regressions(reference, nat_result(nat=(1000, 600)))
    assert [r.metric for r in found] == ["nat-traversal.nat"]
    assert found[0].drop == pytest.approx(27.5)


def test_regression_tolerance():
    reference = nat_result()
    assert TestRunner.regressions(reference, nat_result(nat=(1000, 870)), tolerance=1.0) == []


# ---------------------------------------------------------------------------
# Report parsing and aggregation
# ---------------------------------------------------------------------------
def test_parse_report_after_log_lines():
    stdout = "starting\nconnecting to peers\n" + json.dumps({"metrics": {"direct": {"attempted": 1, "succeeded": 1}}})
    assert parse_node_report(stdout)["metrics"]["direct"]["succeeded"] == 1


def test_parse_report_without_metrics_raises():
    with pytest.raises(ValueError):
        parse_node_report('{"status": "ok"}')
    with pytest.raises(ValueError):
        parse_node_report("")


def test_throughput_stats():
    stats = throughput_stats([10.0, 20.0, 30.0])
    assert stats.avg_mbps == 20.0
    assert stats.min_mbps == 10.0
    assert stats.max_mbps == 30.0
    assert throughput_stats([]) is None


def test_run_aggregates_across_nodes():
    nodes = make_fleet(3)
    report = json.dumps({
        "metrics": {"direct": {"attempted": 10, "succeeded": 9}},
        "throughput_mbps": [100.0],
    })

    def handler(node, command):
        if node.name == "node-3":
            return RemoteConnectError(node.name, "no route")
        return result(stdout=report)

    executor = FakeExecutor(handler)
    runner = TestRunner(executor, test_command="{binary} verify --suite {suite}", binary_path="/opt/qt")
    plan = threshold_plan(direct=90)

    async def run_test():
        return await runner.run(plan, nodes)

    out = asyncio.run(run_test())
    suite = out.suites[0]
    assert suite.suite == "nat-traversal"
    assert suite.metrics["direct"].attempted == 20
    assert suite.metrics["direct"].succeeded == 18
    assert suite.throughput.samples == 2
    assert "node-3" in suite.node_errors
    assert out.passed is True
    assert executor.commands_for("node-1") == ["/opt/qt verify --suite nat-traversal"]


def test_run_marks_unparseable_output_as_node_error():
    nodes = make_fleet(1)
    executor = FakeExecutor(lambda node, command: result(stdout="segfault", exit_code=139))
    runner = TestRunner(executor)

    async def run_test():
        return await runner.run(TestPlan(project="p", focus="gossip"), nodes)

    out = asyncio.run(run_test())
    assert out.suites[0].node_errors["node-1"].startswith("exit 139")
    assert out.passed is False
