"""
Notifier and ProofWriter tests.
"""
import asyncio
import json
import os
from unittest.mock import patch

import httpx

from fleetloop.agents.test_runner import TestRunner
from fleetloop.models.evidence import EvidenceBundle, NodeEvidence
from fleetloop.models.fix_record import FixRecord
from fleetloop.models.test_plan import TestPlan
from fleetloop.models.test_result import MetricResult, SuiteResult, TestResult, ThroughputStats
from fleetloop.services.notifier import LoggingNotifier, Notifier, WebhookNotifier
from fleetloop.services.proof_writer import ProofWriter, render_markdown
from fleetloop.state.loop_state import LoopState


def _mock_client(handler):
    real_client = httpx.AsyncClient

    def factory(*args, **kwargs):
        return real_client(*args, transport=httpx.MockTransport(handler), **kwargs)

    return patch("fleetloop.services.notifier.httpx.AsyncClient", side_effect=factory)


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------
def test_default_sinks():
    assert [type(s) for s in Notifier(webhook_url="").sinks] == [LoggingNotifier]
    sinks = Notifier(webhook_url="http://hooks.local/fleet").sinks
    assert isinstance(sinks[1], WebhookNotifier)


def test_webhook_posts_event():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(204)

    notifier = Notifier(sinks=[WebhookNotifier("http://hooks.local/fleet")])
    with _mock_client(handler):
        event = asyncio.run(notifier.publish("wait_short", "quic-nat", "soaking", deadline="later"))

    assert event.kind == "wait_short"
    assert bodies[0]["project"] == "quic-nat"
    assert bodies[0]["data"] == {"deadline": "later"}


def test_webhook_failure_is_logged_not_raised(caplog):
    notifier = Notifier(sinks=[WebhookNotifier("http://hooks.local/fleet")])
    with _mock_client(lambda request: httpx.Response(500)):
        asyncio.run(notifier.publish("stopped", "quic-nat", "unfixable"))
    assert "Webhook notification stopped for quic-nat failed" in caplog.text


# ---------------------------------------------------------------------------
# ProofWriter
# ---------------------------------------------------------------------------
PLAN = TestPlan(project="quic-nat", focus="throughput",
                success_criteria={"kind": "threshold", "thresholds": {"transfer": 95}})


def _result() -> TestResult:
    raw = TestResult(suites=[SuiteResult(
        suite="throughput",
        metrics={"transfer": MetricResult(attempted=40, succeeded=39)},
        throughput=ThroughputStats(avg_mbps=412.5, min_mbps=380, max_mbps=455, samples=40),
    )])
    return TestRunner(None).evaluate(PLAN, raw)


def _state() -> LoopState:
    state = LoopState(project="quic-nat", plan=PLAN, build_count=2, deploy_count=2, test_count=4, fix_attempts=1)
    state.applied_fixes.append(FixRecord(fix_id="fix-1", description="tune congestion window",
                                         change_ref="feedfacecafebeef"))
    return state


def test_markdown_criteria_table():
    text = render_markdown(_state(), _result(), "/proofs/quic-nat/evidence_x")
    assert "| Metric | Required | Actual | Result |" in text
    assert "| transfer | 95 | 97.5 | PASS |" in text
    assert "throughput avg 412.5 Mbps" in text
    assert "`feedfacecafe` tune congestion window" in text


def test_write_proof_bundle(tmp_path):
    evidence = EvidenceBundle(
        evidence_types=["logs", "metrics", "connectionReport"],
        nodes={
            "saorsa-2": NodeEvidence(node="saorsa-2", log_lines=["a", "b"], connection_report={"peers": 9}),
            "saorsa-9": NodeEvidence(node="saorsa-9", gap=True, notes=["node unreachable: no logs"]),
        },
        metrics={"active_peers": 9},
    )
    writer = ProofWriter(str(tmp_path))

    json_path = writer.write_proof(_state(), _result(), evidence)

    with open(json_path, encoding="utf-8") as f:
        data = json.load(f)
    assert data["project"] == "quic-nat"
    assert data["counters"] == {"builds": 2, "deploys": 2, "tests": 4, "fix_attempts": 1}
    assert data["criteria"][0]["passed"] is True
    assert data["evidence"]["gaps"] == ["saorsa-9"]
    files = data["evidence"]["files"]
    assert files["saorsa-9.gap"] == "node unreachable: no logs"
    with open(files["saorsa-2.log"], encoding="utf-8") as f:
        assert f.read() == "a\nb\n"
    assert os.path.exists(files["metrics"])
    assert os.path.exists(json_path[:-len(".json")] + ".md")


def test_write_proof_without_evidence(tmp_path):
    json_path = ProofWriter(str(tmp_path)).write_proof(_state(), _result())
    with open(json_path, encoding="utf-8") as f:
        assert json.load(f)["evidence"]["files"] == {}
