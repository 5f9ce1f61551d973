"""
CLI tests through click's CliRunner. SessionManager is built on a
tmp_path state directory and a scripted executor.
"""
from unittest.mock import patch

import pytest
from click.testing import CliRunner
from rich.console import Console

from fleetloop.cli import main
from fleetloop.core.errors import RemoteConnectError
from fleetloop.models.test_plan import TestPlan
from fleetloop.services.notifier import Notifier
from fleetloop.services.session_manager import SessionManager
from fleetloop.state.loop_state import LoopPhase, LoopState
from fleetloop.state.state_store import StateStore

from conftest import FakeExecutor

INVENTORY = """
nodes:
  - {name: saorsa-2, hostname: saorsa-2.example.net, ip: 142.93.199.50, role: registry}
  - {name: saorsa-3, hostname: saorsa-3.example.net, ip: 147.182.234.192}
"""

ENV = {"LOG_DIR": ""}


@pytest.fixture
def inventory(tmp_path):
    path = tmp_path / "fleet.yaml"
    path.write_text(INVENTORY)
    return str(path)


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "state"))


@pytest.fixture(autouse=True)
def managers(store):
    executor = FakeExecutor(lambda node, command: RemoteConnectError(node.name, "down"))

    def factory(inventory_path):
        return SessionManager(inventory_path=inventory_path, store=store,
                              executor=executor, notifier=Notifier(sinks=[]))

    with patch("fleetloop.cli.SessionManager", side_effect=factory), \
         patch("fleetloop.cli.setup_logging"), \
         patch("fleetloop.cli.console", Console(width=200)):
        yield executor


def invoke(inventory, *args):
    return CliRunner().invoke(main, ["--inventory", inventory, *args], env=ENV)


def test_nodes(inventory):
    out = invoke(inventory, "nodes")
    assert out.exit_code == 0
    assert "saorsa-2" in out.output
    assert "registry" in out.output


def test_missing_inventory(tmp_path):
    out = invoke(str(tmp_path / "nope.yaml"), "nodes")
    assert out.exit_code == 5


def test_start_invalid_plan(inventory):
    out = invoke(inventory, "start", "--project", "quic-nat", "--criteria", "threshold")
    assert out.exit_code == 5
    assert "Invalid test plan" in out.output


def test_start_bad_threshold(inventory):
    out = invoke(inventory, "start", "--project", "quic-nat", "--criteria", "threshold",
                 "--threshold", "direct")
    assert out.exit_code == 5


def test_unknown_option_is_invalid_input(inventory):
    assert invoke(inventory, "start", "--bogus").exit_code == 5


def test_start_with_unreachable_fleet(inventory, store):
    out = invoke(inventory, "start", "--project", "quic-nat", "--focus", "nat-traversal")
    assert out.exit_code == 2
    assert "quorum_breach" in out.output
    assert store.load("quic-nat").state == LoopPhase.STOPPED


def test_start_from_plan_file(inventory, store, tmp_path):
    plan_file = tmp_path / "plan.yaml"
    plan_file.write_text(
        "project: quic-nat\n"
        "focus: nat-traversal\n"
        "success_criteria:\n"
        "  kind: threshold\n"
        "  thresholds: {direct: 99}\n"
    )
    out = invoke(inventory, "start", "--plan", str(plan_file), "--threshold", "nat=85")
    assert out.exit_code == 2
    plan = store.load("quic-nat").plan
    assert plan.success_criteria.thresholds == {"nat": 85.0}


def test_status(inventory, store):
    assert "No projects" in invoke(inventory, "status").output
    store.save(LoopState(project="quic-nat", plan=TestPlan(project="quic-nat"), state=LoopPhase.WAIT_LONG))
    out = invoke(inventory, "status")
    assert out.exit_code == 0
    assert "quic-nat" in out.output
    assert "WAIT_LONG" in out.output


def test_stop(inventory, store):
    assert invoke(inventory, "stop", "quic-nat").exit_code == 5
    store.save(LoopState(project="quic-nat", plan=TestPlan(project="quic-nat"), state=LoopPhase.TEST))
    out = invoke(inventory, "stop", "quic-nat")
    assert out.exit_code == 0
    assert store.stop_requested("quic-nat") is True


def test_logs(inventory, store):
    assert invoke(inventory, "logs", "quic-nat").exit_code == 5
    state = LoopState(project="quic-nat", plan=TestPlan(project="quic-nat"))
    state.log("probe [bold]complete[/bold]")
    store.save(state)
    out = invoke(inventory, "logs", "quic-nat")
    assert out.exit_code == 0
    assert "probe [bold]complete[/bold]" in out.output


def test_diagnose_unknown_node(inventory):
    assert invoke(inventory, "diagnose", "saorsa-99").exit_code == 5


def test_diagnose(inventory):
    out = invoke(inventory, "diagnose", "saorsa-3")
    assert out.exit_code == 0
    assert '"status": "unreachable"' in out.output


def test_start_refused_while_another_process_owns_the_project(inventory, store):
    other = StateStore(store.state_dir)
    other.acquire("quic-nat")
    try:
        out = invoke(inventory, "start", "--project", "quic-nat")
    finally:
        other.release("quic-nat")
    assert out.exit_code == 5
    assert "already has an active loop" in out.output
    assert store.load("quic-nat") is None


def test_start_releases_project_when_loop_ends(inventory, store):
    assert invoke(inventory, "start", "--project", "quic-nat").exit_code == 2
    assert store.owned("quic-nat") is False
    assert invoke(inventory, "start", "--project", "quic-nat").exit_code == 2
