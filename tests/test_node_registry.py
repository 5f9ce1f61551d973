"""
NodeRegistry tests: inventory loading, snapshots, probing and the quorum rule.
"""
import asyncio

import pytest

from fleetloop.core.errors import NodeNotFoundError, RemoteConnectError, RemoteTimeoutError
from fleetloop.fleet.node_registry import NodeRegistry, load_inventory
from fleetloop.models.node import NatProfile, NodeRole, NodeStatus

from conftest import FakeExecutor, make_fleet, result

INVENTORY = """
nodes:
  - name: saorsa-2
    hostname: saorsa-2.example.net
    ip: 142.93.199.50
    role: registry
  - name: saorsa-5
    hostname: saorsa-5.example.net
    ip: 10.0.0.5
    role: nat-emulated
    nat_profile: symmetric
"""


def test_load_inventory(tmp_path):
    path = tmp_path / "fleet.yaml"
    path.write_text(INVENTORY)
    nodes = load_inventory(str(path))
    assert [n.name for n in nodes] == ["saorsa-2", "saorsa-5"]
    assert nodes[0].role == NodeRole.REGISTRY
    assert nodes[1].nat_profile == NatProfile.SYMMETRIC
    assert all(n.status == NodeStatus.UNREACHABLE for n in nodes)


def test_duplicate_names_rejected(tmp_path):
    path = tmp_path / "fleet.yaml"
    path.write_text("nodes:\n  - {name: a, hostname: a}\n  - {name: a, hostname: b}\n")
    with pytest.raises(ValueError, match="duplicate"):
        load_inventory(str(path))


def test_get_unknown_node(registry):
    with pytest.raises(NodeNotFoundError):
        registry.get_node("saorsa-99")


def test_snapshot_is_independent(registry):
    registry.update_status("node-1", NodeStatus.ONLINE)
    snap = registry.snapshot()
    assert snap.get_node("node-1").status == NodeStatus.UNREACHABLE
    snap.update_status("node-2", NodeStatus.DEGRADED)
    assert registry.get_node("node-2").status == NodeStatus.UNREACHABLE


def test_record_nat_profile(registry):
    registry.record_nat_profile("node-3", NatProfile.CGNAT)
    assert registry.get_node("node-3").applied_nat_profile == NatProfile.CGNAT


# ---------------------------------------------------------------------------
# Quorum
# ---------------------------------------------------------------------------
def _with_reachable(count: int) -> NodeRegistry:
    nodes = make_fleet(10)
    for node in nodes[:count]:
        node.status = NodeStatus.ONLINE
    return NodeRegistry(nodes)


def test_quorum_exactly_half_passes():
    assert _with_reachable(5).quorum_met(0.5) is True


def test_quorum_below_half_fails():
    assert _with_reachable(4).quorum_met(0.5) is False


def test_degraded_counts_as_reachable():
    nodes = make_fleet(2)
    nodes[0].status = NodeStatus.DEGRADED
    assert NodeRegistry(nodes).quorum_met(0.5) is True


def test_empty_fleet_never_meets_quorum():
    assert NodeRegistry([]).quorum_met(0.0) is False


# ---------------------------------------------------------------------------
# Probing
# ---------------------------------------------------------------------------
def test_probe_classifies_nodes(registry):
    def handler(node, command):
        if node.name == "node-1":
            return result(exit_code=0)
        if node.name == "node-2":
            return result(exit_code=3)
        if node.name == "node-3":
            return RemoteTimeoutError(node.name, command, 20)
        return RemoteConnectError(node.name, "refused")

    executor = FakeExecutor(handler)

    async def run_test():
        return await registry.probe(executor, "svc")

    statuses = asyncio.run(run_test())
    assert statuses["node-1"] == NodeStatus.ONLINE
    assert statuses["node-2"] == NodeStatus.DEGRADED
    assert statuses["node-3"] == NodeStatus.UNREACHABLE
    assert statuses["node-10"] == NodeStatus.UNREACHABLE
    assert registry.get_node("node-1").last_checked is not None
    assert executor.commands_for("node-1") == ["systemctl is-active --quiet svc"]
