"""
Node Registry
=============
Static inventory of the VPS fleet plus live reachability / service status.

The inventory is loaded once from YAML and shared read-only. Every loop
works on its own ``snapshot()``: status updates made by one project never
leak into another project's view.

Inventory format (fleet.yaml)::

    nodes:
      - name: saorsa-2
        hostname: saorsa-2.example.net
        ip: 142.93.199.50
        provider: digitalocean
        region: nyc1
        role: registry
        nat_profile: none
"""
import asyncio
import copy
import logging
import shlex
from datetime import datetime, timezone
from typing import Dict, List, Optional

import yaml

from fleetloop.core.config import FLEET_INVENTORY, PROBE_TIMEOUT, SERVICE_NAME
from fleetloop.core.errors import (
    NodeNotFoundError,
    RemoteConnectError,
    RemoteTimeoutError,
)
from fleetloop.models.node import NatProfile, Node, NodeStatus

logger = logging.getLogger(__name__)


def load_inventory(path: str = FLEET_INVENTORY) -> List[Node]:
    """Parse the YAML inventory into Node models."""
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    entries = data.get("nodes", []) if isinstance(data, dict) else data
    nodes = [Node.model_validate(entry) for entry in entries or []]
    names = [n.name for n in nodes]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValueError(f"duplicate node names in inventory: {', '.join(duplicates)}")
    logger.info("Loaded %d nodes from %s", len(nodes), path)
    return nodes


class NodeRegistry:
    """Inventory + status view for one run."""

    def __init__(self, nodes: List[Node]) -> None:
        self._nodes: Dict[str, Node] = {n.name: n for n in nodes}

    @classmethod
    def from_file(cls, path: str = FLEET_INVENTORY) -> "NodeRegistry":
        return cls(load_inventory(path))

    def snapshot(self) -> "NodeRegistry":
        """Independent copy for one loop; statuses start unknown (unreachable)."""
        nodes = []
        for node in self._nodes.values():
            clone = copy.deepcopy(node)
            clone.status = NodeStatus.UNREACHABLE
            clone.last_checked = None
            nodes.append(clone)
        return NodeRegistry(nodes)

    # -------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------
    def list_nodes(self) -> List[Node]:
        return list(self._nodes.values())

    def get_node(self, name: str) -> Node:
        node = self._nodes.get(name)
        if node is None:
            raise NodeNotFoundError(name)
        return node

    def update_status(self, name: str, status: NodeStatus) -> Node:
        node = self.get_node(name)
        if node.status != status:
            logger.info("[%s] status %s -> %s", name, node.status.value, status.value)
        node.status = status
        node.last_checked = datetime.now(timezone.utc)
        return node

    def record_nat_profile(self, name: str, profile: NatProfile) -> None:
        """Called by SETUP once configure_nat_profile succeeded."""
        self.get_node(name).applied_nat_profile = profile

    def status_map(self) -> Dict[str, NodeStatus]:
        return {n.name: n.status for n in self._nodes.values()}

    def reachable_nodes(self) -> List[Node]:
        return [n for n in self._nodes.values() if n.reachable]

    def reachable_fraction(self) -> float:
        if not self._nodes:
            return 0.0
        return len(self.reachable_nodes()) / len(self._nodes)

    def quorum_met(self, quorum: float) -> bool:
        return bool(self._nodes) and self.reachable_fraction() >= quorum

    # -------------------------------------------------------------------
    # Health probing
    # -------------------------------------------------------------------
    async def probe_node(
        self,
        executor,
        name: str,
        service_name: str = SERVICE_NAME,
        timeout: float = PROBE_TIMEOUT,
    ) -> NodeStatus:
        """
        One ssh round-trip: the connection itself is the reachability probe,
        the exit status of the service check decides online vs degraded.
        """
        node = self.get_node(name)
        try:
            result = await executor.run(
                node, f"systemctl is-active --quiet {shlex.quote(service_name)}", timeout=timeout
            )
        except (RemoteConnectError, RemoteTimeoutError) as exc:
            logger.warning("[%s] unreachable: %s", name, exc)
            return self.update_status(name, NodeStatus.UNREACHABLE).status

        status = NodeStatus.ONLINE if result.exit_code == 0 else NodeStatus.DEGRADED
        return self.update_status(name, status).status

    async def probe(self, executor, service_name: str = SERVICE_NAME,
                    names: Optional[List[str]] = None) -> Dict[str, NodeStatus]:
        """Probe the fleet (or ``names``) in parallel."""
        targets = names or list(self._nodes)
        statuses = await asyncio.gather(
            *(self.probe_node(executor, n, service_name) for n in targets)
        )
        return dict(zip(targets, statuses))
