"""
Health Checker
==============
Decides whether a freshly restarted node is serving.

A node is healthy when its systemd unit is active and, if a registry URL
is configured, the registry's ``/api/peers`` listing contains it.
"""
import logging
import shlex
from typing import Any, List, Optional

import httpx

from fleetloop.core.config import REGISTRY_URL, SERVICE_NAME, SERVICE_TIMEOUT
from fleetloop.core.errors import RemoteConnectError, RemoteTimeoutError
from fleetloop.models.node import Node

logger = logging.getLogger(__name__)


def _peer_strings(entry: Any) -> List[str]:
    if isinstance(entry, dict):
        return [str(v) for v in entry.values() if isinstance(v, (str, int))]
    return [str(entry)]


def _host_part(value: str) -> str:
    """``quic://10.0.0.1:9000/x`` → ``10.0.0.1``; bracketed IPv6 loses its brackets."""
    value = value.strip()
    if "://" in value:
        value = value.split("://", 1)[1]
    value = value.split("/", 1)[0]
    if value.startswith("["):
        return value[1:].split("]", 1)[0].lower()
    if value.count(":") == 1:
        value = value.rsplit(":", 1)[0]
    return value.lower()


def registry_lists(node: Node, peers: List[Any]) -> bool:
    """True if any peer entry names the node's name, hostname or IP exactly (port ignored)."""
    wanted = {v.lower() for v in (node.name, node.hostname, node.ip) if v}
    for entry in peers:
        for value in _peer_strings(entry):
            if _host_part(value) in wanted:
                return True
    return False


class HealthChecker:

    def __init__(self, executor, service_name: str = SERVICE_NAME,
                 registry_url: str = REGISTRY_URL) -> None:
        self.executor = executor
        self.service_name = service_name
        self.registry_url = registry_url.rstrip("/")

    async def service_active(self, node: Node) -> bool:
        try:
            result = await self.executor.run(
                node, f"systemctl is-active --quiet {shlex.quote(self.service_name)}",
                timeout=SERVICE_TIMEOUT,
            )
        except (RemoteConnectError, RemoteTimeoutError) as exc:
            logger.debug("[%s] service check failed: %s", node.name, exc)
            return False
        return result.exit_code == 0

    async def fetch_peers(self) -> Optional[List[Any]]:
        """Registry peer list, or None when the registry cannot be read."""
        if not self.registry_url:
            return None
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.get(f"{self.registry_url}/api/peers")
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Registry peer listing failed: %s", exc)
            return None
        if isinstance(data, dict):
            data = data.get("peers", [])
        return data if isinstance(data, list) else []

    async def is_healthy(self, node: Node) -> bool:
        if not await self.service_active(node):
            return False
        if not self.registry_url:
            return True
        peers = await self.fetch_peers()
        return peers is not None and registry_lists(node, peers)
