"""
Deployment Manager
==================
Rolls a locally built artifact out to a set of nodes.

Per node (all nodes in parallel, independently):
    1. stop     — systemctl stop + pkill, then confirm the process is gone
    2. transfer — scp to ``<binary>.new`` (refused while the process runs)
    3. swap     — chmod + ``mv -f`` over the binary (atomic rename)
    4. start    — systemctl start
    5. health   — poll the health check within the window

The old binary is never running while the new file is half written: the
upload only starts once the process is confirmed absent, and the live
path only ever changes by rename.

Quorum:
    The deployment succeeds overall when healthy / total >= quorum.
    Failed nodes are marked degraded (or unreachable on connection
    failure) either way; one node's failure never aborts the others.
"""
import asyncio
import logging
import shlex
import time
from typing import List, Optional

from fleetloop.agents.health_checker import HealthChecker
from fleetloop.core.config import (
    LOOP_QUORUM,
    HEALTH_WINDOW_SECONDS,
    HEALTH_POLL_INTERVAL,
    PROCESS_NAME,
    REMOTE_BINARY_PATH,
    SERVICE_NAME,
    SERVICE_TIMEOUT,
)
from fleetloop.core.errors import FleetLoopError, RemoteConnectError, RemoteTimeoutError
from fleetloop.models.deploy_report import DeployReport, NodeDeployOutcome
from fleetloop.models.node import Node, NodeStatus

logger = logging.getLogger(__name__)

# Attempts to see the process disappear after a stop
_STOP_CONFIRM_ATTEMPTS = 5


class DeploymentManager:

    def __init__(
        self,
        executor,
        registry,
        health_checker: Optional[HealthChecker] = None,
        service_name: str = SERVICE_NAME,
        process_name: str = PROCESS_NAME,
        remote_binary_path: str = REMOTE_BINARY_PATH,
        quorum: float = LOOP_QUORUM,
        health_window: float = HEALTH_WINDOW_SECONDS,
        health_poll_interval: float = HEALTH_POLL_INTERVAL,
    ) -> None:
        self.executor = executor
        self.registry = registry
        self.health_checker = health_checker or HealthChecker(executor, service_name)
        self.service_name = service_name
        self.process_name = process_name
        self.remote_binary_path = remote_binary_path
        self.quorum = quorum
        self.health_window = health_window
        self.health_poll_interval = health_poll_interval

    async def deploy(self, artifact: str, nodes: List[Node]) -> DeployReport:
        """Deploy ``artifact`` to ``nodes`` and return the per-node report."""
        report = DeployReport(artifact=str(artifact), quorum=self.quorum)
        if not nodes:
            logger.error("Deploy requested with an empty node set")
            return report

        logger.info("Deploying %s to %d nodes", artifact, len(nodes))
        outcomes = await asyncio.gather(*(self._deploy_node(str(artifact), n) for n in nodes))
        for outcome in outcomes:
            report.per_node[outcome.node] = outcome

        for outcome in outcomes:
            if outcome.healthy:
                self.registry.update_status(outcome.node, NodeStatus.ONLINE)
            elif outcome.stage == "connect":
                self.registry.update_status(outcome.node, NodeStatus.UNREACHABLE)
            else:
                self.registry.update_status(outcome.node, NodeStatus.DEGRADED)

        if report.success and report.failed_nodes:
            logger.warning("Deploy above quorum with failures on: %s", ", ".join(report.failed_nodes))
        logger.info(
            "Deploy finished | healthy=%d/%d (%.0f%%) | quorum=%.0f%% | success=%s",
            len(report.healthy_nodes), len(report.per_node), report.healthy_fraction * 100,
            self.quorum * 100, report.success,
        )
        return report

    # -------------------------------------------------------------------
    # Per-node pipeline
    # -------------------------------------------------------------------
    async def _deploy_node(self, artifact: str, node: Node) -> NodeDeployOutcome:
        outcome = NodeDeployOutcome(node=node.name)
        start = time.monotonic()
        try:
            outcome.stage = "stop"
            if not await self._stop_and_confirm(node):
                outcome.error = f"{self.process_name} still running after stop"
                return outcome

            outcome.stage = "transfer"
            staged = f"{self.remote_binary_path}.new"
            await self.executor.copy_to(node, artifact, staged, guard_process=self.process_name)

            outcome.stage = "swap"
            binary = shlex.quote(self.remote_binary_path)
            swap = await self.executor.run(
                node, f"chmod +x {shlex.quote(staged)} && mv -f {shlex.quote(staged)} {binary}",
                timeout=SERVICE_TIMEOUT,
            )
            if swap.exit_code != 0:
                outcome.error = swap.stderr.strip() or "swap failed"
                return outcome

            outcome.stage = "start"
            started = await self.executor.run(
                node, f"systemctl start {shlex.quote(self.service_name)}", timeout=SERVICE_TIMEOUT
            )
            if started.exit_code != 0:
                outcome.error = started.stderr.strip() or "service start failed"
                return outcome

            outcome.stage = "health"
            outcome.healthy = await self._wait_healthy(node)
            if not outcome.healthy:
                outcome.error = f"not healthy within {self.health_window}s"
            return outcome

        except RemoteConnectError as exc:
            outcome.stage = "connect"
            outcome.error = str(exc)
            return outcome
        except (RemoteTimeoutError, FleetLoopError) as exc:
            outcome.error = str(exc)
            return outcome
        finally:
            outcome.duration_seconds = round(time.monotonic() - start, 3)
            if outcome.healthy:
                logger.info("[%s] deployed and healthy in %.1fs", node.name, outcome.duration_seconds)
            else:
                logger.warning("[%s] deploy failed at %s: %s", node.name, outcome.stage, outcome.error)

    async def _stop_and_confirm(self, node: Node) -> bool:
        service = shlex.quote(self.service_name)
        process = shlex.quote(self.process_name)
        await self.executor.run(
            node, f"systemctl stop {service} 2>/dev/null; pkill -x {process} 2>/dev/null; true",
            timeout=SERVICE_TIMEOUT,
        )
        for attempt in range(_STOP_CONFIRM_ATTEMPTS):
            check = await self.executor.run(node, f"pgrep -x {process}", timeout=SERVICE_TIMEOUT)
            if check.exit_code != 0:
                return True
            if attempt == _STOP_CONFIRM_ATTEMPTS - 2:
                await self.executor.run(node, f"pkill -9 -x {process}; true", timeout=SERVICE_TIMEOUT)
            await asyncio.sleep(self.health_poll_interval)
        return False

    async def _wait_healthy(self, node: Node) -> bool:
        deadline = time.monotonic() + self.health_window
        while True:
            if await self.health_checker.is_healthy(node):
                return True
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(self.health_poll_interval)
