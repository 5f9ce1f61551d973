"""
Diagnostic Collector
====================
Gathers evidence from the fleet: journal tails, a metrics snapshot and
per-node connection reports.

Collection never aborts on a single node: a node that cannot be reached
(or whose fetch fails) gets a gap placeholder saying what is missing.
"""
import asyncio
import json
import logging
import shlex
from typing import Iterable, List, Optional

import httpx

from fleetloop.core.config import (
    CONNECTION_REPORT_COMMAND,
    LOG_FETCH_TIMEOUT,
    LOG_TAIL_LINES,
    METRICS_URL,
    REMOTE_BINARY_PATH,
    SERVICE_NAME,
)
from fleetloop.core.constants import (
    ALL_EVIDENCE_TYPES,
    EVIDENCE_CONNECTION_REPORT,
    EVIDENCE_LOGS,
    EVIDENCE_METRICS,
)
from fleetloop.core.errors import FleetLoopError
from fleetloop.models.evidence import EvidenceBundle, NodeEvidence
from fleetloop.models.node import Node

logger = logging.getLogger(__name__)


class DiagnosticCollector:

    def __init__(
        self,
        executor,
        service_name: str = SERVICE_NAME,
        metrics_url: str = METRICS_URL,
        tail_lines: int = LOG_TAIL_LINES,
        report_command: str = CONNECTION_REPORT_COMMAND,
        binary_path: str = REMOTE_BINARY_PATH,
        timeout: float = LOG_FETCH_TIMEOUT,
    ) -> None:
        self.executor = executor
        self.service_name = service_name
        self.metrics_url = metrics_url.rstrip("/")
        self.tail_lines = tail_lines
        self.report_command = report_command
        self.binary_path = binary_path
        self.timeout = timeout

    async def collect(self, nodes: List[Node],
                      evidence_types: Optional[Iterable[str]] = None) -> EvidenceBundle:
        """Collect ``evidence_types`` (default: all) from ``nodes``."""
        types = list(evidence_types or ALL_EVIDENCE_TYPES)
        unknown = [t for t in types if t not in ALL_EVIDENCE_TYPES]
        if unknown:
            raise ValueError(f"unknown evidence types: {', '.join(unknown)}")

        bundle = EvidenceBundle(evidence_types=types)
        per_node = [t for t in types if t != EVIDENCE_METRICS]
        if per_node:
            results = await asyncio.gather(*(self._collect_node(n, per_node) for n in nodes))
            bundle.nodes = {e.node: e for e in results}

        if EVIDENCE_METRICS in types:
            bundle.metrics, bundle.metrics_error = await self.fetch_metrics()

        logger.info(
            "Collected %s from %d nodes | gaps=%s",
            "/".join(types), len(nodes), ", ".join(bundle.gaps) or "none",
        )
        return bundle

    async def _collect_node(self, node: Node, types: List[str]) -> NodeEvidence:
        evidence = NodeEvidence(node=node.name)
        if not node.reachable:
            evidence.gap = True
            evidence.notes.append(f"node unreachable: no {', '.join(types)}")
            return evidence

        if EVIDENCE_LOGS in types:
            try:
                evidence.log_lines = await self.fetch_logs(node)
            except FleetLoopError as exc:
                evidence.gap = True
                evidence.notes.append(f"logs unavailable: {exc}")

        if EVIDENCE_CONNECTION_REPORT in types:
            try:
                evidence.connection_report = await self.fetch_connection_report(node)
            except FleetLoopError as exc:
                evidence.gap = True
                evidence.notes.append(f"connection report unavailable: {exc}")
            except ValueError as exc:
                evidence.gap = True
                evidence.notes.append(f"connection report unreadable: {exc}")
        return evidence

    async def fetch_logs(self, node: Node) -> List[str]:
        command = (
            f"journalctl -u {shlex.quote(self.service_name)} "
            f"-n {int(self.tail_lines)} --no-pager -o short-iso"
        )
        result = await self.executor.run(node, command, timeout=self.timeout)
        return result.stdout.splitlines()

    async def fetch_connection_report(self, node: Node) -> dict:
        command = self.report_command.format(binary=shlex.quote(self.binary_path))
        result = await self.executor.run(node, command, timeout=self.timeout)
        if result.exit_code != 0:
            raise ValueError(f"exit {result.exit_code}: {result.stderr.strip()[:200]}")
        data = json.loads(result.stdout)
        if not isinstance(data, dict):
            raise ValueError("report is not a JSON object")
        return data

    async def fetch_metrics(self):
        """(snapshot, error) from ``<metrics_url>/api/stats``."""
        if not self.metrics_url:
            return None, "no metrics endpoint configured"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{self.metrics_url}/api/stats")
                response.raise_for_status()
                return response.json(), ""
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Metrics snapshot failed: %s", exc)
            return None, str(exc)
