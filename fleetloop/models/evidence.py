"""
Evidence Bundle Model
=====================
Logs, metrics and connection reports gathered from the fleet, either for
failure analysis (FIX) or as proof of success (COMPLETE).

A node that could not be reached during collection still gets an entry:
``gap=True`` with a note saying what is missing.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class NodeEvidence(BaseModel):
    node: str
    log_lines: List[str] = []
    connection_report: Optional[Dict[str, Any]] = None
    gap: bool = False
    notes: List[str] = []


class EvidenceBundle(BaseModel):
    collected_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    evidence_types: List[str] = []
    nodes: Dict[str, NodeEvidence] = {}
    metrics: Optional[Dict[str, Any]] = None
    metrics_error: str = ""

    @property
    def gaps(self) -> List[str]:
        return sorted(n for n, e in self.nodes.items() if e.gap)

    def all_log_lines(self) -> List[tuple]:
        """(node, line) pairs across the fleet."""
        return [(n, line) for n, e in self.nodes.items() for line in e.log_lines]
