"""
Deploy Report Model
Per-node outcome of a fleet deployment and the quorum verdict.
"""
from typing import Dict, List

from pydantic import BaseModel


class NodeDeployOutcome(BaseModel):
    node: str
    healthy: bool = False
    stage: str = ""             # last stage reached: stop / transfer / swap / start / health
    error: str = ""
    duration_seconds: float = 0.0


class DeployReport(BaseModel):
    artifact: str
    per_node: Dict[str, NodeDeployOutcome] = {}
    quorum: float = 0.5

    @property
    def healthy_nodes(self) -> List[str]:
        return sorted(n for n, o in self.per_node.items() if o.healthy)

    @property
    def failed_nodes(self) -> List[str]:
        return sorted(n for n, o in self.per_node.items() if not o.healthy)

    @property
    def healthy_fraction(self) -> float:
        if not self.per_node:
            return 0.0
        return len(self.healthy_nodes) / len(self.per_node)

    @property
    def success(self) -> bool:
        return bool(self.per_node) and self.healthy_fraction >= self.quorum
