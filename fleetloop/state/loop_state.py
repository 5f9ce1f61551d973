"""
Loop State
==========
The single persisted record of one project's loop. Mutated on every
transition and written to disk after every mutation so a crashed process
can resume at the last committed state.

Fields:
    project / state            — identity and current LoopPhase
    started_at, last_transition_at, last_test_at, wait_deadline
    fix_attempts, build_count, deploy_count, test_count
    applied_fixes              — FixRecord list, append-only
    last_test_result           — most recent TestResult (improvement baseline)
    soak_stage                 — "" | "short" | "long": which soak window the
                                 next passing TEST completes
    soak_reference             — last passing result, regression baseline
    node_status                — per-run copy of node → NodeStatus
    activity                   — append-only activity log
    artifact_path              — artifact produced by the last BUILD
    pending_failure            — what sent the loop into FIX
    stop_reason / proof_path   — terminal bookkeeping
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from fleetloop.models.build_diagnostic import BuildDiagnostic
from fleetloop.models.fix_record import FixRecord
from fleetloop.models.node import NodeStatus
from fleetloop.models.test_plan import TestPlan
from fleetloop.models.test_result import TestResult


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoopPhase(str, Enum):
    SETUP = "SETUP"
    BUILD = "BUILD"
    DEPLOY = "DEPLOY"
    TEST = "TEST"
    FIX = "FIX"
    WAIT_SHORT = "WAIT_SHORT"
    WAIT_LONG = "WAIT_LONG"
    COMPLETE = "COMPLETE"
    STOPPED = "STOPPED"


TERMINAL_PHASES = frozenset({LoopPhase.COMPLETE, LoopPhase.STOPPED})


class ActivityEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    state: LoopPhase
    level: str = "info"
    message: str


class FailureContext(BaseModel):
    """Why the loop entered FIX; kept on the state so FIX can resume."""
    phase: LoopPhase
    summary: str
    stderr: str = ""
    build_diagnostics: List[BuildDiagnostic] = []
    failed_nodes: List[str] = []
    test_result: Optional[TestResult] = None


class LoopState(BaseModel):
    project: str
    plan: TestPlan
    state: LoopPhase = LoopPhase.SETUP

    started_at: datetime = Field(default_factory=utcnow)
    last_transition_at: datetime = Field(default_factory=utcnow)
    last_test_at: Optional[datetime] = None
    wait_deadline: Optional[datetime] = None

    fix_attempts: int = 0
    build_count: int = 0
    deploy_count: int = 0
    test_count: int = 0

    applied_fixes: List[FixRecord] = []
    last_test_result: Optional[TestResult] = None
    soak_stage: str = ""
    soak_reference: Optional[TestResult] = None
    node_status: Dict[str, NodeStatus] = {}
    activity: List[ActivityEntry] = []

    artifact_path: str = ""
    pending_failure: Optional[FailureContext] = None
    first_failure_seen: bool = False
    stop_reason: str = ""
    proof_path: str = ""

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_PHASES

    def log(self, message: str, level: str = "info") -> ActivityEntry:
        entry = ActivityEntry(state=self.state, level=level, message=message)
        self.activity.append(entry)
        return entry
