"""
Fix Cycle Controller
====================
Turns a failure into a committed fix, or declares it Unfixable.

Flow:
    gather_diagnostics(failure, nodes)
        → evidence from the fleet (skipped for local build failures)
        → log analysis (anomalies, root cause, suggestions)
    attempt_fix(diagnostics, on_attempt)
        loop:
            1. count the attempt (callback → LoopState.fix_attempts)
            2. ask the fix provider for a change (prompt on stdin)
            3. require a working-tree change
            4. run the local fast tests
               fail → revert, append the failure to the next prompt, retry
            5. commit → FixRecord(change_ref=sha)

The controller NEVER deploys and NEVER edits code itself: the external
provider edits, the git agent commits or reverts.

Attempts are unbounded unless an operator cap is configured
(FIX_ATTEMPT_CAP > 0).
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Union

from fleetloop.agents.fix_prompts import build_fix_prompt
from fleetloop.agents.git_agent import GitAgent, GitError
from fleetloop.core.config import BUILD_WORKSPACE, FIX_ATTEMPT_CAP, FIX_COMMAND, FIX_TIMEOUT
from fleetloop.core.constants import EVIDENCE_CONNECTION_REPORT, EVIDENCE_LOGS, EVIDENCE_METRICS
from fleetloop.models.evidence import EvidenceBundle
from fleetloop.models.fix_record import FixRecord, Unfixable
from fleetloop.models.node import Node
from fleetloop.parser.log_analyzer import AnalysisReport, LogAnalyzer
from fleetloop.state.loop_state import FailureContext, LoopPhase

logger = logging.getLogger(__name__)

FixOutcome = Union[FixRecord, Unfixable]


@dataclass
class FixDiagnostics:
    failure: FailureContext
    evidence: Optional[EvidenceBundle] = None
    analysis: Optional[AnalysisReport] = None
    log_excerpt: List[str] = field(default_factory=list)

    def summary(self) -> str:
        if self.analysis is not None and self.analysis.root_cause is not None:
            return f"{self.failure.summary}; probable cause: {self.analysis.root_cause.primary_cause}"
        if self.failure.build_diagnostics:
            first = self.failure.build_diagnostics[0]
            where = f" at {first.location()}" if first.file_path else ""
            return f"{self.failure.summary}; {first.message}{where}"
        return self.failure.summary


@dataclass
class ProviderResult:
    exit_code: int = -1
    output: str = ""
    error: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.error


class CommandFixProvider:
    """
    External fix capability: a local command that reads the prompt on
    stdin and edits the workspace in place.
    """

    def __init__(self, command: str, workspace: str = BUILD_WORKSPACE,
                 timeout: float = FIX_TIMEOUT) -> None:
        self.command = command
        self.workspace = workspace
        self.timeout = timeout

    async def propose(self, prompt: str) -> ProviderResult:
        result = ProviderResult()
        try:
            proc = await asyncio.create_subprocess_exec(
                "bash", "-c", self.command,
                cwd=self.workspace,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            result.error = f"could not start fix provider: {exc}"
            return result
        try:
            stdout, _ = await asyncio.wait_for(
                proc.communicate(prompt.encode("utf-8")), timeout=self.timeout
            )
        except (asyncio.TimeoutError, asyncio.CancelledError) as exc:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            if isinstance(exc, asyncio.CancelledError):
                raise
            result.error = f"fix provider timed out after {self.timeout}s"
            return result
        result.exit_code = proc.returncode
        result.output = stdout.decode("utf-8", errors="replace")
        return result


class FixCycleController:

    def __init__(
        self,
        collector,
        build_service,
        git_agent: Optional[GitAgent] = None,
        provider: Optional[CommandFixProvider] = None,
        analyzer: Optional[LogAnalyzer] = None,
        attempt_cap: int = FIX_ATTEMPT_CAP,
    ) -> None:
        self.collector = collector
        self.build_service = build_service
        self.git_agent = git_agent or GitAgent(build_service.workspace)
        if provider is None and FIX_COMMAND:
            provider = CommandFixProvider(FIX_COMMAND, build_service.workspace)
        self.provider = provider
        self.analyzer = analyzer or LogAnalyzer()
        self.attempt_cap = attempt_cap

    # -------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------
    async def gather_diagnostics(self, failure: FailureContext, nodes: List[Node]) -> FixDiagnostics:
        diagnostics = FixDiagnostics(failure=failure)
        if failure.phase == LoopPhase.BUILD:
            # compiler output is the evidence
            return diagnostics

        diagnostics.evidence = await self.collector.collect(
            nodes, [EVIDENCE_LOGS, EVIDENCE_METRICS, EVIDENCE_CONNECTION_REPORT]
        )
        diagnostics.analysis = self.analyzer.investigate(diagnostics.evidence.all_log_lines())
        diagnostics.log_excerpt = [
            f"[{a.node}] {a.message}" for a in diagnostics.analysis.anomalies
        ]
        return diagnostics

    # -------------------------------------------------------------------
    # Fix attempts
    # -------------------------------------------------------------------
    async def attempt_fix(
        self,
        diagnostics: FixDiagnostics,
        on_attempt: Optional[Callable[[int], None]] = None,
    ) -> FixOutcome:
        if self.provider is None:
            return Unfixable(reason="no fix provider configured (FIX_COMMAND)")

        attempts = 0
        feedback = ""
        while self.attempt_cap <= 0 or attempts < self.attempt_cap:
            attempts += 1
            if on_attempt is not None:
                on_attempt(attempts)
            logger.info("Fix attempt %d: %s", attempts, diagnostics.failure.summary)

            proposal = await self.provider.propose(build_fix_prompt(diagnostics, feedback))
            if not proposal.success:
                await self._revert_if_dirty()
                reason = proposal.error or f"fix provider exited {proposal.exit_code}"
                return Unfixable(reason=reason, attempts=attempts)

            if not await asyncio.to_thread(self.git_agent.has_changes):
                return Unfixable(reason="fix provider made no change", attempts=attempts)

            fast = await self.build_service.run_fast_tests()
            if fast.available and not fast.success:
                logger.warning("Fast tests failed after attempt %d, reverting", attempts)
                await asyncio.to_thread(self.git_agent.revert_worktree)
                feedback = fast.error or fast.log_excerpt
                continue

            description = diagnostics.summary()
            try:
                sha = await asyncio.to_thread(self.git_agent.commit_all, description)
            except GitError as exc:
                logger.error("Commit failed: %s", exc)
                return Unfixable(reason=str(exc), attempts=attempts)
            return FixRecord(
                fix_id=f"fix-{uuid.uuid4().hex[:8]}",
                description=description,
                change_ref=sha,
            )

        return Unfixable(reason=f"fix attempt cap of {self.attempt_cap} reached", attempts=attempts)

    async def _revert_if_dirty(self) -> None:
        try:
            if await asyncio.to_thread(self.git_agent.has_changes):
                await asyncio.to_thread(self.git_agent.revert_worktree)
        except GitError as exc:
            logger.error("Could not revert working tree: %s", exc)
