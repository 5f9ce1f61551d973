"""
Loop Orchestrator
=================
The state machine driving one project's build → deploy → test → fix loop.

States:
    SETUP → BUILD → DEPLOY → TEST → (FIX → BUILD …)
    TEST pass → WAIT_SHORT → TEST pass → WAIT_LONG → TEST pass → COMPLETE
    TEST fail or regression while soaking → SETUP (soak reset)
    SETUP below quorum / FIX Unfixable / operator stop → STOPPED

Persistence:
    Every transition appends an activity entry and saves LoopState before
    the next phase starts. A restarted process resumes at the saved
    state: WAIT_* recompute the remaining time from the stored deadline,
    BUILD / DEPLOY / TEST rerun, FIX resumes from the stored failure
    context, a DEPLOY without its artifact on disk goes back to BUILD.

Stop:
    ``request_stop()`` (in process) or a stop-marker file (other process)
    cancels the in-flight phase task and moves the loop to STOPPED.

Fault tolerance:
    Subsystem exceptions inside a phase never crash the loop. They are
    logged and treated as that phase's failure.
"""
import asyncio
import logging
import os
from datetime import timedelta
from typing import Awaitable, Callable, Dict, Optional, Tuple

from fleetloop.agents.test_runner import TestRunner, get_predicate
from fleetloop.core.config import (
    BUILD_MODULE,
    LOOP_QUORUM,
    REGRESSION_TOLERANCE,
    SERVICE_NAME,
    WAIT_LONG_POLL_SECONDS,
    WAIT_LONG_SECONDS,
    WAIT_SHORT_POLL_SECONDS,
    WAIT_SHORT_SECONDS,
)
from fleetloop.core.constants import (
    EXIT_BUILD_FAILURE,
    EXIT_OK,
    EXIT_STOPPED,
    EXIT_TEST_FAILURE,
    EXIT_UNEXPECTED,
    EXIT_UNREACHABLE_FLEET,
    STOP_ERROR,
    STOP_OPERATOR,
    STOP_QUORUM_BREACH,
    STOP_UNFIXABLE,
)
from fleetloop.core.errors import BuildError, NodeNotFoundError
from fleetloop.executor.nat_profile import NatProfileConfigurator
from fleetloop.models.fix_record import FixRecord
from fleetloop.models.node import NodeRole, NodeStatus
from fleetloop.services.notifier import (
    EVENT_COMPLETE,
    EVENT_FIRST_FAILURE,
    EVENT_FIX_COMMITTED,
    EVENT_STOPPED,
    EVENT_WAIT_LONG,
    EVENT_WAIT_SHORT,
    Notifier,
)
from fleetloop.services.proof_writer import ProofWriter
from fleetloop.state.loop_state import FailureContext, LoopPhase, LoopState, utcnow

logger = logging.getLogger(__name__)

# (next phase, activity message, level)
Transition = Tuple[LoopPhase, str, str]

SOAK_SHORT = "short"
SOAK_LONG = "long"

# Seconds between stop-marker checks while a phase runs
_STOP_POLL_SECONDS = 2.0

# Stored stderr is capped to keep the state file small
_MAX_STDERR_CHARS = 20000


class LoopOrchestrator:
    """
    Drives one project's LoopState to COMPLETE or STOPPED.

    Parameters
    ----------
    state : LoopState
        Fresh or loaded state; the orchestrator owns it from now on.
    registry : NodeRegistry
        This run's snapshot of the fleet.
    store : StateStore
        Persistence for the state and stop markers.
    """

    def __init__(
        self,
        state: LoopState,
        registry,
        executor,
        build_service,
        deployer,
        test_runner,
        collector,
        fix_controller,
        store,
        notifier: Optional[Notifier] = None,
        proof_writer: Optional[ProofWriter] = None,
        nat_configurator: Optional[NatProfileConfigurator] = None,
        module: str = BUILD_MODULE,
        service_name: str = SERVICE_NAME,
        quorum: float = LOOP_QUORUM,
        wait_short_seconds: float = WAIT_SHORT_SECONDS,
        wait_long_seconds: float = WAIT_LONG_SECONDS,
        wait_short_poll: float = WAIT_SHORT_POLL_SECONDS,
        wait_long_poll: float = WAIT_LONG_POLL_SECONDS,
        regression_tolerance: float = REGRESSION_TOLERANCE,
        stop_poll_interval: float = _STOP_POLL_SECONDS,
    ) -> None:
        self.state = state
        self.registry = registry
        self.executor = executor
        self.build_service = build_service
        self.deployer = deployer
        self.test_runner = test_runner
        self.collector = collector
        self.fix_controller = fix_controller
        self.store = store
        self.notifier = notifier or Notifier()
        self.proof_writer = proof_writer or ProofWriter()
        self.nat_configurator = nat_configurator or NatProfileConfigurator(executor)
        self.module = module
        self.service_name = service_name
        self.quorum = quorum
        self.wait_short_seconds = wait_short_seconds
        self.wait_long_seconds = wait_long_seconds
        self.wait_short_poll = wait_short_poll
        self.wait_long_poll = wait_long_poll
        self.regression_tolerance = regression_tolerance
        self.stop_poll_interval = stop_poll_interval

        self._stop_event = asyncio.Event()
        self._handlers: Dict[LoopPhase, Callable[[], Awaitable[Transition]]] = {
            LoopPhase.SETUP: self._setup,
            LoopPhase.BUILD: self._build,
            LoopPhase.DEPLOY: self._deploy,
            LoopPhase.TEST: self._test,
            LoopPhase.FIX: self._fix,
            LoopPhase.WAIT_SHORT: self._wait_short,
            LoopPhase.WAIT_LONG: self._wait_long,
        }
        self._restore_node_status()

    @property
    def project(self) -> str:
        return self.state.project

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------
    def request_stop(self) -> None:
        self._stop_event.set()

    def stop_pending(self) -> bool:
        if self.store.stop_requested(self.project):
            self._stop_event.set()
        return self._stop_event.is_set()

    async def run(self) -> LoopState:
        """Run until COMPLETE or STOPPED and return the final state."""
        logger.info("Loop %s starting in %s", self.project, self.state.state.value)
        if self.state.terminal:
            return self.state

        watcher = asyncio.create_task(self._watch_stop_marker())
        try:
            while not self.state.terminal:
                if self.stop_pending():
                    await self._stop(STOP_OPERATOR, "stop requested by operator")
                    break

                phase_task = asyncio.create_task(self.step())
                stop_wait = asyncio.create_task(self._stop_event.wait())
                done, _ = await asyncio.wait(
                    {phase_task, stop_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                if phase_task in done:
                    stop_wait.cancel()
                    phase_task.result()
                    continue

                # stop arrived mid-phase; the phase never commits a transition
                phase_task.cancel()
                try:
                    await phase_task
                except asyncio.CancelledError:
                    pass
                logger.info("Loop %s: %s cancelled by stop request", self.project, self.state.state.value)
        finally:
            watcher.cancel()

        logger.info("Loop %s finished in %s (%s)", self.project, self.state.state.value,
                    self.state.stop_reason or "ok")
        return self.state

    async def step(self) -> LoopPhase:
        """Run the current phase once and commit its transition."""
        phase = self.state.state
        handler = self._handlers.get(phase)
        if handler is None:
            return phase
        try:
            next_phase, message, level = await handler()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Phase %s failed for %s", phase.value, self.project)
            next_phase, message, level = self._phase_error(phase, exc)
        await self._transition(next_phase, message, level)
        return next_phase

    def exit_code(self) -> int:
        """Operator-facing exit code for the current state."""
        state = self.state
        if state.state == LoopPhase.COMPLETE:
            return EXIT_OK
        if state.state != LoopPhase.STOPPED:
            return EXIT_UNEXPECTED
        if state.stop_reason == STOP_QUORUM_BREACH:
            return EXIT_UNREACHABLE_FLEET
        if state.stop_reason == STOP_OPERATOR:
            return EXIT_STOPPED
        if state.stop_reason == STOP_UNFIXABLE:
            failure = state.pending_failure
            if failure is not None and failure.phase == LoopPhase.BUILD:
                return EXIT_BUILD_FAILURE
            return EXIT_TEST_FAILURE
        return EXIT_UNEXPECTED

    # -------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------
    async def _transition(self, next_phase: LoopPhase, message: str, level: str = "info") -> None:
        previous = self.state.state
        self.state.state = next_phase
        self.state.last_transition_at = utcnow()
        self.state.node_status = self.registry.status_map()
        self.state.log(f"{previous.value} -> {next_phase.value}: {message}", level)
        self.store.save(self.state)
        log = logger.warning if level in ("warning", "error") else logger.info
        log("[%s] %s -> %s: %s", self.project, previous.value, next_phase.value, message)
        await self._notify_entry(next_phase, message)

    async def _notify_entry(self, phase: LoopPhase, message: str) -> None:
        if phase == LoopPhase.WAIT_SHORT:
            await self.notifier.publish(EVENT_WAIT_SHORT, self.project, message)
        elif phase == LoopPhase.WAIT_LONG:
            await self.notifier.publish(EVENT_WAIT_LONG, self.project, message)
        elif phase == LoopPhase.COMPLETE:
            await self.notifier.publish(EVENT_COMPLETE, self.project, message,
                                        proof_path=self.state.proof_path)
        elif phase == LoopPhase.STOPPED:
            await self.notifier.publish(EVENT_STOPPED, self.project, message,
                                        reason=self.state.stop_reason)
        elif phase == LoopPhase.FIX and not self.state.first_failure_seen:
            self.state.first_failure_seen = True
            self.store.save(self.state)
            await self.notifier.publish(EVENT_FIRST_FAILURE, self.project, message)

    async def _stop(self, reason: str, message: str) -> None:
        self.state.stop_reason = reason
        await self._transition(LoopPhase.STOPPED, message, "error" if reason != STOP_OPERATOR else "warning")
        self.store.clear_stop(self.project)

    def _phase_error(self, phase: LoopPhase, exc: Exception) -> Transition:
        detail = f"{type(exc).__name__}: {exc}"
        if phase in (LoopPhase.SETUP, LoopPhase.FIX):
            self.state.stop_reason = STOP_ERROR
            return LoopPhase.STOPPED, f"{phase.value} failed: {detail}", "error"
        self.state.pending_failure = FailureContext(phase=phase, summary=f"{phase.value} failed: {detail}")
        return LoopPhase.FIX, f"{phase.value} failed: {detail}", "error"

    def _restore_node_status(self) -> None:
        for name, status in self.state.node_status.items():
            try:
                self.registry.update_status(name, status)
            except NodeNotFoundError:
                logger.warning("Node %s from saved state is not in the inventory", name)

    async def _watch_stop_marker(self) -> None:
        while not self._stop_event.is_set():
            await asyncio.sleep(self.stop_poll_interval)
            self.stop_pending()

    # -------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------
    async def _setup(self) -> Transition:
        state = self.state
        state.soak_stage = ""
        state.soak_reference = None
        state.wait_deadline = None
        state.artifact_path = ""

        await self.registry.probe(self.executor, self.service_name)

        nat_nodes = [
            n for n in self.registry.reachable_nodes() if n.role == NodeRole.NAT_EMULATED
        ]
        if nat_nodes:
            results = await asyncio.gather(*(
                self.nat_configurator.configure_nat_profile(n, n.nat_profile) for n in nat_nodes
            ))
            for result in results:
                if result.success:
                    self.registry.record_nat_profile(result.node, result.profile)
                else:
                    self.registry.update_status(result.node, NodeStatus.DEGRADED)
                    state.log(f"NAT profile {result.profile.value} not applied on {result.node}: "
                              f"{result.detail}", "warning")

        reachable = len(self.registry.reachable_nodes())
        total = len(self.registry.list_nodes())
        summary = f"{reachable}/{total} nodes reachable (quorum {self.quorum:.0%})"
        if self.registry.quorum_met(self.quorum):
            return LoopPhase.BUILD, summary, "info"
        state.stop_reason = STOP_QUORUM_BREACH
        return LoopPhase.STOPPED, f"quorum breach: {summary}", "error"

    async def _build(self) -> Transition:
        state = self.state
        state.build_count += 1
        try:
            artifact = await self.build_service.build(self.module)
        except BuildError as exc:
            state.pending_failure = FailureContext(
                phase=LoopPhase.BUILD,
                summary=str(exc),
                stderr=exc.stderr[-_MAX_STDERR_CHARS:],
                build_diagnostics=exc.diagnostics,
            )
            return LoopPhase.FIX, f"build failed: {exc}", "error"
        state.artifact_path = str(artifact)
        return LoopPhase.DEPLOY, f"built {artifact}", "info"

    async def _deploy(self) -> Transition:
        state = self.state
        if not state.artifact_path or not os.path.exists(state.artifact_path):
            return LoopPhase.BUILD, "artifact missing, rebuilding", "warning"

        state.deploy_count += 1
        report = await self.deployer.deploy(state.artifact_path, self.registry.list_nodes())
        summary = (
            f"{len(report.healthy_nodes)}/{len(report.per_node)} nodes healthy "
            f"(quorum {self.quorum:.0%})"
        )
        if report.success:
            if report.failed_nodes:
                state.log(f"deploy failed on {', '.join(report.failed_nodes)} (marked degraded)", "warning")
            return LoopPhase.TEST, summary, "info"

        errors = [
            f"{name}: {outcome.stage}: {outcome.error}"
            for name, outcome in sorted(report.per_node.items()) if not outcome.healthy
        ]
        state.pending_failure = FailureContext(
            phase=LoopPhase.DEPLOY,
            summary=f"deploy below quorum: {summary}",
            stderr="\n".join(errors)[-_MAX_STDERR_CHARS:],
            failed_nodes=report.failed_nodes,
        )
        return LoopPhase.FIX, f"deploy below quorum: {summary}", "error"

    async def _test(self) -> Transition:
        state = self.state
        plan = state.plan
        state.test_count += 1
        state.last_test_at = utcnow()

        previous = state.last_test_result
        result = await self.test_runner.run(
            plan, self.registry.list_nodes(), previous,
            get_predicate(plan.success_criteria.predicate),
        )
        state.last_test_result = result
        failing = [r.metric for r in result.criteria_rows if not r.passed]

        if state.soak_stage:
            regressions = []
            if state.soak_reference is not None:
                regressions = TestRunner.regressions(
                    state.soak_reference, result, self.regression_tolerance
                )
            if not result.passed or regressions:
                reasons = [f"{r.metric} {r.reference:g} -> {r.current if r.current is not None else 'missing'}"
                           for r in regressions]
                if not result.passed:
                    reasons.insert(0, f"criteria failed: {', '.join(failing) or 'no checks'}")
                stage = state.soak_stage
                state.soak_stage = ""
                state.soak_reference = None
                state.wait_deadline = None
                return LoopPhase.SETUP, f"regression during {stage} soak: {'; '.join(reasons)}", "warning"

        if not result.passed:
            state.pending_failure = FailureContext(
                phase=LoopPhase.TEST,
                summary=f"criteria not met: {', '.join(failing) or 'no checks attempted'}",
                failed_nodes=sorted({k.split(':', 1)[1] for k in result.node_errors}),
                test_result=result,
            )
            return LoopPhase.FIX, state.pending_failure.summary, "warning"

        if not state.soak_stage:
            state.soak_stage = SOAK_SHORT
            state.soak_reference = result
            state.wait_deadline = utcnow() + timedelta(seconds=self.wait_short_seconds)
            return LoopPhase.WAIT_SHORT, f"criteria met, soaking until {state.wait_deadline.isoformat()}", "info"

        if state.soak_stage == SOAK_SHORT:
            state.soak_stage = SOAK_LONG
            state.soak_reference = result
            state.wait_deadline = utcnow() + timedelta(seconds=self.wait_long_seconds)
            return LoopPhase.WAIT_LONG, f"short soak passed, soaking until {state.wait_deadline.isoformat()}", "info"

        state.wait_deadline = None
        evidence = await self.collector.collect(self.registry.list_nodes(), plan.evidence_types())
        try:
            state.proof_path = self.proof_writer.write_proof(state, result, evidence)
        except OSError as exc:
            logger.error("Proof bundle for %s could not be written: %s", self.project, exc)
            state.log(f"proof bundle not written: {exc}", "error")
        return LoopPhase.COMPLETE, f"long soak passed, proof at {state.proof_path or 'n/a'}", "info"

    async def _fix(self) -> Transition:
        state = self.state
        failure = state.pending_failure or FailureContext(
            phase=LoopPhase.FIX, summary="no failure context recorded"
        )
        diagnostics = await self.fix_controller.gather_diagnostics(failure, self.registry.list_nodes())

        def on_attempt(number: int) -> None:
            state.fix_attempts += 1
            state.log(f"fix attempt {number} ({state.fix_attempts} total)")
            self.store.save(state)

        outcome = await self.fix_controller.attempt_fix(diagnostics, on_attempt)
        if isinstance(outcome, FixRecord):
            state.applied_fixes.append(outcome)
            state.pending_failure = None
            await self.notifier.publish(
                EVENT_FIX_COMMITTED, self.project, outcome.description, change_ref=outcome.change_ref
            )
            return LoopPhase.BUILD, f"fix {outcome.change_ref[:12]} committed: {outcome.description}", "info"

        state.stop_reason = STOP_UNFIXABLE
        return LoopPhase.STOPPED, f"unfixable after {outcome.attempts} attempts: {outcome.reason}", "error"

    async def _wait(self, duration: float, poll: float) -> Transition:
        state = self.state
        if state.wait_deadline is None:
            state.wait_deadline = utcnow() + timedelta(seconds=duration)
            self.store.save(state)
        while True:
            remaining = (state.wait_deadline - utcnow()).total_seconds()
            if remaining <= 0:
                return LoopPhase.TEST, "soak window elapsed", "info"
            logger.debug("[%s] %s: %.0fs remaining", self.project, state.state.value, remaining)
            await asyncio.sleep(min(poll, remaining))

    async def _wait_short(self) -> Transition:
        return await self._wait(self.wait_short_seconds, self.wait_short_poll)

    async def _wait_long(self) -> Transition:
        return await self._wait(self.wait_long_seconds, self.wait_long_poll)
