"""
Session Manager
===============
Owns every project's loop in this process: one active LoopOrchestrator
per project, each on its own registry snapshot, all sharing one
RemoteExecutor (so the one-operation-per-node rule holds fleet-wide).

Operator commands map 1:1 onto methods here:
    start(plan) · status() · stop(project) · logs(project)
    diagnose(node) · list_nodes()
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from fleetloop.agents.deployment_manager import DeploymentManager
from fleetloop.agents.diagnostic_collector import DiagnosticCollector
from fleetloop.agents.fix_controller import FixCycleController
from fleetloop.agents.orchestrator import LoopOrchestrator
from fleetloop.agents.test_runner import TestRunner
from fleetloop.core.config import FLEET_INVENTORY
from fleetloop.core.errors import ProjectActiveError
from fleetloop.executor.build_service import BuildService
from fleetloop.executor.remote_executor import RemoteExecutor
from fleetloop.fleet.node_registry import NodeRegistry
from fleetloop.models.node import Node
from fleetloop.models.test_plan import TestPlan
from fleetloop.parser.log_analyzer import LogAnalyzer
from fleetloop.services.notifier import Notifier
from fleetloop.state.loop_state import ActivityEntry, LoopState
from fleetloop.state.state_store import StateStore

logger = logging.getLogger(__name__)


class SessionManager:

    def __init__(
        self,
        inventory_path: str = FLEET_INVENTORY,
        store: Optional[StateStore] = None,
        registry: Optional[NodeRegistry] = None,
        executor: Optional[RemoteExecutor] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.inventory_path = inventory_path
        self.store = store or StateStore()
        self._registry = registry
        self.executor = executor or RemoteExecutor()
        self.notifier = notifier or Notifier()
        self._loops: Dict[str, LoopOrchestrator] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def inventory(self) -> NodeRegistry:
        """The shared read-only inventory (loaded on first use)."""
        if self._registry is None:
            self._registry = NodeRegistry.from_file(self.inventory_path)
        return self._registry

    def build_orchestrator(self, state: LoopState) -> LoopOrchestrator:
        registry = self.inventory().snapshot()
        build_service = BuildService()
        collector = DiagnosticCollector(self.executor)
        return LoopOrchestrator(
            state=state,
            registry=registry,
            executor=self.executor,
            build_service=build_service,
            deployer=DeploymentManager(self.executor, registry),
            test_runner=TestRunner(self.executor),
            collector=collector,
            fix_controller=FixCycleController(collector, build_service),
            store=self.store,
            notifier=self.notifier,
        )

    def is_active(self, project: str) -> bool:
        task = self._tasks.get(project)
        return task is not None and not task.done()

    # -------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------
    def prepare(self, plan: TestPlan, resume: bool = True) -> LoopOrchestrator:
        """
        Create (or resume) the project's loop without starting it.

        Takes the project's loop lock; whoever runs the returned
        orchestrator must call ``release(project)`` when it ends
        (``start`` does this itself).
        """
        if self.is_active(plan.project):
            raise ProjectActiveError(plan.project)
        self.store.acquire(plan.project)
        try:
            state = self.store.load(plan.project) if resume else None
            if state is not None and not state.terminal and state.plan == plan:
                logger.info("Resuming %s at %s", plan.project, state.state.value)
            else:
                if state is not None and not state.terminal:
                    logger.warning("Plan for %s changed, discarding saved state at %s",
                                   plan.project, state.state.value)
                state = LoopState(project=plan.project, plan=plan)
                state.log("loop created")

            self.store.clear_stop(plan.project)
            self.store.save(state)
            orchestrator = self.build_orchestrator(state)
        except Exception:
            self.store.release(plan.project)
            raise
        self._loops[plan.project] = orchestrator
        return orchestrator

    def release(self, project: str) -> None:
        self.store.release(project)

    async def start(self, plan: TestPlan, resume: bool = True) -> LoopState:
        """Start the loop in the background and return its current state."""
        orchestrator = self.prepare(plan, resume)
        task = asyncio.create_task(orchestrator.run(), name=f"loop-{plan.project}")
        task.add_done_callback(lambda t, p=plan.project: self._finished(p, t))
        self._tasks[plan.project] = task
        return orchestrator.state

    def _finished(self, project: str, task: asyncio.Task) -> None:
        self._tasks.pop(project, None)
        self.release(project)
        if task.cancelled():
            logger.warning("Loop task for %s was cancelled", project)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Loop task for %s crashed: %s", project, exc, exc_info=exc)

    def get_state(self, project: str) -> Optional[LoopState]:
        orchestrator = self._loops.get(project)
        if orchestrator is not None:
            return orchestrator.state
        return self.store.load(project)

    def status(self) -> List[LoopState]:
        projects = set(self.store.list_projects()) | set(self._loops)
        states = [self.get_state(p) for p in sorted(projects)]
        return [s for s in states if s is not None]

    def stop(self, project: str) -> bool:
        """
        Ask a loop to stop. In-process loops are signalled directly; loops
        owned by another process are signalled through the stop marker.
        Returns False when there is nothing to stop.
        """
        if self.is_active(project):
            self._loops[project].request_stop()
            return True
        state = self.store.load(project)
        if state is None or state.terminal:
            return False
        self.store.request_stop(project)
        return True

    def logs(self, project: str, limit: int = 100) -> List[ActivityEntry]:
        state = self.get_state(project)
        if state is None:
            return []
        return state.activity[-limit:] if limit > 0 else list(state.activity)

    def list_nodes(self) -> List[Node]:
        return self.inventory().list_nodes()

    async def diagnose(self, name: str) -> Dict[str, Any]:
        """Probe one node and collect its evidence; read-only."""
        registry = self.inventory().snapshot()
        node = registry.get_node(name)
        status = await registry.probe_node(self.executor, name)
        bundle = await DiagnosticCollector(self.executor).collect([node])
        analysis = LogAnalyzer().investigate(bundle.all_log_lines())
        evidence = bundle.nodes.get(name)
        return {
            "node": node.model_dump(mode="json"),
            "status": status.value,
            "gap": bool(evidence and evidence.gap),
            "notes": evidence.notes if evidence else [],
            "log_lines": len(evidence.log_lines) if evidence else 0,
            "connection_report": evidence.connection_report if evidence else None,
            "metrics_error": bundle.metrics_error,
            "summary": analysis.summary(),
            "suggestions": [
                {"priority": s.priority, "component": s.component, "description": s.description}
                for s in analysis.suggestions
            ],
        }
