"""
Run endpoints
=============
POST /runs                      start (or resume) a project's loop
GET  /runs/{project}            full LoopState
POST /runs/{project}/stop       stop a running loop
GET  /runs/{project}/logs       activity log tail
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ValidationError

from fleetloop.api.deps import get_session_manager
from fleetloop.core.errors import ProjectActiveError
from fleetloop.models.test_plan import TestPlan
from fleetloop.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["Runs"])


# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------
class StartRunRequest(BaseModel):
    plan: dict
    resume: bool = True


class RunSummary(BaseModel):
    project: str
    state: str
    fix_attempts: int
    test_count: int
    last_transition_at: datetime
    wait_deadline: Optional[datetime] = None
    stop_reason: str = ""
    proof_path: str = ""


class LogEntryOut(BaseModel):
    timestamp: datetime
    state: str
    level: str
    message: str


def summarize(state) -> RunSummary:
    return RunSummary(
        project=state.project,
        state=state.state.value,
        fix_attempts=state.fix_attempts,
        test_count=state.test_count,
        last_transition_at=state.last_transition_at,
        wait_deadline=state.wait_deadline,
        stop_reason=state.stop_reason,
        proof_path=state.proof_path,
    )


@router.post("", response_model=RunSummary, status_code=202)
async def start_run(req: StartRunRequest, manager: SessionManager = Depends(get_session_manager)):
    try:
        plan = TestPlan.model_validate(req.plan)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    try:
        state = await manager.start(plan, resume=req.resume)
    except ProjectActiveError as e:
        raise HTTPException(status_code=409, detail=str(e))
    logger.info("Started loop for %s via API", plan.project)
    return summarize(state)


@router.get("/{project}")
async def get_run(project: str, manager: SessionManager = Depends(get_session_manager)):
    state = manager.get_state(project)
    if state is None:
        raise HTTPException(status_code=404, detail=f"Unknown project: {project}")
    return state.model_dump(mode="json")


@router.post("/{project}/stop")
async def stop_run(project: str, manager: SessionManager = Depends(get_session_manager)):
    if not manager.stop(project):
        raise HTTPException(status_code=404, detail=f"No running loop for {project}")
    return {"project": project, "stop_requested": True}


@router.get("/{project}/logs", response_model=List[LogEntryOut])
async def run_logs(project: str, limit: int = Query(100, ge=0),
                   manager: SessionManager = Depends(get_session_manager)):
    if manager.get_state(project) is None:
        raise HTTPException(status_code=404, detail=f"Unknown project: {project}")
    return [
        LogEntryOut(timestamp=e.timestamp, state=e.state.value, level=e.level, message=e.message)
        for e in manager.logs(project, limit)
    ]
