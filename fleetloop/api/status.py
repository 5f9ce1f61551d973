"""
GET /status
Progress polling: one summary per known project.
"""
from typing import List

from fastapi import APIRouter, Depends

from fleetloop.api.deps import get_session_manager
from fleetloop.api.runs import RunSummary, summarize
from fleetloop.services.session_manager import SessionManager

router = APIRouter()


@router.get("/status", response_model=List[RunSummary])
async def get_status(manager: SessionManager = Depends(get_session_manager)):
    return [summarize(s) for s in manager.status()]
