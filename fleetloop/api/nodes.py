"""
Node endpoints
==============
GET  /nodes                  inventory with last known status
POST /nodes/{name}/diagnose  probe + evidence + log analysis for one node
"""
import logging

from fastapi import APIRouter, Depends, HTTPException

from fleetloop.api.deps import get_session_manager
from fleetloop.core.errors import NodeNotFoundError
from fleetloop.services.session_manager import SessionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/nodes", tags=["Nodes"])


@router.get("")
async def list_nodes(manager: SessionManager = Depends(get_session_manager)):
    return [n.model_dump(mode="json") for n in manager.list_nodes()]


@router.post("/{name}/diagnose")
async def diagnose_node(name: str, manager: SessionManager = Depends(get_session_manager)):
    try:
        return await manager.diagnose(name)
    except NodeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
