"""
Shared dependencies for the API routers.
"""
from typing import Optional

from fleetloop.services.session_manager import SessionManager

_manager: Optional[SessionManager] = None


def get_session_manager() -> SessionManager:
    global _manager
    if _manager is None:
        _manager = SessionManager()
    return _manager
