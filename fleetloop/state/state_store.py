"""
State Store
===========
Persists LoopState as one JSON file per project and reads it back on resume.

Writes go to a temporary file in the same directory and are renamed over
the previous snapshot, so a crash mid-write leaves the last committed
state intact.

Stop requests from other processes (the CLI) are plain marker files next
to the state file: ``<project>.stop``.

Ownership: a process driving a project's loop holds an exclusive
``flock`` on ``<project>.lock`` until the loop ends. A second owner, in
this process or another, gets ProjectActiveError. The kernel drops the
lock when the owning process dies, so a crash never leaves it stuck.
"""
import fcntl
import json
import logging
import os
from typing import Dict, List, Optional

from fleetloop.core.config import STATE_DIR
from fleetloop.core.errors import ProjectActiveError
from fleetloop.state.loop_state import LoopState

logger = logging.getLogger(__name__)


class StateStore:

    def __init__(self, state_dir: str = STATE_DIR) -> None:
        self.state_dir = state_dir
        self._locks: Dict[str, int] = {}

    def _path(self, project: str) -> str:
        return os.path.join(self.state_dir, f"{project}.json")

    def _stop_path(self, project: str) -> str:
        return os.path.join(self.state_dir, f"{project}.stop")

    def _lock_path(self, project: str) -> str:
        return os.path.join(self.state_dir, f"{project}.lock")

    def save(self, state: LoopState) -> str:
        """Write the snapshot atomically and return its path."""
        os.makedirs(self.state_dir, exist_ok=True)
        path = self._path(state.project)
        tmp_path = path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(state.model_dump_json(indent=2))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        return path

    def load(self, project: str) -> Optional[LoopState]:
        path = self._path(project)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return LoopState.model_validate_json(f.read())

    def delete(self, project: str) -> None:
        for path in (self._path(project), self._stop_path(project)):
            if os.path.exists(path):
                os.remove(path)

    def list_projects(self) -> List[str]:
        if not os.path.isdir(self.state_dir):
            return []
        return sorted(
            name[:-len(".json")]
            for name in os.listdir(self.state_dir)
            if name.endswith(".json")
        )

    # -------------------------------------------------------------------
    # Cross-process stop requests
    # -------------------------------------------------------------------
    def request_stop(self, project: str) -> str:
        os.makedirs(self.state_dir, exist_ok=True)
        path = self._stop_path(project)
        with open(path, "w", encoding="utf-8") as f:
            json.dump({"project": project}, f)
        logger.info("Stop requested for %s via %s", project, path)
        return path

    def stop_requested(self, project: str) -> bool:
        return os.path.exists(self._stop_path(project))

    def clear_stop(self, project: str) -> None:
        path = self._stop_path(project)
        if os.path.exists(path):
            os.remove(path)

    # -------------------------------------------------------------------
    # Loop ownership
    # -------------------------------------------------------------------
    def acquire(self, project: str) -> None:
        """Take ownership of ``project``'s loop or raise ProjectActiveError."""
        if project in self._locks:
            raise ProjectActiveError(project)
        os.makedirs(self.state_dir, exist_ok=True)
        fd = os.open(self._lock_path(project), os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise ProjectActiveError(project) from None
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._locks[project] = fd
        logger.debug("Acquired loop lock for %s", project)

    def release(self, project: str) -> None:
        fd = self._locks.pop(project, None)
        if fd is None:
            return
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
        logger.debug("Released loop lock for %s", project)

    def owned(self, project: str) -> bool:
        return project in self._locks
