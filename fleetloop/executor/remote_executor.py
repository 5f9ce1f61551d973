"""
Remote Executor
===============
Runs commands and file transfers against a named node over ssh / scp.

BOUNDARY RULES:
    - Executor ONLY executes. It never decides whether a node is healthy.
    - One outstanding operation per node (per-node asyncio lock).
    - Distinct nodes are independent: no ordering between them.

ADDRESSING:
    Each operation tries the node's hostname first and its direct IP
    second. ssh exits with 255 when the channel cannot be established;
    that (and only that) moves on to the next address.

STOP-BEFORE-OVERWRITE:
    ``copy_to(..., guard_process=name)`` refuses to write while ``name``
    is still running on the node. Callers stop the process and confirm
    its absence first.

CANCELLATION:
    Timed-out or cancelled operations kill the local ssh/scp child. Whether
    the remote command dies with it is best-effort.
"""
import asyncio
import logging
import shlex
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from fleetloop.core.config import (
    SSH_USER,
    SSH_KEY,
    SSH_CONNECT_TIMEOUT,
    SERVICE_TIMEOUT,
    TRANSFER_TIMEOUT,
)
from fleetloop.core.errors import RemoteConnectError, RemoteTimeoutError, TransferError
from fleetloop.models.node import Node

logger = logging.getLogger(__name__)

# ssh's own exit status for connection-level failures
_SSH_CONNECT_FAILURE = 255


@dataclass
class CommandResult:
    """Structured output of one remote command."""
    node: str = ""
    command: str = ""
    stdout: str = ""
    stderr: str = ""
    exit_code: int = -1
    address: str = ""
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0


async def _exec(argv: List[str], timeout: float) -> Tuple[int, str, str]:
    """Run a local process, killing it on timeout or cancellation."""
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except (asyncio.TimeoutError, asyncio.CancelledError):
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise
    return (
        proc.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


class RemoteExecutor:
    """
    ssh/scp front-end with per-node serialisation.

    Parameters
    ----------
    ssh_user : str
        Login user on every node.
    ssh_key : str
        Optional identity file.
    connect_timeout : int
        Seconds allowed to establish the channel on one address.
    default_timeout : int
        Command timeout when the caller does not pass one.
    """

    def __init__(
        self,
        ssh_user: str = SSH_USER,
        ssh_key: str = SSH_KEY,
        connect_timeout: int = SSH_CONNECT_TIMEOUT,
        default_timeout: int = SERVICE_TIMEOUT,
    ) -> None:
        self.ssh_user = ssh_user
        self.ssh_key = ssh_key
        self.connect_timeout = connect_timeout
        self.default_timeout = default_timeout
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, node: Node) -> asyncio.Lock:
        lock = self._locks.get(node.name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[node.name] = lock
        return lock

    def _ssh_options(self) -> List[str]:
        opts = [
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", "StrictHostKeyChecking=accept-new",
        ]
        if self.ssh_key:
            opts.extend(["-i", self.ssh_key])
        return opts

    def _target(self, address: str) -> str:
        return f"{self.ssh_user}@{address}" if self.ssh_user else address

    # -------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------
    async def run(self, node: Node, command: str, timeout: Optional[float] = None) -> CommandResult:
        """
        Execute ``command`` on ``node``.

        Returns a CommandResult for any exit code the remote command
        produced. Raises RemoteTimeoutError when the command outlives
        ``timeout`` and RemoteConnectError when no address accepted the
        connection.
        """
        async with self._lock_for(node):
            return await self._run_unlocked(node, command, timeout or self.default_timeout)

    async def _run_unlocked(self, node: Node, command: str, timeout: float) -> CommandResult:
        errors: List[str] = []
        for address in node.addresses:
            argv = ["ssh", *self._ssh_options(), self._target(address), command]
            start = time.monotonic()
            try:
                rc, stdout, stderr = await _exec(argv, timeout)
            except asyncio.TimeoutError:
                logger.warning("[%s] timed out after %ss: %s", node.name, timeout, command)
                raise RemoteTimeoutError(node.name, command, timeout)
            except OSError as exc:
                # ssh binary missing or not executable
                raise RemoteConnectError(node.name, str(exc))

            if rc == _SSH_CONNECT_FAILURE:
                errors.append(f"{address}: {stderr.strip() or 'connection failed'}")
                logger.info("[%s] channel to %s failed, trying next address", node.name, address)
                continue

            return CommandResult(
                node=node.name,
                command=command,
                stdout=stdout,
                stderr=stderr,
                exit_code=rc,
                address=address,
                duration_seconds=round(time.monotonic() - start, 3),
            )

        raise RemoteConnectError(node.name, "; ".join(errors))

    # -------------------------------------------------------------------
    # File transfer
    # -------------------------------------------------------------------
    async def copy_to(
        self,
        node: Node,
        local_path: str,
        remote_path: str,
        guard_process: Optional[str] = None,
        timeout: float = TRANSFER_TIMEOUT,
    ) -> None:
        """
        Upload ``local_path`` to ``remote_path`` on ``node``.

        Raises TransferError when the guard process is still running or
        when every address failed.
        """
        async with self._lock_for(node):
            if guard_process:
                try:
                    check = await self._run_unlocked(
                        node, f"pgrep -x {shlex.quote(guard_process)}", self.default_timeout
                    )
                except (RemoteConnectError, RemoteTimeoutError) as exc:
                    raise TransferError(node.name, f"guard check for {guard_process} failed: {exc}") from exc
                if check.exit_code == 0:
                    raise TransferError(
                        node.name,
                        f"refusing to overwrite {remote_path}: {guard_process} still running",
                    )

            errors: List[str] = []
            for address in node.addresses:
                argv = [
                    "scp", "-q", *self._ssh_options(),
                    local_path, f"{self._target(address)}:{remote_path}",
                ]
                try:
                    rc, _, stderr = await _exec(argv, timeout)
                except asyncio.TimeoutError:
                    raise TransferError(node.name, f"scp timed out after {timeout}s")
                except OSError as exc:
                    raise TransferError(node.name, str(exc))
                if rc == 0:
                    logger.info("[%s] uploaded %s -> %s via %s", node.name, local_path, remote_path, address)
                    return
                errors.append(f"{address}: exit {rc} {stderr.strip()}")

            raise TransferError(node.name, "; ".join(errors))
