"""
Errors
======
Exception hierarchy shared by all components.

Per-node failures (connect, timeout, transfer) are raised by the executor
and absorbed by the fleet-level callers, which turn them into node status.
"""
from typing import List, Optional


class FleetLoopError(Exception):
    """Base class for all fleetloop errors."""


class NodeNotFoundError(FleetLoopError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown node: {name}")


class RemoteConnectError(FleetLoopError):
    """The remote channel could not be established on any address."""

    def __init__(self, node: str, detail: str = "") -> None:
        self.node = node
        self.detail = detail
        super().__init__(f"Cannot connect to {node}: {detail}".rstrip(": "))


class RemoteTimeoutError(FleetLoopError):
    def __init__(self, node: str, command: str, timeout: float) -> None:
        self.node = node
        self.command = command
        self.timeout = timeout
        super().__init__(f"Command on {node} timed out after {timeout}s: {command}")


class TransferError(FleetLoopError):
    def __init__(self, node: str, detail: str) -> None:
        self.node = node
        self.detail = detail
        super().__init__(f"Transfer to {node} failed: {detail}")


class BuildError(FleetLoopError):
    """Local build failed. Carries stderr and parsed compiler diagnostics."""

    def __init__(self, message: str, stderr: str = "", diagnostics: Optional[List] = None) -> None:
        self.stderr = stderr
        self.diagnostics = diagnostics or []
        super().__init__(message)


class InvalidPlanError(FleetLoopError):
    pass


class ProjectActiveError(FleetLoopError):
    def __init__(self, project: str) -> None:
        self.project = project
        super().__init__(f"Project {project} already has an active loop")
