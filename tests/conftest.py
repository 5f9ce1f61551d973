"""
Shared test helpers: node factories and a scripted in-memory executor.
"""
import pytest

from fleetloop.executor.remote_executor import CommandResult
from fleetloop.fleet.node_registry import NodeRegistry
from fleetloop.models.node import Node, NodeStatus


def make_node(name: str, **kwargs) -> Node:
    kwargs.setdefault("hostname", f"{name}.example.net")
    kwargs.setdefault("ip", "10.0.0.1")
    return Node(name=name, **kwargs)


def make_fleet(count: int = 10, status: NodeStatus = NodeStatus.UNREACHABLE):
    return [
        make_node(f"node-{i}", ip=f"10.0.0.{i}", status=status)
        for i in range(1, count + 1)
    ]


def result(stdout: str = "", exit_code: int = 0, stderr: str = "") -> CommandResult:
    return CommandResult(stdout=stdout, stderr=stderr, exit_code=exit_code)


class FakeExecutor:
    """
    Stands in for RemoteExecutor. ``handler(node, command)`` returns a
    CommandResult or an exception instance to raise.
    """

    def __init__(self, handler=None):
        self.handler = handler or (lambda node, command: result())
        self.calls = []
        self.copies = []

    async def run(self, node, command, timeout=None):
        self.calls.append((node.name, command))
        outcome = self.handler(node, command)
        if isinstance(outcome, Exception):
            raise outcome
        outcome.node = node.name
        outcome.command = command
        return outcome

    async def copy_to(self, node, local_path, remote_path, guard_process=None, timeout=None):
        self.calls.append((node.name, f"copy {local_path} {remote_path}"))
        self.copies.append((node.name, local_path, remote_path, guard_process))

    def commands_for(self, name):
        return [c for n, c in self.calls if n == name]


@pytest.fixture
def fleet():
    return make_fleet()


@pytest.fixture
def registry(fleet):
    return NodeRegistry(fleet)
