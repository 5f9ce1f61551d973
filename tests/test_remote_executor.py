"""
RemoteExecutor tests. The local ssh/scp child is replaced by patching
``_exec``; nothing leaves the machine.
"""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from fleetloop.core.errors import RemoteConnectError, RemoteTimeoutError, TransferError
from fleetloop.executor.remote_executor import RemoteExecutor

from conftest import make_node

EXEC = "fleetloop.executor.remote_executor._exec"


@pytest.fixture
def executor():
    return RemoteExecutor(ssh_user="root", ssh_key="", connect_timeout=5, default_timeout=30)


@pytest.fixture
def node():
    return make_node("saorsa-3", hostname="saorsa-3.example.net", ip="147.182.234.192")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
def test_run_uses_hostname_first(executor, node):
    with patch(EXEC, new=AsyncMock(return_value=(0, "active\n", ""))) as mock_exec:
        out = asyncio.run(executor.run(node, "systemctl is-active svc"))

    assert out.exit_code == 0
    assert out.stdout == "active\n"
    assert out.address == "saorsa-3.example.net"
    argv = mock_exec.call_args.args[0]
    assert argv[0] == "ssh"
    assert "root@saorsa-3.example.net" in argv
    assert argv[-1] == "systemctl is-active svc"


def test_run_falls_back_to_ip_on_connect_failure(executor, node):
    mock_exec = AsyncMock(side_effect=[
        (255, "", "ssh: Could not resolve hostname"),
        (0, "ok", ""),
    ])
    with patch(EXEC, new=mock_exec):
        out = asyncio.run(executor.run(node, "uptime"))

    assert out.address == "147.182.234.192"
    assert mock_exec.await_count == 2


def test_remote_command_failure_is_not_a_fallback(executor, node):
    with patch(EXEC, new=AsyncMock(return_value=(3, "", "inactive"))) as mock_exec:
        out = asyncio.run(executor.run(node, "systemctl is-active svc"))

    assert out.exit_code == 3
    assert out.success is False
    assert mock_exec.await_count == 1


def test_all_addresses_fail_raises_connect_error(executor, node):
    with patch(EXEC, new=AsyncMock(return_value=(255, "", "Connection refused"))):
        with pytest.raises(RemoteConnectError, match="Connection refused"):
            asyncio.run(executor.run(node, "uptime"))


def test_timeout_raises(executor, node):
    with patch(EXEC, new=AsyncMock(side_effect=asyncio.TimeoutError())):
        with pytest.raises(RemoteTimeoutError):
            asyncio.run(executor.run(node, "sleep 999", timeout=1))


def test_missing_ssh_binary(executor, node):
    with patch(EXEC, new=AsyncMock(side_effect=FileNotFoundError("ssh"))):
        with pytest.raises(RemoteConnectError):
            asyncio.run(executor.run(node, "uptime"))


def test_ssh_key_passed_when_configured(node):
    executor = RemoteExecutor(ssh_key="/keys/fleet")
    with patch(EXEC, new=AsyncMock(return_value=(0, "", ""))) as mock_exec:
        asyncio.run(executor.run(node, "true"))
    argv = mock_exec.call_args.args[0]
    assert argv[argv.index("-i") + 1] == "/keys/fleet"


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------
def _tracking_exec():
    state = {"active": {}, "peak": {}}

    async def fake_exec(argv, timeout):
        target = argv[-2]
        state["active"][target] = state["active"].get(target, 0) + 1
        state["peak"][target] = max(state["peak"].get(target, 0), state["active"][target])
        await asyncio.sleep(0.01)
        state["active"][target] -= 1
        return 0, "", ""

    return fake_exec, state


def test_one_operation_per_node(executor, node):
    fake_exec, state = _tracking_exec()

    async def run_test():
        await asyncio.gather(*(executor.run(node, f"echo {i}") for i in range(5)))

    with patch(EXEC, new=fake_exec):
        asyncio.run(run_test())
    assert state["peak"]["root@saorsa-3.example.net"] == 1


def test_distinct_nodes_run_concurrently(executor):
    a = make_node("a", hostname="a.example.net", ip="")
    b = make_node("b", hostname="b.example.net", ip="")
    order = []

    async def fake_exec(argv, timeout):
        order.append(("start", argv[-2]))
        await asyncio.sleep(0.01)
        order.append(("end", argv[-2]))
        return 0, "", ""

    async def run_test():
        await asyncio.gather(executor.run(a, "x"), executor.run(b, "y"))

    with patch(EXEC, new=fake_exec):
        asyncio.run(run_test())
    assert [kind for kind, _ in order[:2]] == ["start", "start"]


# ---------------------------------------------------------------------------
# Transfers
# ---------------------------------------------------------------------------
def test_copy_refused_while_guard_process_runs(executor, node):
    mock_exec = AsyncMock(return_value=(0, "4242\n", ""))
    with patch(EXEC, new=mock_exec):
        with pytest.raises(TransferError, match="still running"):
            asyncio.run(executor.copy_to(node, "/tmp/bin", "/opt/qt.new", guard_process="quic-test"))

    # only the pgrep ran; scp never started
    assert mock_exec.await_count == 1
    assert mock_exec.call_args.args[0][0] == "ssh"


def test_copy_guard_check_connect_failure_is_transfer_error(executor, node):
    mock_exec = AsyncMock(return_value=(255, "", "Connection refused"))
    with patch(EXEC, new=mock_exec):
        with pytest.raises(TransferError, match="guard check"):
            asyncio.run(executor.copy_to(node, "/tmp/bin", "/opt/qt.new", guard_process="quic-test"))
    assert all(c.args[0][0] == "ssh" for c in mock_exec.call_args_list)


def test_copy_guard_check_timeout_is_transfer_error(executor, node):
    mock_exec = AsyncMock(side_effect=asyncio.TimeoutError())
    with patch(EXEC, new=mock_exec):
        with pytest.raises(TransferError, match="guard check"):
            asyncio.run(executor.copy_to(node, "/tmp/bin", "/opt/qt.new", guard_process="quic-test"))


def test_copy_after_guard_clear(executor, node):
    mock_exec = AsyncMock(side_effect=[(1, "", ""), (0, "", "")])
    with patch(EXEC, new=mock_exec):
        asyncio.run(executor.copy_to(node, "/tmp/bin", "/opt/qt.new", guard_process="quic-test"))

    scp_argv = mock_exec.call_args_list[1].args[0]
    assert scp_argv[0] == "scp"
    assert scp_argv[-1] == "root@saorsa-3.example.net:/opt/qt.new"


def test_copy_falls_back_then_fails(executor, node):
    mock_exec = AsyncMock(return_value=(1, "", "lost connection"))
    with patch(EXEC, new=mock_exec):
        with pytest.raises(TransferError, match="lost connection"):
            asyncio.run(executor.copy_to(node, "/tmp/bin", "/opt/qt.new"))
    assert mock_exec.await_count == 2
