"""
StateStore tests: atomic persistence, resume fidelity and stop markers.
"""
import os
from datetime import timedelta

import pytest

from fleetloop.core.errors import ProjectActiveError
from fleetloop.models.fix_record import FixRecord
from fleetloop.models.node import NodeStatus
from fleetloop.models.test_plan import TestPlan
from fleetloop.state.loop_state import FailureContext, LoopPhase, LoopState, utcnow
from fleetloop.state.state_store import StateStore


@pytest.fixture
def store(tmp_path):
    return StateStore(str(tmp_path / "state"))


def _state() -> LoopState:
    return LoopState(project="quic-nat", plan=TestPlan(project="quic-nat", focus="nat-traversal"))


def test_load_missing_returns_none(store):
    assert store.load("nothing") is None


def test_save_and_load_round_trip(store):
    state = _state()
    state.state = LoopPhase.WAIT_SHORT
    state.fix_attempts = 3
    state.soak_stage = "short"
    state.wait_deadline = utcnow() + timedelta(hours=1)
    state.node_status = {"saorsa-2": NodeStatus.ONLINE}
    state.applied_fixes.append(FixRecord(fix_id="fix-1", description="raise timeout", change_ref="abc123"))
    state.pending_failure = FailureContext(phase=LoopPhase.TEST, summary="nat below 85")
    state.log("entered WAIT_SHORT")

    store.save(state)
    loaded = store.load("quic-nat")

    assert loaded.state == LoopPhase.WAIT_SHORT
    assert loaded.fix_attempts == 3
    assert loaded.wait_deadline == state.wait_deadline
    assert loaded.node_status == {"saorsa-2": NodeStatus.ONLINE}
    assert loaded.applied_fixes[0].change_ref == "abc123"
    assert loaded.pending_failure.summary == "nat below 85"
    assert loaded.activity[-1].message == "entered WAIT_SHORT"
    assert loaded.plan == state.plan


def test_save_leaves_no_temp_file(store):
    path = store.save(_state())
    assert os.path.exists(path)
    assert not os.path.exists(path + ".tmp")


def test_save_overwrites_previous_snapshot(store):
    state = _state()
    store.save(state)
    state.state = LoopPhase.BUILD
    store.save(state)
    assert store.load("quic-nat").state == LoopPhase.BUILD


def test_list_projects(store):
    assert store.list_projects() == []
    store.save(_state())
    other = LoopState(project="gossip", plan=TestPlan(project="gossip"))
    store.save(other)
    assert store.list_projects() == ["gossip", "quic-nat"]


def test_stop_markers(store):
    assert store.stop_requested("quic-nat") is False
    store.request_stop("quic-nat")
    assert store.stop_requested("quic-nat") is True
    store.clear_stop("quic-nat")
    assert store.stop_requested("quic-nat") is False


def test_delete_removes_state_and_marker(store):
    store.save(_state())
    store.request_stop("quic-nat")
    store.delete("quic-nat")
    assert store.load("quic-nat") is None
    assert store.stop_requested("quic-nat") is False


def test_acquire_is_exclusive_across_stores(tmp_path):
    first = StateStore(str(tmp_path))
    second = StateStore(str(tmp_path))

    first.acquire("quic-nat")
    with pytest.raises(ProjectActiveError):
        second.acquire("quic-nat")
    with pytest.raises(ProjectActiveError):
        first.acquire("quic-nat")
    second.acquire("other-project")

    first.release("quic-nat")
    second.acquire("quic-nat")
    assert second.owned("quic-nat") is True
    assert first.owned("quic-nat") is False


def test_lock_file_records_owner_pid(tmp_path):
    store = StateStore(str(tmp_path))
    store.acquire("quic-nat")
    with open(tmp_path / "quic-nat.lock") as f:
        assert f.read().strip() == str(os.getpid())
    store.release("quic-nat")
    store.release("quic-nat")
