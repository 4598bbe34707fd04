"""Tests for the execution state machine."""

import os
import sys
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

import pytest

from execflow.models.execution import ExecutionError, ExecutionRecord
from execflow.workflows.engine import (
    LEGAL_TRANSITIONS,
    IllegalTransitionError,
    ExecutionStateMachine,
)

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_record(status: str = "PENDING", **kwargs) -> ExecutionRecord:
    """Create a test ExecutionRecord."""
    return ExecutionRecord(graph_id="g1", status=status, start_time=T0, **kwargs)


# === Legal Transition Tests ===

def test_pending_to_running():
    machine = ExecutionStateMachine()
    record = make_record("PENDING")
    machine.transition(record, "RUNNING", now=T0)
    assert record.status == "RUNNING"
    assert record.end_time is None
    print("  PASS: PENDING → RUNNING")


def test_running_to_paused_and_back():
    machine = ExecutionStateMachine()
    record = make_record("RUNNING")
    machine.transition(record, "PAUSED")
    assert record.status == "PAUSED"
    machine.transition(record, "RUNNING")
    assert record.status == "RUNNING"
    print("  PASS: RUNNING → PAUSED → RUNNING")


def test_running_to_running_is_legal():
    machine = ExecutionStateMachine()
    record = make_record("RUNNING")
    machine.transition(record, "RUNNING")
    assert record.status == "RUNNING"


def test_completed_stamps_end_and_duration():
    machine = ExecutionStateMachine()
    record = make_record("RUNNING")
    end = T0 + timedelta(seconds=2, milliseconds=500)
    machine.transition(record, "COMPLETED", now=end)
    assert record.status == "COMPLETED"
    assert record.end_time == end
    assert record.duration == 2500
    assert record.updated_at == end
    print("  PASS: RUNNING → COMPLETED stamps duration")


@pytest.mark.parametrize("terminal", ["FAILED", "CANCELLED"])
def test_other_terminals_stamp_end(terminal):
    machine = ExecutionStateMachine()
    record = make_record("RUNNING")
    machine.transition(record, terminal, now=T0 + timedelta(seconds=1))
    assert record.end_time is not None
    assert record.duration == 1000


def test_pending_to_cancelled():
    machine = ExecutionStateMachine()
    record = make_record("PENDING")
    machine.transition(record, "CANCELLED", now=T0)
    assert record.status == "CANCELLED"
    assert record.duration == 0


# === Illegal Transition Tests ===

def test_completed_is_final():
    machine = ExecutionStateMachine()
    record = make_record("COMPLETED")
    for target in ("RUNNING", "PAUSED", "FAILED", "CANCELLED", "COMPLETED"):
        with pytest.raises(IllegalTransitionError):
            machine.transition(record, target)
    assert record.status == "COMPLETED"
    print("  PASS: COMPLETED is final")


def test_pending_cannot_complete():
    machine = ExecutionStateMachine()
    record = make_record("PENDING")
    with pytest.raises(IllegalTransitionError) as exc_info:
        machine.transition(record, "COMPLETED")
    err = exc_info.value
    assert err.code == "ILLEGAL_TRANSITION"
    assert err.status_code == 409
    assert err.details == {"from": "PENDING", "to": "COMPLETED"}
    assert record.status == "PENDING"


def test_failed_needs_recovery_flag():
    machine = ExecutionStateMachine()
    record = make_record("FAILED")
    with pytest.raises(IllegalTransitionError):
        machine.transition(record, "RUNNING")
    assert machine.can_transition("FAILED", "RUNNING", recovery=True)
    assert not machine.can_transition("CANCELLED", "RUNNING", recovery=True)


def test_recovery_reopen_clears_terminal_fields():
    machine = ExecutionStateMachine()
    record = make_record("RUNNING")
    machine.transition(record, "FAILED", now=T0 + timedelta(seconds=3))
    record.error = ExecutionError(message="boom", code="NODE_FAILED")

    machine.transition(record, "RUNNING", recovery=True)
    assert record.status == "RUNNING"
    assert record.end_time is None
    assert record.duration is None
    assert record.error is None
    print("  PASS: FAILED → RUNNING (recovery) clears end/duration/error")


# === Helper Tests ===

def test_valid_transitions_from_running():
    machine = ExecutionStateMachine()
    valid = machine.get_valid_transitions("RUNNING")
    assert set(valid) == {"RUNNING", "PAUSED", "COMPLETED", "FAILED", "CANCELLED"}


def test_valid_transitions_from_failed():
    machine = ExecutionStateMachine()
    assert machine.get_valid_transitions("FAILED") == []
    assert set(machine.get_valid_transitions("FAILED", recovery=True)) == {"RUNNING", "PAUSED"}


def test_is_terminal():
    assert ExecutionStateMachine.is_terminal("COMPLETED")
    assert ExecutionStateMachine.is_terminal("CANCELLED")
    assert not ExecutionStateMachine.is_terminal("PAUSED")


def test_transition_table_has_no_exit_from_completed():
    assert not [pair for pair in LEGAL_TRANSITIONS if pair[0] in ("COMPLETED", "CANCELLED")]
