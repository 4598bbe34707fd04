"""Execution state machine — transition table + terminal stamping.

Owns every change to ``ExecutionRecord.status``. Entering a terminal state
stamps end time and duration; leaving one (recovery only) clears them.
"""

from __future__ import annotations

from datetime import datetime, timezone

from execflow.models.execution import ExecutionRecord, duration_ms
from execflow.workflows.errors import StateError

# === State Transition Table ===
# Key: (from_state, to_state) → guard description
# Absent pair → illegal transition

LEGAL_TRANSITIONS: dict[tuple[str, str], str] = {
    # From PENDING
    ("PENDING", "RUNNING"): "Driver dispatches the first node",
    ("PENDING", "CANCELLED"): "Cancelled before start",
    ("PENDING", "FAILED"): "Failed before any node ran",
    # From RUNNING
    ("RUNNING", "RUNNING"): "Node completes, next node begins",
    ("RUNNING", "PAUSED"): "Paused by the driver or rolled back",
    ("RUNNING", "COMPLETED"): "Final node succeeds",
    ("RUNNING", "FAILED"): "A node fails and error handling stops the run",
    ("RUNNING", "CANCELLED"): "Cancelled mid-run",
    # From PAUSED
    ("PAUSED", "RUNNING"): "Resumed",
    ("PAUSED", "PAUSED"): "Rolled back again while paused",
    ("PAUSED", "CANCELLED"): "Cancelled while paused",
    ("PAUSED", "FAILED"): "Abandoned while paused",
    # From FAILED (recovery only)
    ("FAILED", "RUNNING"): "Resumed after failure",
    ("FAILED", "PAUSED"): "Rolled back to a checkpoint after failure",
}

TERMINAL_STATES = {"COMPLETED", "FAILED", "CANCELLED"}

# Terminal states that recovery operations may reopen
RECOVERABLE_STATES = {"FAILED"}


class IllegalTransitionError(StateError):
    """Raised when attempting an illegal status transition."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Illegal transition: {from_state} → {to_state}",
            code="ILLEGAL_TRANSITION",
            details={"from": from_state, "to": to_state},
        )


class ExecutionStateMachine:
    """Status transitions for ExecutionRecord objects.

    The machine is stateless: all state lives on the record, so any number
    of collaborators can share one instance.

    Usage:
        machine = ExecutionStateMachine()
        machine.transition(record, "RUNNING")
        machine.transition(record, "FAILED")
        machine.transition(record, "RUNNING", recovery=True)  # resume
    """

    def transition(
        self,
        record: ExecutionRecord,
        to_state: str,
        *,
        recovery: bool = False,
        now: datetime | None = None,
    ) -> None:
        """Move a record to a new status.

        Args:
            record: The execution record to transition.
            to_state: Target status.
            recovery: Allow leaving a recoverable terminal state (resume/rollback).
            now: Timestamp to stamp; defaults to the current UTC time.

        Raises:
            IllegalTransitionError: If the transition is not legal.
        """
        from_state = record.status
        if not self.can_transition(from_state, to_state, recovery=recovery):
            raise IllegalTransitionError(from_state, to_state)

        now = now or datetime.now(timezone.utc)
        if from_state in TERMINAL_STATES:
            # Reopened by recovery: the run is no longer finished
            record.end_time = None
            record.duration = None
            record.error = None

        record.status = to_state  # type: ignore[assignment]
        if to_state in TERMINAL_STATES:
            record.end_time = now
            record.duration = max(0, duration_ms(record.start_time, now))
        record.updated_at = now

    def can_transition(self, from_state: str, to_state: str, *, recovery: bool = False) -> bool:
        """Check if a transition is legal without performing it."""
        if from_state in TERMINAL_STATES:
            if not recovery or from_state not in RECOVERABLE_STATES:
                return False
        return (from_state, to_state) in LEGAL_TRANSITIONS

    def get_valid_transitions(self, from_state: str, *, recovery: bool = False) -> list[str]:
        """Get all valid target states from a given state."""
        return [
            to for (fr, to) in LEGAL_TRANSITIONS
            if fr == from_state and self.can_transition(fr, to, recovery=recovery)
        ]

    @staticmethod
    def is_terminal(status: str) -> bool:
        return status in TERMINAL_STATES
