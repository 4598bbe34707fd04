"""Recovery Controller — rollback, resume and retry for execution records.

Built on the checkpoints and node records kept by the ExecutionRecorder;
checkpoints are the only data trusted for rollback and resume decisions.

Rollback is all-or-nothing with respect to the record: compensation hooks
run first, newest node first, and the record is truncated and paused only
after every hook has succeeded. If a hook raises, the record is left exactly
as it was and the result names the nodes that were compensated, the node
that failed, and the nodes never reached.

Structural and state problems come back as result values carrying a stable
error code; nothing in rollback/resume raises for them.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timezone
from typing import Any

from execflow.models.execution import Checkpoint, ExecutionRecord, NodeExecutionRecord
from execflow.models.recovery import (
    RecoveryError,
    ResumeContext,
    ResumeResult,
    RetryConfig,
    RetryResult,
    RollbackPoint,
    RollbackResult,
    RollbackValidation,
    SafetyWarning,
)
from execflow.workflows.engine import ExecutionStateMachine
from execflow.workflows.errors import NotFoundError
from execflow.workflows.recorder import ExecutionRecorder, recount_stats
from execflow.workflows.retry import default_retry_config, execute_with_retry

logger = logging.getLogger(__name__)

# Node types whose effects leave the process and cannot be undone by truncation
DEFAULT_SIDE_EFFECT_TYPES = {"external-api", "email", "notification", "webhook"}

# Statuses a rollback may start from
ROLLBACK_STATES = {"RUNNING", "PAUSED", "FAILED"}
RESUMABLE_STATES = {"PAUSED", "FAILED"}

# (record, node being undone, state of the checkpoint being rolled back to)
CompensationHook = Callable[[ExecutionRecord, NodeExecutionRecord, dict], None]


class RecoveryController:
    """Rollback / resume / retry operations over recorded executions.

    Usage:
        recovery = RecoveryController(recorder)
        recovery.register_compensation("email", send_retraction)

        points = recovery.list_rollback_points(execution_id)
        check = recovery.validate_rollback(execution_id, "load")
        result = recovery.rollback(execution_id, "load")

        if recovery.can_resume(execution_id):
            resumed = recovery.resume(execution_id)
            next_node = resumed.context.resume_from_node
    """

    def __init__(
        self,
        recorder: ExecutionRecorder,
        side_effect_node_types: Iterable[str] | None = None,
        compensation_hooks: dict[str, CompensationHook] | None = None,
        state_machine: ExecutionStateMachine | None = None,
    ) -> None:
        self.recorder = recorder
        self.side_effect_node_types = (
            set(side_effect_node_types) if side_effect_node_types is not None
            else set(DEFAULT_SIDE_EFFECT_TYPES)
        )
        self._hooks: dict[str, CompensationHook] = dict(compensation_hooks or {})
        self.state_machine = state_machine or recorder.state_machine

    def register_compensation(self, node_type: str, hook: CompensationHook) -> None:
        """Register the hook that undoes a node of ``node_type``. ``"*"`` matches any type."""
        self._hooks[node_type] = hook

    # ---- Rollback ----

    def list_rollback_points(self, execution_id: str) -> list[RollbackPoint]:
        """One entry per stored checkpoint, oldest first.

        Raises:
            NotFoundError: Unknown execution id.
        """
        record = self.recorder.get_execution(execution_id)
        points = []
        for checkpoint in record.checkpoints:
            node = record.get_node(checkpoint.node_id)
            declared = record.declared(checkpoint.node_id)
            if node is None:
                can_rollback, reason = False, "Node is no longer part of the execution"
            elif node.status != "COMPLETED":
                can_rollback, reason = False, "Node not completed successfully"
            else:
                can_rollback, reason = True, None
            points.append(RollbackPoint(
                node_id=checkpoint.node_id,
                node_name=(node.node_name if node else "") or (declared.name if declared else ""),
                timestamp=checkpoint.timestamp,
                state=checkpoint.state,
                can_rollback=can_rollback,
                reason=reason,
            ))
        return points

    def validate_rollback(self, execution_id: str, target_node_id: str) -> RollbackValidation:
        """Advisory scan of the nodes a rollback to ``target_node_id`` would discard.

        Never blocks the rollback itself; callers decide whether warnings
        require an explicit override.

        Raises:
            NotFoundError: Unknown execution id, or target node not in the record.
        """
        record = self.recorder.get_execution(execution_id)
        index = record.node_index(target_node_id)
        if index < 0:
            raise NotFoundError(
                f"Node {target_node_id} not found in execution {execution_id}",
                code="NODE_NOT_FOUND",
                details={"execution_id": execution_id, "node_id": target_node_id},
            )
        warnings = self._safety_warnings(record, index)
        return RollbackValidation(safe=not warnings, warnings=warnings)

    def _safety_warnings(self, record: ExecutionRecord, target_index: int) -> list[SafetyWarning]:
        warnings: list[SafetyWarning] = []
        for node in record.nodes[target_index + 1:]:
            node_type = self._node_type(record, node)
            if node_type in self.side_effect_node_types:
                warnings.append(SafetyWarning(
                    node_id=node.node_id,
                    node_type=node_type,
                    kind="external_side_effect",
                    message=f"Node {node.node_id} ({node_type}) may have caused external side effects",
                ))
            if node.outputs.get("committed") is True:
                warnings.append(SafetyWarning(
                    node_id=node.node_id,
                    node_type=node_type,
                    kind="committed_output",
                    message=f"Node {node.node_id} has committed outputs that cannot be rolled back",
                ))
        return warnings

    def rollback(
        self,
        execution_id: str,
        target_node_id: str,
        require_safe: bool = False,
    ) -> RollbackResult:
        """Discard every node after ``target_node_id`` and pause the execution.

        With ``require_safe``, the safety scan runs after the other checks,
        under the same lock, and any warning refuses the rollback.

        Error codes: EXECUTION_NOT_FOUND, CHECKPOINT_NOT_FOUND, NODE_NOT_FOUND,
        INVALID_STATE, ROLLBACK_REQUIRES_FORCE, ROLLBACK_FAILED.
        """
        def failure(code: str, message: str, **extra: Any) -> RollbackResult:
            logger.warning("Rollback of %s to %s refused: %s", execution_id, target_node_id, message)
            return RollbackResult(
                success=False,
                execution_id=execution_id,
                target_node_id=target_node_id,
                error=RecoveryError(code=code, message=message),
                **extra,
            )

        with self.recorder.locked(execution_id):
            record = self.recorder.find_execution(execution_id)
            if record is None:
                return failure("EXECUTION_NOT_FOUND", f"Execution {execution_id} not found")
            checkpoint = record.latest_checkpoint(target_node_id)
            if checkpoint is None:
                return failure(
                    "CHECKPOINT_NOT_FOUND",
                    f"No checkpoint recorded for node {target_node_id}",
                    status=record.status,
                )
            target_index = record.node_index(target_node_id)
            if target_index < 0:
                return failure(
                    "NODE_NOT_FOUND",
                    f"Node {target_node_id} not found in execution {execution_id}",
                    status=record.status,
                )
            if record.status not in ROLLBACK_STATES:
                return failure(
                    "INVALID_STATE",
                    f"Cannot roll back an execution that is {record.status}",
                    status=record.status,
                )
            if require_safe:
                warnings = self._safety_warnings(record, target_index)
                if warnings:
                    return failure(
                        "ROLLBACK_REQUIRES_FORCE",
                        "Rollback would discard nodes with external effects; set force to proceed",
                        warnings=warnings,
                        status=record.status,
                    )

            removed = record.nodes[target_index + 1:]
            pending = [n.node_id for n in reversed(removed)]
            compensated: list[str] = []

            for node in reversed(removed):
                pending.remove(node.node_id)
                hook = self._hooks.get(self._node_type(record, node)) or self._hooks.get("*")
                if hook is not None:
                    try:
                        hook(
                            record.model_copy(deep=True),
                            node.model_copy(deep=True),
                            dict(checkpoint.state),
                        )
                    except Exception as e:
                        logger.error(
                            "Compensation for node %s of execution %s failed: %s",
                            node.node_id, execution_id, e, exc_info=True,
                        )
                        return failure(
                            "ROLLBACK_FAILED",
                            f"Compensation for node {node.node_id} failed: {e}",
                            compensated_nodes=compensated,
                            failed_node=node.node_id,
                            untouched_nodes=pending,
                            status=record.status,
                        )
                compensated.append(node.node_id)

            now = datetime.now(timezone.utc)
            record.nodes = record.nodes[:target_index + 1]
            recount_stats(record)
            self.state_machine.transition(record, "PAUSED", recovery=True, now=now)
            record.nodes[target_index].logs.append(
                f"[{now.isoformat()}] Rolled back from {len(removed)} subsequent nodes"
            )
            self.recorder.save_execution(record)

        affected = [n.node_id for n in removed]
        logger.info(
            "Rolled back execution %s to %s (removed %d nodes)",
            execution_id, target_node_id, len(affected),
        )
        return RollbackResult(
            success=True,
            execution_id=execution_id,
            target_node_id=target_node_id,
            affected_nodes=affected,
            compensated_nodes=compensated,
            status=record.status,
        )

    # ---- Resume ----

    def can_resume(self, execution_id: str) -> bool:
        record = self.recorder.find_execution(execution_id)
        return record is not None and record.status in RESUMABLE_STATES

    def get_resume_context(self, execution_id: str) -> ResumeContext:
        """Where a resumed run picks up.

        Raises:
            NotFoundError: Unknown execution id.
        """
        return self._resume_context(self.recorder.get_execution(execution_id))

    def resume(self, execution_id: str) -> ResumeResult:
        """Reopen a PAUSED or FAILED execution as RUNNING.

        Re-dispatching the remaining nodes is the caller's job; the returned
        context says where to start. Error codes: EXECUTION_NOT_FOUND,
        CANNOT_RESUME.
        """
        with self.recorder.locked(execution_id):
            record = self.recorder.find_execution(execution_id)
            if record is None:
                return ResumeResult(
                    success=False,
                    execution_id=execution_id,
                    error=RecoveryError(
                        code="EXECUTION_NOT_FOUND",
                        message=f"Execution {execution_id} not found",
                    ),
                )
            if record.status not in RESUMABLE_STATES:
                return ResumeResult(
                    success=False,
                    execution_id=execution_id,
                    status=record.status,
                    error=RecoveryError(
                        code="CANNOT_RESUME",
                        message=f"Execution is {record.status}; only PAUSED or FAILED executions resume",
                        details={"status": record.status},
                    ),
                )

            context = self._resume_context(record)
            self.state_machine.transition(record, "RUNNING", recovery=True)
            self.recorder.save_execution(record)

        logger.info(
            "Resumed execution %s from %s (skipping %d completed nodes)",
            execution_id, context.resume_from_node, len(context.skipped_nodes),
        )
        return ResumeResult(success=True, execution_id=execution_id, context=context, status="RUNNING")

    def _resume_context(self, record: ExecutionRecord) -> ResumeContext:
        last_completed = next(
            (n for n in reversed(record.nodes) if n.status == "COMPLETED"), None,
        )
        order = record.node_order
        if last_completed is None:
            return ResumeContext(
                execution_id=record.id,
                resume_from_node=order[0] if order else None,
            )

        position = order.index(last_completed.node_id) if last_completed.node_id in order else -1
        resume_from = order[position + 1] if 0 <= position < len(order) - 1 else None
        checkpoint = record.latest_checkpoint(last_completed.node_id)
        return ResumeContext(
            execution_id=record.id,
            checkpoint_node_id=last_completed.node_id,
            resume_from_node=resume_from,
            skipped_nodes=[n.node_id for n in record.nodes if n.status == "COMPLETED"],
            preserved_state=dict(checkpoint.state) if checkpoint else {},
        )

    # ---- Snapshots & retry ----

    def create_snapshot(self, execution_id: str, node_id: str, state: dict) -> Checkpoint:
        """Store a checkpoint that later rollbacks and resumes can use."""
        return self.recorder.add_checkpoint(execution_id, node_id, state)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[Any] | Any],
        config: RetryConfig | None = None,
        node_type: str | None = None,
    ) -> RetryResult:
        """Retry ``operation`` with backoff; without a config, use the node type's preset."""
        return await execute_with_retry(
            operation,
            config or default_retry_config(node_type),
            label=f"{node_type or 'node'} operation",
        )

    # ---- Helpers ----

    @staticmethod
    def _node_type(record: ExecutionRecord, node: NodeExecutionRecord) -> str:
        if node.node_type:
            return node.node_type
        declared = record.declared(node.node_id)
        return declared.type if declared else ""
