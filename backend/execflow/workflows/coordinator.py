"""Execution Coordinator — the trigger/control seam over the engine.

Feeds each reported event to both the ExecutionRecorder (durable record)
and the ProgressMonitor (live view), and wraps the RecoveryController so
monitoring follows rollback and resume. HTTP routes and embedding callers
talk to this object only.

Cancellation is cooperative: the record goes to CANCELLED and monitoring
stops, which tells the driver to stop dispatching. Work already in flight
is not interrupted.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import uuid4

from pydantic import ValidationError

from execflow.models.execution import (
    Checkpoint,
    ExecutionContext,
    ExecutionError,
    ExecutionPage,
    ExecutionQuery,
    ExecutionRecord,
    ExecutionSummaryStats,
    ExecutionTrigger,
    NodeExecutionRecord,
)
from execflow.models.graph import (
    GraphDefinition,
    GraphImportFailure,
    GraphImportResult,
    GraphPage,
    GraphQuery,
    GraphRegistryStats,
)
from execflow.models.monitor import ExecutionProgress, LogEntry, PerformanceSample
from execflow.models.recovery import ResumeResult, RollbackPoint, RollbackResult, RollbackValidation
from execflow.models.validation import ValidationResult
from execflow.storage.base import GraphStore
from execflow.workflows.errors import ConflictError, InvalidGraphError, NotFoundError
from execflow.workflows.monitor import ProgressMonitor, compute_progress
from execflow.workflows.recorder import ExecutionRecorder
from execflow.workflows.recovery import RecoveryController
from execflow.workflows.validator import GraphValidator

logger = logging.getLogger(__name__)

DEFAULT_CANCEL_REASON = "Cancelled by user"


def _first_error(exc: ValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error["loc"])
    return f"{location}: {error['msg']}" if location else error["msg"]


class ExecutionCoordinator:
    """Single entry point for graph registration and execution control.

    Usage:
        coordinator = ExecutionCoordinator(graphs, recorder, monitor, recovery, validator)
        coordinator.register_graph(graph)
        record = coordinator.trigger(graph.id, ExecutionTrigger(type="api", actor_id="u1"))
        coordinator.update_status(record.id, "RUNNING")
        coordinator.report_node(record.id, NodeExecutionRecord(node_id="a", status="COMPLETED"))
        coordinator.checkpoint(record.id, "a", {"rows": 10})
        coordinator.update_status(record.id, "COMPLETED")
    """

    def __init__(
        self,
        graphs: GraphStore,
        recorder: ExecutionRecorder,
        monitor: ProgressMonitor,
        recovery: RecoveryController,
        validator: GraphValidator,
    ) -> None:
        self.graphs = graphs
        self.recorder = recorder
        self.monitor = monitor
        self.recovery = recovery
        self.validator = validator

    # ---- Graphs ----

    def validate_graph(self, graph: GraphDefinition | dict) -> ValidationResult:
        return self.validator.validate(graph)

    def register_graph(self, graph: GraphDefinition, overwrite: bool = False) -> ValidationResult:
        """Validate and store a graph definition.

        Raises:
            InvalidGraphError: The graph has validation errors.
            ConflictError: A graph with this id exists and ``overwrite`` is False.
        """
        result = self.validator.validate(graph)
        if not result.valid:
            raise InvalidGraphError(
                f"Graph {graph.id} failed validation",
                details={"errors": [e.model_dump() for e in result.errors]},
            )
        existing = self.graphs.get(graph.id)
        if existing is not None:
            if not overwrite:
                raise ConflictError(
                    f"Graph {graph.id} already exists",
                    code="DUPLICATE_GRAPH",
                    details={"graph_id": graph.id},
                )
            graph = graph.model_copy(update={"created_at": existing.created_at})
        self.graphs.save(graph)
        logger.info("Registered graph %s (%d nodes, %d edges)", graph.id, len(graph.nodes), len(graph.edges))
        return result

    def get_graph(self, graph_id: str) -> GraphDefinition:
        graph = self.graphs.get(graph_id)
        if graph is None:
            raise NotFoundError(
                f"Graph {graph_id} not found",
                code="GRAPH_NOT_FOUND",
                details={"graph_id": graph_id},
            )
        return graph

    def query_graphs(self, query: GraphQuery | None = None) -> GraphPage:
        return self.graphs.query(query or GraphQuery())

    def delete_graph(self, graph_id: str) -> None:
        if not self.graphs.delete(graph_id):
            raise NotFoundError(
                f"Graph {graph_id} not found",
                code="GRAPH_NOT_FOUND",
                details={"graph_id": graph_id},
            )
        logger.info("Deleted graph %s", graph_id)

    def clone_graph(
        self,
        graph_id: str,
        new_id: str | None = None,
        new_name: str | None = None,
    ) -> GraphDefinition:
        """Store a copy of a graph under a new id.

        The copy starts unpublished at version 1.0.0 with fresh timestamps and
        a zero usage count; nodes, edges and settings carry over.

        Raises:
            NotFoundError: Unknown source graph.
            ConflictError: ``new_id`` already taken.
        """
        original = self.get_graph(graph_id)
        now = datetime.now(timezone.utc)
        clone = original.model_copy(
            deep=True,
            update={
                "id": new_id or str(uuid4()),
                "name": new_name or f"{original.name} (Copy)",
                "version": "1.0.0",
                "is_published": False,
                "created_at": now,
                "updated_at": now,
            },
        )
        clone.metadata.usage_count = 0
        self.register_graph(clone)
        logger.info("Cloned graph %s as %s", graph_id, clone.id)
        return clone

    def export_graphs(self) -> list[GraphDefinition]:
        return self.graphs.list()

    def import_graphs(self, documents: list[GraphDefinition | dict], overwrite: bool = False) -> GraphImportResult:
        """Register a batch of graphs, one at a time.

        A bad entry never aborts the batch: it is reported in ``failed`` with
        the reason, and the rest are still imported.
        """
        result = GraphImportResult()
        for document in documents:
            if isinstance(document, GraphDefinition):
                graph_id = document.id
            else:
                graph_id = str(document.get("id", "")) if isinstance(document, dict) else ""
            try:
                graph = GraphDefinition.model_validate(document)
            except ValidationError as exc:
                result.failed.append(GraphImportFailure(graph_id=graph_id, reason=_first_error(exc)))
                continue
            if not overwrite and self.graphs.exists(graph.id):
                result.skipped.append(graph.id)
                continue
            try:
                self.register_graph(graph, overwrite=overwrite)
            except (InvalidGraphError, ConflictError) as exc:
                errors = exc.details.get("errors") or []
                reason = errors[0]["message"] if errors else exc.message
                result.failed.append(GraphImportFailure(graph_id=graph.id, reason=reason))
                continue
            result.imported.append(graph.id)

        logger.info(
            "Imported %d graphs (%d skipped, %d failed)",
            len(result.imported), len(result.skipped), len(result.failed),
        )
        return result

    def graph_stats(self) -> GraphRegistryStats:
        stats = GraphRegistryStats()
        for graph in self.graphs.list():
            stats.total_graphs += 1
            if graph.is_published:
                stats.published_count += 1
            stats.by_status[graph.status] = stats.by_status.get(graph.status, 0) + 1
            category = graph.metadata.category or "uncategorized"
            stats.by_category[category] = stats.by_category.get(category, 0) + 1
            stats.total_usage += graph.metadata.usage_count
        return stats

    # ---- Lifecycle ----

    def trigger(
        self,
        graph_id: str,
        trigger: ExecutionTrigger | None = None,
        context: ExecutionContext | None = None,
        execution_id: str | None = None,
    ) -> ExecutionRecord:
        """Create a PENDING execution of a stored graph and start monitoring it.

        Raises:
            NotFoundError: Unknown graph id.
            InvalidGraphError: The stored graph no longer validates.
            ConflictError: ``execution_id`` already taken.
        """
        graph = self.get_graph(graph_id)
        result = self.validator.validate(graph)
        if not result.valid:
            raise InvalidGraphError(
                f"Graph {graph_id} failed validation",
                details={"errors": [e.model_dump() for e in result.errors]},
            )

        record = self.recorder.create_execution(graph, trigger, context, execution_id=execution_id)
        graph.metadata.usage_count += 1
        self.graphs.save(graph)

        self.monitor.start_monitoring(record)
        self.monitor.add_log(
            record.id,
            f"Execution triggered ({record.trigger.type})",
            data={"actor_id": record.trigger.actor_id},
        )
        return record

    def update_status(
        self,
        execution_id: str,
        status: str,
        error: ExecutionError | None = None,
    ) -> ExecutionRecord:
        record = self.recorder.update_status(execution_id, status, error)
        # Logged while still registered so the terminal event is the last one emitted
        if error is not None:
            self.monitor.add_log(execution_id, error.message, level="error", node_id=error.node_id)
        if self.monitor.is_monitoring(execution_id):
            if self.recorder.state_machine.is_terminal(record.status):
                self.monitor.stop_monitoring(execution_id, record)
            else:
                self.monitor.update_execution(record)
        return record

    def report_node(self, execution_id: str, node_record: NodeExecutionRecord) -> ExecutionRecord:
        """Record a node's outcome and forward the transition to the monitor."""
        record = self.recorder.record_node_execution(execution_id, node_record)
        if self.monitor.is_monitoring(execution_id):
            self.monitor.update_node_status(
                execution_id,
                node_record.node_id,
                node_record.status,
                {"retry_count": node_record.retry_count},
            )
        if node_record.status == "FAILED" and node_record.error is not None:
            self.monitor.add_log(
                execution_id,
                f"Node {node_record.node_id} failed: {node_record.error.message}",
                level="error",
                node_id=node_record.node_id,
            )
        return record

    def checkpoint(self, execution_id: str, node_id: str, state: dict) -> Checkpoint:
        checkpoint = self.recovery.create_snapshot(execution_id, node_id, state)
        self.monitor.add_log(execution_id, f"Checkpoint stored at {node_id}", level="debug", node_id=node_id)
        return checkpoint

    def cancel(self, execution_id: str, reason: str | None = None) -> ExecutionRecord:
        """Cooperatively cancel: mark CANCELLED, which also stops monitoring."""
        reason = reason or DEFAULT_CANCEL_REASON
        record = self.update_status(
            execution_id,
            "CANCELLED",
            ExecutionError(message=reason, code="CANCELLED"),
        )
        logger.info("Cancelled execution %s: %s", execution_id, reason)
        return record

    # ---- Recovery ----

    def rollback_points(self, execution_id: str) -> list[RollbackPoint]:
        return self.recovery.list_rollback_points(execution_id)

    def validate_rollback(self, execution_id: str, target_node_id: str) -> RollbackValidation:
        return self.recovery.validate_rollback(execution_id, target_node_id)

    def rollback(self, execution_id: str, target_node_id: str, force: bool = False) -> RollbackResult:
        """Roll back, refusing with ROLLBACK_REQUIRES_FORCE when the safety scan
        finds warnings and ``force`` is not set. Failures come back as results."""
        result = self.recovery.rollback(execution_id, target_node_id, require_safe=not force)
        if result.success:
            record = self.recorder.get_execution(execution_id)
            if self.monitor.is_monitoring(execution_id):
                self.monitor.update_execution(record)
            self.monitor.add_log(
                execution_id,
                f"Rolled back to {target_node_id}; removed {len(result.affected_nodes)} nodes",
                level="warn",
                node_id=target_node_id,
            )
        return result

    def resume(self, execution_id: str) -> ResumeResult:
        result = self.recovery.resume(execution_id)
        if result.success:
            record = self.recorder.get_execution(execution_id)
            if self.monitor.is_monitoring(execution_id):
                self.monitor.update_execution(record)
            else:
                self.monitor.start_monitoring(record)
            self.monitor.add_log(
                execution_id,
                f"Resumed from {result.context.resume_from_node if result.context else None}",
            )
        return result

    # ---- Reads ----

    def get_execution(self, execution_id: str) -> ExecutionRecord:
        return self.recorder.get_execution(execution_id)

    def query(self, query: ExecutionQuery | None = None) -> ExecutionPage:
        return self.recorder.query(query)

    def stats(self) -> ExecutionSummaryStats:
        return self.recorder.get_stats()

    def progress(self, execution_id: str) -> ExecutionProgress:
        if self.monitor.is_monitoring(execution_id):
            return self.monitor.get_progress(execution_id)
        return compute_progress(self.recorder.get_execution(execution_id))

    def logs(self, execution_id: str, limit: int | None = None) -> list[LogEntry]:
        self.recorder.get_execution(execution_id)
        return self.monitor.get_logs(execution_id, limit)

    def metrics(self, execution_id: str) -> list[PerformanceSample]:
        self.recorder.get_execution(execution_id)
        return self.monitor.get_metrics(execution_id)

    # ---- Housekeeping ----

    def delete(self, execution_id: str) -> None:
        self.recorder.delete_execution(execution_id)
        self.monitor.forget(execution_id)

    def cleanup(self, older_than_days: int) -> list[str]:
        deleted = self.recorder.cleanup(older_than_days)
        for execution_id in deleted:
            self.monitor.forget(execution_id)
        return deleted
