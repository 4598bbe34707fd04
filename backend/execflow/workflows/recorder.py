"""Execution Recorder — system of record for runs of a graph.

Creates execution records, applies status changes through the state
machine, upserts per-node records, appends checkpoints, and answers
history queries and aggregate stats.

Concurrency: every read-modify-write of one record runs under that
record's lock, so parallel executions never touch each other's state.
Node updates within one execution are expected to arrive serialized from
its driver.
"""

from __future__ import annotations

import logging
import threading
import weakref
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from execflow.models.execution import (
    Checkpoint,
    DeclaredNode,
    ExecutionContext,
    ExecutionError,
    ExecutionPage,
    ExecutionQuery,
    ExecutionRecord,
    ExecutionStats,
    ExecutionSummaryStats,
    ExecutionTrigger,
    GraphExecutionStats,
    NodeExecutionRecord,
)
from execflow.models.graph import GraphDefinition
from execflow.storage.base import ExecutionStore
from execflow.workflows.engine import ExecutionStateMachine
from execflow.workflows.errors import ConflictError, NotFoundError, StateError

logger = logging.getLogger(__name__)

RECENT_WINDOW = timedelta(hours=24)


def recount_stats(record: ExecutionRecord) -> ExecutionStats:
    """Recompute node counters and success rate from the full node list."""
    stats = record.stats
    stats.total_nodes = len(record.declared_nodes)
    stats.completed_nodes = sum(1 for n in record.nodes if n.status == "COMPLETED")
    stats.failed_nodes = sum(1 for n in record.nodes if n.status == "FAILED")
    stats.skipped_nodes = sum(1 for n in record.nodes if n.status == "SKIPPED")
    stats.success_rate = stats.completed_nodes / stats.total_nodes if stats.total_nodes else 0.0
    return stats


class ExecutionRecorder:
    """Reads and writes ExecutionRecords through an ExecutionStore.

    Usage:
        recorder = ExecutionRecorder(store)
        record = recorder.create_execution(graph, ExecutionTrigger(type="api"))
        recorder.update_status(record.id, "RUNNING")
        recorder.record_node_execution(record.id, NodeExecutionRecord(node_id="a", status="COMPLETED"))
        recorder.add_checkpoint(record.id, "a", {"rows": 10})
        recorder.update_status(record.id, "COMPLETED")
    """

    def __init__(
        self,
        store: ExecutionStore,
        state_machine: ExecutionStateMachine | None = None,
    ) -> None:
        self.store = store
        self.state_machine = state_machine or ExecutionStateMachine()
        # Entries vanish once no caller holds or waits on the lock
        self._locks: weakref.WeakValueDictionary[str, threading.RLock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # ---- Locking ----

    @contextmanager
    def locked(self, execution_id: str) -> Iterator[None]:
        """Hold the per-execution lock for a read-modify-write cycle."""
        with self._locks_guard:
            lock = self._locks.get(execution_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[execution_id] = lock
        with lock:
            yield

    # ---- Write ----

    def create_execution(
        self,
        graph: GraphDefinition,
        trigger: ExecutionTrigger | None = None,
        context: ExecutionContext | None = None,
        execution_id: str | None = None,
    ) -> ExecutionRecord:
        """Create a PENDING record for a new run of ``graph``.

        Raises:
            ConflictError: If ``execution_id`` is already taken.
        """
        record = ExecutionRecord(
            graph_id=graph.id,
            graph_name=graph.name,
            graph_version=graph.version,
            declared_nodes=[
                DeclaredNode(id=n.id, name=n.label or n.id, type=n.type) for n in graph.nodes
            ],
            trigger=trigger or ExecutionTrigger(),
            context=context or ExecutionContext(),
        )
        if execution_id:
            record.id = execution_id
        recount_stats(record)

        with self.locked(record.id):
            if self.store.exists(record.id):
                raise ConflictError(
                    f"Execution {record.id} already exists",
                    code="DUPLICATE_EXECUTION",
                    details={"execution_id": record.id},
                )
            self.store.save(record)

        logger.info(
            "Created execution %s for graph %s (%d nodes, trigger=%s)",
            record.id, graph.id, record.stats.total_nodes, record.trigger.type,
        )
        return record

    def update_status(
        self,
        execution_id: str,
        status: str,
        error: ExecutionError | None = None,
    ) -> ExecutionRecord:
        """Move a record to ``status``; terminal statuses stamp end time and duration.

        Raises:
            NotFoundError: Unknown execution id.
            IllegalTransitionError: The transition is not legal.
        """
        with self.locked(execution_id):
            record = self.get_execution(execution_id)
            previous = record.status
            self.state_machine.transition(record, status)
            if error is not None:
                if error.node_id and not error.node_name:
                    declared = record.declared(error.node_id)
                    error.node_name = declared.name if declared else None
                record.error = error
            recount_stats(record)
            self.store.save(record)

        logger.info("Execution %s: %s → %s", execution_id, previous, status)
        return record

    def record_node_execution(
        self,
        execution_id: str,
        node_record: NodeExecutionRecord,
    ) -> ExecutionRecord:
        """Upsert one node's record by node id, then recount.

        Raises:
            NotFoundError: Unknown execution id, or a node id the graph does not declare.
            StateError: The execution is already terminal.
        """
        with self.locked(execution_id):
            record = self.get_execution(execution_id)
            if self.state_machine.is_terminal(record.status):
                raise StateError(
                    f"Execution {execution_id} is {record.status}; node records are frozen",
                    details={"execution_id": execution_id, "status": record.status},
                )
            declared = record.declared(node_record.node_id)
            if declared is None:
                raise NotFoundError(
                    f"Node {node_record.node_id} is not part of execution {execution_id}",
                    code="NODE_NOT_FOUND",
                    details={"execution_id": execution_id, "node_id": node_record.node_id},
                )

            node = node_record.model_copy(deep=True)
            node.node_name = node.node_name or declared.name
            node.node_type = node.node_type or declared.type

            index = record.node_index(node.node_id)
            if index >= 0:
                record.nodes[index] = node
            else:
                record.nodes.append(node)

            recount_stats(record)
            record.updated_at = datetime.now(timezone.utc)
            self.store.save(record)

        logger.debug(
            "Execution %s node %s → %s", execution_id, node_record.node_id, node_record.status,
        )
        return record

    def add_checkpoint(self, execution_id: str, node_id: str, state: dict) -> Checkpoint:
        """Append a checkpoint for ``node_id``. Checkpoints are never edited.

        Raises:
            NotFoundError: Unknown execution id or node id.
            StateError: The execution is already terminal.
        """
        with self.locked(execution_id):
            record = self.get_execution(execution_id)
            if self.state_machine.is_terminal(record.status):
                raise StateError(
                    f"Execution {execution_id} is {record.status}; checkpoints are frozen",
                    details={"execution_id": execution_id, "status": record.status},
                )
            if record.declared(node_id) is None:
                raise NotFoundError(
                    f"Node {node_id} is not part of execution {execution_id}",
                    code="NODE_NOT_FOUND",
                    details={"execution_id": execution_id, "node_id": node_id},
                )
            checkpoint = Checkpoint(node_id=node_id, state=dict(state))
            record.checkpoints.append(checkpoint)
            record.updated_at = checkpoint.timestamp
            self.store.save(record)

        logger.debug("Execution %s checkpoint at %s", execution_id, node_id)
        return checkpoint

    def save_execution(self, record: ExecutionRecord) -> None:
        """Persist a record mutated under ``locked`` by a recovery operation."""
        record.updated_at = datetime.now(timezone.utc)
        self.store.save(record)

    def delete_execution(self, execution_id: str) -> None:
        """Raises NotFoundError if the execution does not exist."""
        with self.locked(execution_id):
            if not self.store.delete(execution_id):
                raise NotFoundError(
                    f"Execution {execution_id} not found",
                    code="EXECUTION_NOT_FOUND",
                    details={"execution_id": execution_id},
                )
        logger.info("Deleted execution %s", execution_id)

    def cleanup(self, older_than_days: int = 30, now: datetime | None = None) -> list[str]:
        """Delete records created more than ``older_than_days`` ago. Returns their ids."""
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=older_than_days)
        deleted: list[str] = []
        for record in self.store.list():
            if record.created_at >= cutoff:
                continue
            with self.locked(record.id):
                if self.store.delete(record.id):
                    deleted.append(record.id)
        if deleted:
            logger.info("Cleaned up %d executions older than %d days", len(deleted), older_than_days)
        return deleted

    # ---- Read ----

    def get_execution(self, execution_id: str) -> ExecutionRecord:
        record = self.store.get(execution_id)
        if record is None:
            raise NotFoundError(
                f"Execution {execution_id} not found",
                code="EXECUTION_NOT_FOUND",
                details={"execution_id": execution_id},
            )
        return record

    def find_execution(self, execution_id: str) -> ExecutionRecord | None:
        return self.store.get(execution_id)

    def query(self, query: ExecutionQuery | None = None) -> ExecutionPage:
        return self.store.query(query or ExecutionQuery())

    def get_stats(self, now: datetime | None = None) -> ExecutionSummaryStats:
        """Counts by status and graph, average duration, success rate, last-24h count."""
        now = now or datetime.now(timezone.utc)
        records = self.store.list()

        summary = ExecutionSummaryStats(total=len(records))
        durations: list[int] = []
        graph_durations: dict[str, list[int]] = {}
        completed = 0

        for record in records:
            summary.by_status[record.status] = summary.by_status.get(record.status, 0) + 1
            per_graph = summary.by_graph.setdefault(record.graph_id, GraphExecutionStats())
            per_graph.total += 1
            if record.status == "COMPLETED":
                per_graph.completed += 1
                completed += 1
            elif record.status == "FAILED":
                per_graph.failed += 1
            if record.duration is not None:
                durations.append(record.duration)
                graph_durations.setdefault(record.graph_id, []).append(record.duration)
            if now - record.start_time <= RECENT_WINDOW:
                summary.recent_executions += 1

        for graph_id, values in graph_durations.items():
            summary.by_graph[graph_id].average_duration = sum(values) / len(values)
        summary.average_duration = sum(durations) / len(durations) if durations else 0.0
        summary.success_rate = completed / len(records) if records else 0.0
        return summary
