"""Progress Monitor — live progress, logs and performance samples per execution.

Fed by the same events that drive the ExecutionRecorder. Subscribers
register for one execution id or for ``"*"`` (every execution) and get a
token back for unsubscribing. Delivery is synchronous; a subscriber that
raises is logged and skipped so the others still receive the event.

The periodic sampler follows the scheduler pattern used elsewhere in the
backend: ``await start()`` launches an asyncio task, ``stop()`` cancels it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

import psutil

from execflow.models.execution import ExecutionRecord, duration_ms
from execflow.models.monitor import (
    ExecutionProgress,
    LogEntry,
    MonitorEvent,
    PerformanceSample,
)
from execflow.workflows.errors import NotFoundError

logger = logging.getLogger(__name__)

WILDCARD = "*"

Subscriber = Callable[[MonitorEvent], None]

NODE_EVENTS = {
    "RUNNING": "node:started",
    "COMPLETED": "node:completed",
    "FAILED": "node:failed",
    "SKIPPED": "node:skipped",
}

STOP_EVENTS = {
    "COMPLETED": "execution:completed",
    "FAILED": "execution:failed",
    "CANCELLED": "execution:cancelled",
}


def compute_progress(
    record: ExecutionRecord,
    node_statuses: dict[str, str] | None = None,
    now: datetime | None = None,
) -> ExecutionProgress:
    """Progress snapshot for a record.

    ``node_statuses`` overrides the statuses stored on the record's node
    list (the monitor's view may be ahead of the last persisted write).
    pending = total - completed - failed - running. The ETA stays unset
    until at least one node has completed.
    """
    statuses = {n.node_id: n.status for n in record.nodes}
    if node_statuses:
        statuses.update(node_statuses)

    total = len(record.declared_nodes)
    completed = sum(1 for s in statuses.values() if s == "COMPLETED")
    failed = sum(1 for s in statuses.values() if s == "FAILED")
    running = [node_id for node_id, s in statuses.items() if s == "RUNNING"]
    pending = max(0, total - completed - failed - len(running))

    now = now or datetime.now(timezone.utc)
    elapsed = max(0, duration_ms(record.start_time, record.end_time or now))
    progress = completed / total if total else 0.0

    eta = None
    if completed > 0 and progress < 1:
        eta = int(elapsed / completed * (total - completed))

    return ExecutionProgress(
        execution_id=record.id,
        status=record.status,
        total_nodes=total,
        completed_nodes=completed,
        failed_nodes=failed,
        running_nodes=len(running),
        pending_nodes=pending,
        progress=progress,
        current_node_id=running[-1] if running else None,
        elapsed_time=elapsed,
        estimated_time_remaining=eta,
    )


@dataclass
class _Tracked:
    """A registered execution."""

    record: ExecutionRecord
    node_statuses: dict[str, str] = field(default_factory=dict)


class ProgressMonitor:
    """Tracks running executions and fans events out to subscribers.

    Usage:
        monitor = ProgressMonitor(sample_interval_seconds=5)
        token = monitor.subscribe("*", print)
        monitor.start_monitoring(record)
        monitor.update_node_status(record.id, "a", "RUNNING")
        monitor.update_node_status(record.id, "a", "COMPLETED")
        monitor.stop_monitoring(record.id, final_record)
        monitor.unsubscribe(token)
    """

    def __init__(
        self,
        log_capacity: int = 1000,
        metrics_capacity: int = 100,
        finished_capacity: int = 100,
        sample_interval_seconds: float = 5.0,
        enabled: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.log_capacity = log_capacity
        self.metrics_capacity = metrics_capacity
        self.finished_capacity = finished_capacity
        self.sample_interval_seconds = sample_interval_seconds
        self.enabled = enabled
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._lock = threading.RLock()
        self._tracked: dict[str, _Tracked] = {}
        self._logs: dict[str, deque[LogEntry]] = {}
        self._metrics: dict[str, deque[PerformanceSample]] = {}
        # Finished executions whose buffers are still held, oldest first
        self._finished: OrderedDict[str, None] = OrderedDict()
        # token -> (execution id or "*", callback)
        self._subscribers: dict[str, tuple[str, Subscriber]] = {}

        self._process = psutil.Process(os.getpid())
        self._task: asyncio.Task | None = None
        self._running = False

    # ---- Registration ----

    def start_monitoring(self, record: ExecutionRecord) -> None:
        with self._lock:
            self._tracked[record.id] = _Tracked(
                record=record.model_copy(deep=True),
                node_statuses={n.node_id: n.status for n in record.nodes},
            )
            self._logs.setdefault(record.id, deque(maxlen=self.log_capacity))
            self._metrics.setdefault(record.id, deque(maxlen=self.metrics_capacity))
            self._finished.pop(record.id, None)

        logger.info("Monitoring execution %s", record.id)
        self._emit(MonitorEvent(
            type="execution:started",
            execution_id=record.id,
            data={"graph_id": record.graph_id, "status": record.status},
        ))

    def stop_monitoring(self, execution_id: str, record: ExecutionRecord | None = None) -> None:
        """Deregister an execution; emits a terminal event matching its status.

        ``record`` supplies the final status; otherwise the last tracked
        snapshot is used. Logs and samples stay readable for the most recent
        ``finished_capacity`` finished executions, then are dropped.
        """
        with self._lock:
            tracked = self._tracked.pop(execution_id, None)
            if tracked is not None:
                self._retain(execution_id)
        if tracked is None:
            return

        final = record or tracked.record
        event_type = STOP_EVENTS.get(final.status, "execution:updated")
        logger.info("Stopped monitoring execution %s (%s)", execution_id, final.status)
        self._emit(MonitorEvent(
            type=event_type,  # type: ignore[arg-type]
            execution_id=execution_id,
            data={"status": final.status, "duration": final.duration},
        ))

    def update_execution(self, record: ExecutionRecord) -> None:
        """Replace the tracked snapshot after a status change on the record."""
        with self._lock:
            tracked = self._tracked.get(record.id)
            if tracked is None:
                raise NotFoundError(
                    f"Execution {record.id} is not being monitored",
                    code="EXECUTION_NOT_MONITORED",
                )
            tracked.record = record.model_copy(deep=True)
            tracked.node_statuses = {n.node_id: n.status for n in record.nodes}
            progress = compute_progress(tracked.record, tracked.node_statuses, self._clock())

        event_type = "execution:paused" if record.status == "PAUSED" else "execution:updated"
        self._emit(MonitorEvent(
            type=event_type,  # type: ignore[arg-type]
            execution_id=record.id,
            data={"status": record.status},
        ))
        self._emit(MonitorEvent(
            type="progress:updated",
            execution_id=record.id,
            data=progress.model_dump(mode="json"),
        ))

    def forget(self, execution_id: str) -> None:
        """Drop everything held for an execution (deleted records)."""
        with self._lock:
            self._tracked.pop(execution_id, None)
            self._logs.pop(execution_id, None)
            self._metrics.pop(execution_id, None)
            self._finished.pop(execution_id, None)

    def is_monitoring(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._tracked

    def active_executions(self) -> list[str]:
        with self._lock:
            return list(self._tracked)

    # ---- Node status ----

    def update_node_status(
        self,
        execution_id: str,
        node_id: str,
        status: str,
        details: dict | None = None,
    ) -> bool:
        """Record a node transition. Returns False (and emits nothing) if unchanged.

        Raises:
            NotFoundError: The execution is not being monitored.
        """
        with self._lock:
            tracked = self._require(execution_id)
            if tracked.node_statuses.get(node_id) == status:
                return False
            tracked.node_statuses[node_id] = status
            progress = compute_progress(tracked.record, tracked.node_statuses, self._clock())

        event_type = NODE_EVENTS.get(status)
        if event_type is not None:
            self._emit(MonitorEvent(
                type=event_type,  # type: ignore[arg-type]
                execution_id=execution_id,
                node_id=node_id,
                data=dict(details or {}, status=status),
            ))
        self._emit(MonitorEvent(
            type="progress:updated",
            execution_id=execution_id,
            data=progress.model_dump(mode="json"),
        ))
        return True

    def get_progress(self, execution_id: str) -> ExecutionProgress:
        with self._lock:
            tracked = self._require(execution_id)
            return compute_progress(tracked.record, tracked.node_statuses, self._clock())

    # ---- Logs ----

    def add_log(
        self,
        execution_id: str,
        message: str,
        level: str = "info",
        node_id: str | None = None,
        data: dict | None = None,
    ) -> LogEntry:
        """Append to the execution's log buffer.

        LOG_ADDED is emitted only while the execution is registered; entries
        for finished executions are kept under the same retention as ``stop_monitoring``.
        """
        entry = LogEntry(level=level, message=message, node_id=node_id, data=data or {})  # type: ignore[arg-type]
        with self._lock:
            buffer = self._logs.setdefault(execution_id, deque(maxlen=self.log_capacity))
            buffer.append(entry)
            active = execution_id in self._tracked
            if not active:
                self._retain(execution_id)
        if not active:
            return entry
        self._emit(MonitorEvent(
            type="log:added",
            execution_id=execution_id,
            node_id=node_id,
            data=entry.model_dump(mode="json"),
        ))
        return entry

    def get_logs(self, execution_id: str, limit: int | None = None) -> list[LogEntry]:
        """Oldest first; with ``limit``, only the most recent ``limit`` entries."""
        with self._lock:
            entries = list(self._logs.get(execution_id, ()))
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    # ---- Performance sampling ----

    def get_metrics(self, execution_id: str) -> list[PerformanceSample]:
        with self._lock:
            return list(self._metrics.get(execution_id, ()))

    def sample_once(self) -> int:
        """Take one performance sample for every registered execution.

        Executions deregistered after the id snapshot are skipped. Returns the
        number of executions sampled.
        """
        with self._lock:
            execution_ids = list(self._tracked)
        if not execution_ids:
            return 0

        cpu_percent = self._process.cpu_percent(interval=None)
        memory = self._process.memory_info()
        memory_percent = self._process.memory_percent()
        now = self._clock()

        sampled = 0
        for execution_id in execution_ids:
            with self._lock:
                tracked = self._tracked.get(execution_id)
                if tracked is None:
                    continue
                completed = sum(1 for s in tracked.node_statuses.values() if s == "COMPLETED")
                elapsed = max(0, duration_ms(tracked.record.start_time, now))
                sample = PerformanceSample(
                    timestamp=now,
                    cpu_percent=cpu_percent,
                    memory_rss=memory.rss,
                    memory_percent=memory_percent,
                    throughput=completed / elapsed if elapsed > 0 else 0.0,
                    elapsed_time=elapsed,
                )
                self._metrics.setdefault(
                    execution_id, deque(maxlen=self.metrics_capacity),
                ).append(sample)
            sampled += 1
            self._emit(MonitorEvent(
                type="performance:updated",
                execution_id=execution_id,
                data=sample.model_dump(mode="json"),
            ))
        return sampled

    async def start(self) -> None:
        """Start the periodic sampler as a background task."""
        if not self.enabled:
            logger.info("Progress monitor sampling disabled")
            return

        if self._running:
            logger.warning("Progress monitor sampler already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Progress monitor sampler started (interval: %.1fs)",
            self.sample_interval_seconds,
        )

    def stop(self) -> None:
        """Stop the periodic sampler."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            logger.info("Progress monitor sampler stopped")

    @property
    def is_sampling(self) -> bool:
        return self._running

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.sample_interval_seconds)
                if not self._running:
                    break
                self.sample_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Progress monitor sampler error: %s", e, exc_info=True)

    def shutdown(self) -> None:
        """Stop sampling and drop every registration and subscriber."""
        self.stop()
        with self._lock:
            self._tracked.clear()
            self._subscribers.clear()

    # ---- Subscription ----

    def subscribe(self, execution_id: str, callback: Subscriber) -> str:
        """Subscribe to one execution, or to all of them with ``"*"``. Returns a token."""
        token = str(uuid4())
        with self._lock:
            self._subscribers[token] = (execution_id, callback)
        return token

    def unsubscribe(self, token: str) -> bool:
        with self._lock:
            return self._subscribers.pop(token, None) is not None

    def subscriber_count(self, execution_id: str | None = None) -> int:
        with self._lock:
            if execution_id is None:
                return len(self._subscribers)
            return sum(1 for key, _ in self._subscribers.values() if key == execution_id)

    def _emit(self, event: MonitorEvent) -> None:
        with self._lock:
            targets = [
                (token, callback)
                for token, (key, callback) in self._subscribers.items()
                if key == WILDCARD or key == event.execution_id
            ]
        for token, callback in targets:
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Monitor subscriber %s failed on %s for %s",
                    token, event.type, event.execution_id,
                )

    # ---- Helpers ----

    def _retain(self, execution_id: str) -> None:
        """Mark an execution finished; evict the oldest past capacity. Caller holds the lock."""
        self._finished[execution_id] = None
        self._finished.move_to_end(execution_id)
        while len(self._finished) > self.finished_capacity:
            evicted, _ = self._finished.popitem(last=False)
            self._logs.pop(evicted, None)
            self._metrics.pop(evicted, None)

    def _require(self, execution_id: str) -> _Tracked:
        tracked = self._tracked.get(execution_id)
        if tracked is None:
            raise NotFoundError(
                f"Execution {execution_id} is not being monitored",
                code="EXECUTION_NOT_MONITORED",
                details={"execution_id": execution_id},
            )
        return tracked
