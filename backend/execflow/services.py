"""Service construction.

Builds the store, recorder, monitor, recovery controller and coordinator
once at startup and hands them out by reference. Nothing here is a
module-level instance; the FastAPI lifespan keeps the result on
``app.state.services``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.engine import Engine

from execflow.api.hub import MonitorStreamHub
from execflow.config import Settings
from execflow.db.database import create_db_and_tables, make_engine
from execflow.storage.base import ExecutionStore, GraphStore
from execflow.storage.cache import CachedExecutionStore, CachedGraphStore
from execflow.storage.memory_store import InMemoryExecutionStore, InMemoryGraphStore
from execflow.storage.sql_store import SQLExecutionStore, SQLGraphStore
from execflow.workflows.coordinator import ExecutionCoordinator
from execflow.workflows.engine import ExecutionStateMachine
from execflow.workflows.monitor import WILDCARD, ProgressMonitor
from execflow.workflows.recorder import ExecutionRecorder
from execflow.workflows.recovery import RecoveryController
from execflow.workflows.validator import GraphValidator

logger = logging.getLogger(__name__)


@dataclass
class Services:
    graphs: GraphStore
    executions: ExecutionStore
    validator: GraphValidator
    recorder: ExecutionRecorder
    monitor: ProgressMonitor
    recovery: RecoveryController
    coordinator: ExecutionCoordinator
    hub: MonitorStreamHub
    settings: Settings
    db_engine: Engine | None = None

    async def start(self) -> None:
        await self.monitor.start()

    async def stop(self) -> None:
        self.monitor.shutdown()
        await self.hub.disconnect_all()


def build_stores(settings: Settings) -> tuple[GraphStore, ExecutionStore, Engine | None]:
    if settings.store_backend == "memory":
        graphs: GraphStore = InMemoryGraphStore()
        executions: ExecutionStore = InMemoryExecutionStore()
        db_engine = None
    else:
        db_engine = make_engine(settings.database_url)
        create_db_and_tables(db_engine)
        graphs = SQLGraphStore(db_engine)
        executions = SQLExecutionStore(db_engine)

    if settings.store_cache_enabled and settings.store_cache_size > 0:
        graphs = CachedGraphStore(graphs, settings.store_cache_size)
        executions = CachedExecutionStore(executions, settings.store_cache_size)
    return graphs, executions, db_engine


def build_services(settings: Settings) -> Services:
    graphs, executions, db_engine = build_stores(settings)

    state_machine = ExecutionStateMachine()
    validator = GraphValidator(
        high_concurrency=settings.high_concurrency_threshold,
        low_timeout_ms=settings.low_timeout_threshold_ms,
        high_retry_count=settings.high_retry_threshold,
    )
    recorder = ExecutionRecorder(executions, state_machine)
    monitor = ProgressMonitor(
        log_capacity=settings.monitor_log_capacity,
        metrics_capacity=settings.monitor_metrics_capacity,
        finished_capacity=settings.monitor_finished_capacity,
        sample_interval_seconds=settings.monitor_sample_interval_seconds,
        enabled=settings.monitor_enabled,
    )
    recovery = RecoveryController(
        recorder,
        side_effect_node_types=settings.side_effect_node_types(),
        state_machine=state_machine,
    )
    coordinator = ExecutionCoordinator(graphs, recorder, monitor, recovery, validator)

    hub = MonitorStreamHub()
    monitor.subscribe(WILDCARD, hub.publish)

    logger.info(
        "Services built (store=%s, cache=%s)",
        settings.store_backend,
        settings.store_cache_enabled and settings.store_cache_size > 0,
    )
    return Services(
        graphs=graphs,
        executions=executions,
        validator=validator,
        recorder=recorder,
        monitor=monitor,
        recovery=recovery,
        coordinator=coordinator,
        hub=hub,
        settings=settings,
        db_engine=db_engine,
    )
