"""Shared test fixtures for execflow backend tests."""

import os
import sys

import pytest

# Ensure backend is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("MONITOR_ENABLED", "false")

from sqlmodel import SQLModel, create_engine
from sqlmodel.pool import StaticPool

from execflow.models.execution import ExecutionRow  # noqa: F401
from execflow.models.graph import GraphDefinition, GraphEdge, GraphNode, GraphRow  # noqa: F401
from execflow.storage.memory_store import InMemoryExecutionStore, InMemoryGraphStore
from execflow.workflows.coordinator import ExecutionCoordinator
from execflow.workflows.engine import ExecutionStateMachine
from execflow.workflows.monitor import ProgressMonitor
from execflow.workflows.recorder import ExecutionRecorder
from execflow.workflows.recovery import RecoveryController
from execflow.workflows.validator import GraphValidator


def make_graph(
    node_ids=("a", "b", "c"),
    edges=None,
    graph_id: str = "g1",
    node_types: dict | None = None,
    **kwargs,
) -> GraphDefinition:
    """Linear graph a -> b -> c unless ``edges`` ([(source, target), ...]) is given."""
    node_types = node_types or {}
    if edges is None:
        edges = list(zip(node_ids, node_ids[1:]))
    return GraphDefinition(
        id=graph_id,
        name=kwargs.pop("name", f"Graph {graph_id}"),
        nodes=[
            GraphNode(id=n, type=node_types.get(n, "transform"), label=n.upper())
            for n in node_ids
        ],
        edges=[
            GraphEdge(
                id=f"e_{s}_{t}",
                source=s,
                source_output="out",
                target=t,
                target_input="in",
            )
            for s, t in edges
        ],
        **kwargs,
    )


@pytest.fixture
def sql_engine():
    """In-memory SQLite engine with all execflow tables."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def execution_store():
    return InMemoryExecutionStore()


@pytest.fixture
def graph_store():
    return InMemoryGraphStore()


@pytest.fixture
def recorder(execution_store):
    return ExecutionRecorder(execution_store, ExecutionStateMachine())


@pytest.fixture
def monitor():
    return ProgressMonitor(sample_interval_seconds=0.01, enabled=False)


@pytest.fixture
def recovery(recorder):
    return RecoveryController(recorder)


@pytest.fixture
def coordinator(graph_store, recorder, monitor, recovery):
    return ExecutionCoordinator(graph_store, recorder, monitor, recovery, GraphValidator())


@pytest.fixture
def graph_factory():
    """The ``make_graph`` builder, for tests that need several graphs."""
    return make_graph
