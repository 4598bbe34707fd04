"""Tests for the SQL and in-memory stores and the shared query helpers."""

import os
import sys
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

import pytest
from sqlalchemy.exc import OperationalError

from execflow.models.execution import (
    ExecutionQuery,
    ExecutionRecord,
    ExecutionTrigger,
    NodeExecutionRecord,
)
from execflow.models.graph import GraphMetadata, GraphQuery, InputMapping
from execflow.storage.base import paginate
from execflow.storage.memory_store import InMemoryExecutionStore, InMemoryGraphStore
from execflow.storage.sql_store import SQLExecutionStore, SQLGraphStore
from execflow.workflows.errors import StorageError

T0 = datetime(2026, 3, 1, tzinfo=timezone.utc)


@pytest.fixture(params=["sql", "memory"])
def stores(request, sql_engine):
    if request.param == "sql":
        return SQLGraphStore(sql_engine), SQLExecutionStore(sql_engine)
    return InMemoryGraphStore(), InMemoryExecutionStore()


def make_record(graph_id="g1", status="COMPLETED", start_offset_min=0, duration=None, **kwargs):
    return ExecutionRecord(
        graph_id=graph_id,
        status=status,
        start_time=T0 + timedelta(minutes=start_offset_min),
        duration=duration,
        **kwargs,
    )


# === Round trips ===

def test_execution_round_trip(stores):
    _, executions = stores
    record = make_record(
        status="RUNNING",
        trigger=ExecutionTrigger(type="api", actor_id="u1"),
        nodes=[NodeExecutionRecord(node_id="a", status="COMPLETED", outputs={"rows": 3})],
    )
    executions.save(record)

    loaded = executions.get(record.id)
    assert loaded is not None
    assert loaded.status == "RUNNING"
    assert loaded.trigger.actor_id == "u1"
    assert loaded.nodes[0].outputs == {"rows": 3}
    assert loaded.start_time == T0
    assert executions.exists(record.id)
    print("  PASS: execution round trip")


def test_execution_overwrite_and_delete(stores):
    _, executions = stores
    record = make_record(status="RUNNING")
    executions.save(record)
    record.status = "FAILED"
    executions.save(record)
    assert executions.get(record.id).status == "FAILED"
    assert len(executions.list()) == 1

    assert executions.delete(record.id) is True
    assert executions.get(record.id) is None
    assert executions.delete(record.id) is False


def test_reads_are_copies(stores):
    _, executions = stores
    record = make_record()
    executions.save(record)
    loaded = executions.get(record.id)
    loaded.status = "CANCELLED"
    assert executions.get(record.id).status == "COMPLETED"


def test_graph_round_trip_keeps_input_aliases(stores, graph_factory):
    graphs, _ = stores
    graph = graph_factory()
    graph.nodes[1].inputs = {"rows": InputMapping(from_node="a", output="out")}
    graphs.save(graph)

    loaded = graphs.get(graph.id)
    assert loaded.nodes[1].inputs["rows"].from_node == "a"
    assert loaded.to_document()["nodes"][1]["inputs"]["rows"]["from"] == "a"
    assert graphs.exists("g1")
    assert graphs.delete("g1") is True
    assert graphs.get("g1") is None


# === Execution queries ===

def test_query_filters_by_graph_and_status(stores):
    _, executions = stores
    executions.save(make_record("g1", "COMPLETED"))
    executions.save(make_record("g1", "FAILED"))
    executions.save(make_record("g2", "COMPLETED"))

    page = executions.query(ExecutionQuery(graph_id="g1"))
    assert page.total == 2

    page = executions.query(ExecutionQuery(statuses=["COMPLETED"]))
    assert page.total == 2
    assert {r.graph_id for r in page.items} == {"g1", "g2"}

    page = executions.query(ExecutionQuery(graph_id="g1", statuses=["FAILED", "CANCELLED"]))
    assert page.total == 1
    assert page.items[0].status == "FAILED"


def test_query_time_window_and_trigger(stores):
    _, executions = stores
    executions.save(make_record(start_offset_min=0, trigger=ExecutionTrigger(type="schedule")))
    executions.save(make_record(start_offset_min=30, trigger=ExecutionTrigger(type="api", actor_id="u1")))
    executions.save(make_record(start_offset_min=60, trigger=ExecutionTrigger(type="api", actor_id="u2")))

    page = executions.query(ExecutionQuery(start_after=T0 + timedelta(minutes=10)))
    assert page.total == 2
    page = executions.query(ExecutionQuery(start_before=T0 + timedelta(minutes=30)))
    assert page.total == 2
    page = executions.query(ExecutionQuery(trigger_type="api", actor_id="u2"))
    assert page.total == 1


def test_query_naive_datetimes_are_utc():
    query = ExecutionQuery(start_after=datetime(2026, 3, 1, 0, 10))
    assert query.start_after.tzinfo is not None
    assert query.matches(make_record(start_offset_min=20))


def test_query_sort_and_pagination(stores):
    _, executions = stores
    for i in range(5):
        executions.save(make_record(start_offset_min=i, duration=(5 - i) * 100))

    page = executions.query(ExecutionQuery(page=1, page_size=2))
    assert page.total == 5
    assert page.total_pages == 3
    assert [r.start_time for r in page.items] == [T0 + timedelta(minutes=4), T0 + timedelta(minutes=3)]

    page = executions.query(ExecutionQuery(page=3, page_size=2))
    assert len(page.items) == 1
    assert page.items[0].start_time == T0

    page = executions.query(ExecutionQuery(sort_by="duration", sort_order="asc"))
    assert [r.duration for r in page.items] == [100, 200, 300, 400, 500]
    print("  PASS: sort + pagination")


def test_duration_sort_treats_unfinished_as_zero(stores):
    _, executions = stores
    executions.save(make_record(duration=300))
    executions.save(make_record(status="RUNNING", duration=None))
    page = executions.query(ExecutionQuery(sort_by="duration", sort_order="asc"))
    assert [r.status for r in page.items] == ["RUNNING", "COMPLETED"]


def test_paginate_past_end():
    items, total_pages = paginate([1, 2, 3], page=5, page_size=2)
    assert items == []
    assert total_pages == 2


# === Graph queries ===

def test_graph_query_filters(stores, graph_factory):
    graphs, _ = stores
    graphs.save(graph_factory(
        graph_id="etl", name="Nightly ETL", author="ops",
        metadata=GraphMetadata(tags=["etl", "nightly"], category="data", usage_count=5),
        is_published=True,
    ))
    graphs.save(graph_factory(
        graph_id="mail", name="Mailer", author="growth",
        metadata=GraphMetadata(tags=["email"], category="comms", usage_count=9),
        status="deprecated",
    ))

    assert graphs.query(GraphQuery(tags=["nightly"])).items[0].id == "etl"
    assert graphs.query(GraphQuery(category="comms")).items[0].id == "mail"
    assert graphs.query(GraphQuery(status="deprecated")).total == 1
    assert graphs.query(GraphQuery(published_only=True)).items[0].id == "etl"
    assert graphs.query(GraphQuery(author="ops")).total == 1
    assert graphs.query(GraphQuery(search="mail")).items[0].id == "mail"

    by_usage = graphs.query(GraphQuery(sort_by="usage_count", sort_order="desc"))
    assert [g.id for g in by_usage.items] == ["mail", "etl"]
    by_name = graphs.query(GraphQuery(sort_by="name", sort_order="asc"))
    assert [g.id for g in by_name.items] == ["mail", "etl"]


# === Failures ===

def test_sql_errors_become_storage_errors(sql_engine):
    executions = SQLExecutionStore(sql_engine)
    record = make_record()
    executions.save(record)
    with sql_engine.begin() as conn:
        conn.exec_driver_sql("DROP TABLE execution_record")

    with pytest.raises(StorageError) as exc_info:
        executions.get(record.id)
    assert exc_info.value.code == "STORAGE_ERROR"
    # Backend unavailable, not a server bug
    assert exc_info.value.status_code == 503
    assert isinstance(exc_info.value.__cause__, OperationalError)
