"""Tests for the monitor SSE hub."""

import os
import sys
import asyncio

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from execflow.api.hub import MonitorStreamHub, format_sse
from execflow.models.execution import DeclaredNode, ExecutionRecord
from execflow.models.monitor import MonitorEvent
from execflow.workflows.monitor import WILDCARD, ProgressMonitor


def event(event_type="node:completed", execution_id="ex1", **data):
    return MonitorEvent(type=event_type, execution_id=execution_id, data=data)


def test_subscribe_unsubscribe():
    """Hub should track subscribers."""
    hub = MonitorStreamHub()
    assert hub.subscriber_count == 0

    q1 = hub.subscribe()
    q2 = hub.subscribe_execution("ex1")
    assert hub.subscriber_count == 2

    hub.unsubscribe(q1)
    hub.unsubscribe_execution("ex1", q2)
    assert hub.subscriber_count == 0
    print("  PASS: subscribe_unsubscribe")


def test_publish_routes_by_execution():
    """Every-event clients get everything; execution clients get their own."""
    hub = MonitorStreamHub()
    everything = hub.subscribe()
    ex1 = hub.subscribe_execution("ex1")
    ex2 = hub.subscribe_execution("ex2")

    assert hub.publish(event(execution_id="ex1")) == 2
    assert hub.publish(event("execution:started", execution_id="ex2")) == 2

    assert everything.qsize() == 2
    assert ex1.get_nowait().execution_id == "ex1"
    assert ex1.qsize() == 0
    assert ex2.get_nowait().type == "execution:started"
    print("  PASS: publish routing")


def test_format_sse():
    formatted = format_sse(event("execution:completed", execution_id="ex9", duration=1200))
    assert formatted.startswith("event: execution:completed\n")
    assert '"execution_id": "ex9"' in formatted
    assert '"duration": 1200' in formatted
    assert formatted.endswith("\n\n")
    print("  PASS: format_sse")


def test_full_queue_cleanup():
    """Subscribers whose queue is full are dropped."""
    hub = MonitorStreamHub()
    q = hub.subscribe()
    for i in range(100):
        q.put_nowait(event(i=i))

    sent = hub.publish(event("log:added"))
    assert sent == 0
    assert hub.subscriber_count == 0
    print("  PASS: full_queue_cleanup")


def test_event_generator():
    """Event generator should yield SSE strings until the None terminator."""
    hub = MonitorStreamHub()
    q = hub.subscribe()
    q.put_nowait(event("execution:started"))
    q.put_nowait(event("execution:completed"))
    q.put_nowait(None)

    async def collect():
        return [msg async for msg in hub.event_generator(q)]

    results = asyncio.run(collect())
    assert len(results) == 2
    assert "execution:started" in results[0]
    assert "execution:completed" in results[1]
    # Generator exit unsubscribes
    assert hub.subscriber_count == 0
    print("  PASS: event_generator")


def test_heartbeat_on_idle_queue():
    hub = MonitorStreamHub(heartbeat_interval=0.01)
    q = hub.subscribe()

    async def first_chunk():
        generator = hub.event_generator(q)
        chunk = await generator.__anext__()
        await generator.aclose()
        return chunk

    assert asyncio.run(first_chunk()) == ": heartbeat\n\n"


def test_disconnect_all():
    hub = MonitorStreamHub()
    q1 = hub.subscribe()
    q2 = hub.subscribe_execution("ex1")

    asyncio.run(hub.disconnect_all())
    assert hub.subscriber_count == 0
    assert q1.get_nowait() is None
    assert q2.get_nowait() is None
    print("  PASS: disconnect_all")


def test_monitor_events_reach_hub():
    """A wildcard monitor subscription feeds the hub."""
    hub = MonitorStreamHub()
    monitor = ProgressMonitor(enabled=False)
    monitor.subscribe(WILDCARD, hub.publish)
    q = hub.subscribe_execution("run-1")

    record = ExecutionRecord(
        id="run-1",
        graph_id="g1",
        status="RUNNING",
        declared_nodes=[DeclaredNode(id=n, type="transform") for n in ("a", "b")],
    )
    monitor.start_monitoring(record)
    monitor.update_node_status("run-1", "a", "RUNNING")

    types = []
    while not q.empty():
        types.append(q.get_nowait().type)
    assert types[0] == "execution:started"
    assert "node:started" in types
    print("  PASS: monitor → hub")


def test_fastapi_endpoints():
    from fastapi import FastAPI
    from execflow.api.v1.sse import router

    app = FastAPI()
    app.include_router(router)
    routes = [r.path for r in app.routes]
    assert "/api/v1/sse" in routes
    assert "/api/v1/sse/executions/{execution_id}" in routes
    print("  PASS: fastapi_endpoints (routes registered)")
