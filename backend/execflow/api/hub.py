"""SSE hub for progress monitor events.

The hub subscribes to the ProgressMonitor's wildcard stream and fans each
MonitorEvent out to per-client asyncio queues. Clients either take every
event or only those of one execution.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncGenerator

from fastapi.responses import StreamingResponse

from execflow.models.monitor import MonitorEvent

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


class MonitorStreamHub:
    """Bridges monitor events onto SSE client queues.

    Usage:
        hub = MonitorStreamHub()
        monitor.subscribe("*", hub.publish)

        @router.get("/sse")
        async def sse_endpoint():
            return hub.create_response()
    """

    MAX_SUBSCRIBERS = 50  # Safety cap to prevent unbounded growth

    def __init__(self, heartbeat_interval: float = 30.0) -> None:
        self.heartbeat_interval = heartbeat_interval
        self._subscribers: list[asyncio.Queue[MonitorEvent | None]] = []
        # execution_id -> subscriber queues
        self._execution_queues: dict[str, list[asyncio.Queue[MonitorEvent | None]]] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers) + sum(len(q) for q in self._execution_queues.values())

    def subscribe(self) -> asyncio.Queue[MonitorEvent | None]:
        """Create a queue receiving every event. None signals disconnect."""
        if len(self._subscribers) >= self.MAX_SUBSCRIBERS:
            logger.warning(
                "SSE hub at capacity (%d/%d), evicting oldest subscriber",
                len(self._subscribers), self.MAX_SUBSCRIBERS,
            )
            oldest = self._subscribers.pop(0)
            try:
                oldest.put_nowait(None)
            except asyncio.QueueFull:
                pass

        queue: asyncio.Queue[MonitorEvent | None] = asyncio.Queue(maxsize=100)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[MonitorEvent | None]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def subscribe_execution(self, execution_id: str) -> asyncio.Queue[MonitorEvent | None]:
        """Create a queue receiving only events of ``execution_id``."""
        queue: asyncio.Queue[MonitorEvent | None] = asyncio.Queue(maxsize=200)
        self._execution_queues.setdefault(execution_id, []).append(queue)
        return queue

    def unsubscribe_execution(self, execution_id: str, queue: asyncio.Queue[MonitorEvent | None]) -> None:
        queues = self._execution_queues.get(execution_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._execution_queues.pop(execution_id, None)

    def publish(self, event: MonitorEvent) -> int:
        """Monitor callback: enqueue ``event`` for every matching client.

        Clients whose queue is full are dropped. Returns the number of
        queues that received the event.
        """
        sent = 0
        dead = []
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
                sent += 1
            except asyncio.QueueFull:
                dead.append(queue)
        for queue in dead:
            self._subscribers.remove(queue)

        queues = self._execution_queues.get(event.execution_id)
        if queues:
            dead = []
            for queue in queues:
                try:
                    queue.put_nowait(event)
                    sent += 1
                except asyncio.QueueFull:
                    dead.append(queue)
            for queue in dead:
                queues.remove(queue)
        return sent

    async def event_generator(
        self,
        queue: asyncio.Queue[MonitorEvent | None],
    ) -> AsyncGenerator[str, None]:
        """Yield SSE-formatted strings from a queue, with heartbeat comments."""
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=self.heartbeat_interval)
                    if event is None:
                        break
                    yield format_sse(event)
                except asyncio.TimeoutError:
                    yield ": heartbeat\n\n"
        finally:
            self.unsubscribe(queue)

    def create_response(self) -> StreamingResponse:
        queue = self.subscribe()
        return StreamingResponse(
            self.event_generator(queue),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    def create_execution_response(self, execution_id: str) -> StreamingResponse:
        queue = self.subscribe_execution(execution_id)

        async def _gen():
            try:
                async for chunk in self.event_generator(queue):
                    yield chunk
            finally:
                self.unsubscribe_execution(execution_id, queue)

        return StreamingResponse(_gen(), media_type="text/event-stream", headers=SSE_HEADERS)

    async def disconnect_all(self) -> None:
        """Disconnect every client (used during shutdown)."""
        for queue in self._subscribers:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
        self._subscribers.clear()
        for queues in self._execution_queues.values():
            for queue in queues:
                try:
                    queue.put_nowait(None)
                except asyncio.QueueFull:
                    pass
        self._execution_queues.clear()


def format_sse(event: MonitorEvent) -> str:
    """Format as ``event: <type>\\ndata: <json>\\n\\n``."""
    data = event.model_dump(mode="json")
    return f"event: {event.type}\ndata: {json.dumps(data, default=str)}\n\n"
