"""Progress monitor models — events, progress snapshots, logs and samples."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field

MonitorEventType = Literal[
    "execution:started",
    "execution:updated",
    "execution:completed",
    "execution:failed",
    "execution:cancelled",
    "execution:paused",
    "node:started",
    "node:completed",
    "node:failed",
    "node:skipped",
    "progress:updated",
    "performance:updated",
    "log:added",
]

LogLevel = Literal["debug", "info", "warn", "error"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MonitorEvent(BaseModel):
    """An event delivered to monitor subscribers."""

    type: MonitorEventType
    execution_id: str
    node_id: str | None = None
    timestamp: datetime = Field(default_factory=_utcnow)
    data: dict = Field(default_factory=dict)


class ExecutionProgress(BaseModel):
    execution_id: str
    status: str = "PENDING"
    total_nodes: int = 0
    completed_nodes: int = 0
    failed_nodes: int = 0
    running_nodes: int = 0
    pending_nodes: int = 0
    progress: float = 0.0  # 0..1
    current_node_id: str | None = None
    elapsed_time: int = 0  # ms
    estimated_time_remaining: int | None = None  # ms


class LogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=_utcnow)
    level: LogLevel = "info"
    message: str
    node_id: str | None = None
    data: dict = Field(default_factory=dict)


class PerformanceSample(BaseModel):
    timestamp: datetime = Field(default_factory=_utcnow)
    cpu_percent: float = 0.0
    memory_rss: int = 0  # bytes
    memory_percent: float = 0.0
    throughput: float = 0.0  # completed nodes per ms
    elapsed_time: int = 0  # ms
