"""Execution record models.

Includes: ExecutionRecord and its parts (Pydantic), ExecutionQuery /
ExecutionPage / ExecutionSummaryStats (Pydantic), ExecutionRow (SQL).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator
from sqlmodel import JSON, Column, SQLModel
from sqlmodel import Field as SQLField

# === Statuses ===

ExecutionStatus = Literal["PENDING", "RUNNING", "COMPLETED", "FAILED", "CANCELLED", "PAUSED"]
NodeStatus = Literal["PENDING", "RUNNING", "COMPLETED", "FAILED", "SKIPPED"]
TriggerType = Literal["manual", "schedule", "event", "api"]

EXECUTION_STATUSES: tuple[str, ...] = (
    "PENDING", "RUNNING", "COMPLETED", "FAILED", "CANCELLED", "PAUSED",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def duration_ms(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)


# === Pydantic models ===


class NodeError(BaseModel):
    message: str
    code: str = ""
    stack: str = ""


class NodeExecutionRecord(BaseModel):
    """Outcome of one node within one execution. Upserted by node id."""

    node_id: str
    node_name: str = ""
    node_type: str = ""
    status: NodeStatus = "PENDING"
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration: int | None = None  # ms
    inputs: dict = Field(default_factory=dict)
    outputs: dict = Field(default_factory=dict)
    error: NodeError | None = None
    retry_count: int = 0
    logs: list[str] = Field(default_factory=list)


class Checkpoint(BaseModel):
    node_id: str
    timestamp: datetime = Field(default_factory=_utcnow)
    state: dict = Field(default_factory=dict)


class DeclaredNode(BaseModel):
    """A node of the graph as it was declared when the execution was triggered."""

    id: str
    name: str = ""
    type: str = ""


class ExecutionStats(BaseModel):
    total_nodes: int = 0
    completed_nodes: int = 0
    failed_nodes: int = 0
    skipped_nodes: int = 0
    success_rate: float = 0.0


class ExecutionTrigger(BaseModel):
    type: TriggerType = "manual"
    actor_id: str = ""
    actor_name: str = ""
    data: dict = Field(default_factory=dict)


class ExecutionContext(BaseModel):
    environment: str = "default"
    variables: dict = Field(default_factory=dict)
    metadata: dict = Field(default_factory=dict)


class ExecutionError(BaseModel):
    message: str
    code: str = ""
    node_id: str | None = None
    node_name: str | None = None


class ExecutionRecord(BaseModel):
    """System of record for one run of a graph."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    graph_id: str
    graph_name: str = ""
    graph_version: str = ""
    declared_nodes: list[DeclaredNode] = Field(default_factory=list)
    status: ExecutionStatus = "PENDING"
    start_time: datetime = Field(default_factory=_utcnow)
    end_time: datetime | None = None
    duration: int | None = None  # ms
    trigger: ExecutionTrigger = Field(default_factory=ExecutionTrigger)
    context: ExecutionContext = Field(default_factory=ExecutionContext)
    nodes: list[NodeExecutionRecord] = Field(default_factory=list)
    checkpoints: list[Checkpoint] = Field(default_factory=list)
    stats: ExecutionStats = Field(default_factory=ExecutionStats)
    error: ExecutionError | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def node_order(self) -> list[str]:
        return [n.id for n in self.declared_nodes]

    def declared(self, node_id: str) -> DeclaredNode | None:
        for node in self.declared_nodes:
            if node.id == node_id:
                return node
        return None

    def get_node(self, node_id: str) -> NodeExecutionRecord | None:
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        return None

    def node_index(self, node_id: str) -> int:
        for i, node in enumerate(self.nodes):
            if node.node_id == node_id:
                return i
        return -1

    def latest_checkpoint(self, node_id: str) -> Checkpoint | None:
        for checkpoint in reversed(self.checkpoints):
            if checkpoint.node_id == node_id:
                return checkpoint
        return None


SortField = Literal["start_time", "duration", "created_at"]


class ExecutionQuery(BaseModel):
    """Filters, sort and page for listing execution records."""

    graph_id: str | None = None
    statuses: list[ExecutionStatus] = Field(default_factory=list)
    start_after: datetime | None = None
    start_before: datetime | None = None
    trigger_type: TriggerType | None = None
    actor_id: str | None = None
    sort_by: SortField = "start_time"
    sort_order: Literal["asc", "desc"] = "desc"
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1)

    @field_validator("start_after", "start_before")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def matches(self, record: ExecutionRecord) -> bool:
        if self.graph_id and record.graph_id != self.graph_id:
            return False
        if self.statuses and record.status not in self.statuses:
            return False
        if self.start_after and record.start_time < self.start_after:
            return False
        if self.start_before and record.start_time > self.start_before:
            return False
        if self.trigger_type and record.trigger.type != self.trigger_type:
            return False
        if self.actor_id and record.trigger.actor_id != self.actor_id:
            return False
        return True

    def sort_key(self, record: ExecutionRecord):
        if self.sort_by == "duration":
            # Unfinished runs sort as zero-length
            return record.duration or 0
        return getattr(record, self.sort_by)


class ExecutionPage(BaseModel):
    items: list[ExecutionRecord] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20
    total_pages: int = 0


class GraphExecutionStats(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    average_duration: float = 0.0


class ExecutionSummaryStats(BaseModel):
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_graph: dict[str, GraphExecutionStats] = Field(default_factory=dict)
    average_duration: float = 0.0
    success_rate: float = 0.0
    recent_executions: int = 0


# === SQL Tables ===


class ExecutionRow(SQLModel, table=True):
    """Stored execution record: one JSON document per id."""

    __tablename__ = "execution_record"

    id: str = SQLField(primary_key=True)
    graph_id: str = SQLField(index=True)
    status: str = SQLField(default="PENDING", index=True)
    document: dict = SQLField(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = SQLField(default_factory=_utcnow)
    updated_at: datetime = SQLField(default_factory=_utcnow)
