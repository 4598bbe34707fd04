"""Graph definition models.

Includes: GraphDefinition and its parts (Pydantic), GraphQuery / GraphPage
(Pydantic), import and registry stats results (Pydantic), GraphRow (SQL).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field
from sqlmodel import JSON, Column, SQLModel
from sqlmodel import Field as SQLField

EdgeType = Literal["data", "control", "error"]
BackoffStrategy = Literal["linear", "exponential", "fixed"]
ErrorHandling = Literal["stop", "continue", "rollback"]
GraphStatus = Literal["active", "inactive", "deprecated"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# === Pydantic models ===


class InputMapping(BaseModel):
    """Where a node's named input comes from: ``{"from": node_id, "output": name}``."""

    from_node: str = Field(default="", alias="from")
    output: str = ""

    model_config = {"populate_by_name": True}


class GraphNode(BaseModel):
    id: str
    type: str
    label: str = ""
    description: str = ""
    config: dict = Field(default_factory=dict)
    inputs: dict[str, InputMapping] = Field(default_factory=dict)
    enabled: bool = True


class GraphEdge(BaseModel):
    id: str
    source: str
    source_output: str = ""
    target: str
    target_input: str = ""
    label: str = ""
    type: EdgeType = "data"
    enabled: bool = True


class RetryPolicy(BaseModel):
    max_retries: int = 3
    backoff: BackoffStrategy = "exponential"
    initial_delay: int = 1000  # ms
    max_delay: int = 10000  # ms
    retryable_errors: list[str] = Field(default_factory=list)


class GraphSettings(BaseModel):
    max_concurrency: int = 5
    timeout: int = 300000  # ms
    retry_policy: RetryPolicy | None = None
    enable_cache: bool = False
    cache_ttl: int = 3600  # seconds
    error_handling: ErrorHandling = "stop"
    verbose_logging: bool = False
    enable_checkpoint: bool = True
    checkpoint_interval: int = 5  # nodes between checkpoints


class GraphMetadata(BaseModel):
    tags: list[str] = Field(default_factory=list)
    category: str = ""
    is_public: bool = False
    usage_count: int = 0
    custom: dict = Field(default_factory=dict)


class GraphDefinition(BaseModel):
    """A declared task graph: nodes, edges and execution settings."""

    id: str
    name: str
    version: str = "1.0.0"
    description: str = ""
    author: str = ""
    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)
    settings: GraphSettings | None = None
    metadata: GraphMetadata = Field(default_factory=GraphMetadata)
    status: GraphStatus = "active"
    is_published: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def node_ids(self) -> list[str]:
        return [n.id for n in self.nodes]

    def get_node(self, node_id: str) -> GraphNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def to_document(self) -> dict:
        """JSON-safe dict, with input mappings under their ``from`` key."""
        return self.model_dump(mode="json", by_alias=True)


GraphSortField = Literal["name", "created_at", "updated_at", "usage_count"]


class GraphQuery(BaseModel):
    """Filters for listing stored graph definitions."""

    tags: list[str] = Field(default_factory=list)
    category: str | None = None
    status: GraphStatus | None = None
    published_only: bool = False
    author: str | None = None
    search: str | None = None
    sort_by: GraphSortField = "updated_at"
    sort_order: Literal["asc", "desc"] = "desc"
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1)

    def matches(self, graph: GraphDefinition) -> bool:
        if self.tags and not set(self.tags) & set(graph.metadata.tags):
            return False
        if self.category and graph.metadata.category != self.category:
            return False
        if self.status and graph.status != self.status:
            return False
        if self.published_only and not graph.is_published:
            return False
        if self.author and graph.author != self.author:
            return False
        if self.search:
            needle = self.search.lower()
            haystack = " ".join([graph.name, graph.description, *graph.metadata.tags]).lower()
            if needle not in haystack:
                return False
        return True

    def sort_key(self, graph: GraphDefinition):
        if self.sort_by == "name":
            return graph.name.lower()
        if self.sort_by == "usage_count":
            return graph.metadata.usage_count
        return getattr(graph, self.sort_by)


class GraphPage(BaseModel):
    items: list[GraphDefinition] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20
    total_pages: int = 0


class GraphImportFailure(BaseModel):
    graph_id: str = ""
    reason: str


class GraphImportResult(BaseModel):
    """Outcome of a batch import. Every input lands in exactly one list."""

    imported: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)  # already stored, overwrite off
    failed: list[GraphImportFailure] = Field(default_factory=list)


class GraphRegistryStats(BaseModel):
    total_graphs: int = 0
    published_count: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_category: dict[str, int] = Field(default_factory=dict)
    total_usage: int = 0


# === SQL Tables ===


class GraphRow(SQLModel, table=True):
    """Stored graph definition: one JSON document per id."""

    __tablename__ = "graph_definition"

    id: str = SQLField(primary_key=True)
    name: str = ""
    status: str = SQLField(default="active", index=True)
    is_published: bool = False
    document: dict = SQLField(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = SQLField(default_factory=_utcnow)
