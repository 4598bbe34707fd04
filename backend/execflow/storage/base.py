"""Store contracts for graph definitions and execution records.

Both stores are keyed by id and must give read-after-write consistency per
key with atomic per-key writes. ``query`` has a default implementation over
``list``; backends override it when they can filter closer to the data.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import TypeVar

from execflow.models.execution import ExecutionPage, ExecutionQuery, ExecutionRecord
from execflow.models.graph import GraphDefinition, GraphPage, GraphQuery

T = TypeVar("T")


def paginate(items: list[T], page: int, page_size: int) -> tuple[list[T], int]:
    """Slice one page out of ``items``. Returns (page_items, total_pages)."""
    total_pages = math.ceil(len(items) / page_size) if page_size else 0
    start = (page - 1) * page_size
    return items[start:start + page_size], total_pages


class GraphStore(ABC):
    @abstractmethod
    def get(self, graph_id: str) -> GraphDefinition | None: ...

    @abstractmethod
    def save(self, graph: GraphDefinition) -> None: ...

    @abstractmethod
    def delete(self, graph_id: str) -> bool: ...

    @abstractmethod
    def list(self) -> list[GraphDefinition]: ...

    def exists(self, graph_id: str) -> bool:
        return self.get(graph_id) is not None

    def query(self, query: GraphQuery) -> GraphPage:
        return apply_graph_query(self.list(), query)


class ExecutionStore(ABC):
    @abstractmethod
    def get(self, execution_id: str) -> ExecutionRecord | None: ...

    @abstractmethod
    def save(self, record: ExecutionRecord) -> None: ...

    @abstractmethod
    def delete(self, execution_id: str) -> bool: ...

    @abstractmethod
    def list(self) -> list[ExecutionRecord]: ...

    def exists(self, execution_id: str) -> bool:
        return self.get(execution_id) is not None

    def query(self, query: ExecutionQuery) -> ExecutionPage:
        return apply_execution_query(self.list(), query)


def apply_graph_query(graphs: list[GraphDefinition], query: GraphQuery) -> GraphPage:
    matched = [g for g in graphs if query.matches(g)]
    matched.sort(key=query.sort_key, reverse=query.sort_order == "desc")
    items, total_pages = paginate(matched, query.page, query.page_size)
    return GraphPage(
        items=items,
        total=len(matched),
        page=query.page,
        page_size=query.page_size,
        total_pages=total_pages,
    )


def apply_execution_query(records: list[ExecutionRecord], query: ExecutionQuery) -> ExecutionPage:
    matched = [r for r in records if query.matches(r)]
    matched.sort(key=query.sort_key, reverse=query.sort_order == "desc")
    items, total_pages = paginate(matched, query.page, query.page_size)
    return ExecutionPage(
        items=items,
        total=len(matched),
        page=query.page,
        page_size=query.page_size,
        total_pages=total_pages,
    )
