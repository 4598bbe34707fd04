"""Read-through LRU cache in front of a store.

The wrapped store stays the single source of truth. Reads go through the
cache; every write or delete goes to the store first and then evicts the
key, so the next read reloads what was actually persisted. Listing and
querying always hit the store.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Callable, Generic, TypeVar

from pydantic import BaseModel

from execflow.models.execution import ExecutionPage, ExecutionQuery, ExecutionRecord
from execflow.models.graph import GraphDefinition, GraphPage, GraphQuery
from execflow.storage.base import ExecutionStore, GraphStore

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class LRUCache(Generic[M]):
    """Bounded id → model map. Hands out deep copies only."""

    def __init__(self, max_size: int = 100) -> None:
        self.max_size = max_size
        self._items: OrderedDict[str, M] = OrderedDict()
        self._lock = threading.Lock()
        self._version = 0  # bumped on every invalidation
        self.stats = {"hits": 0, "misses": 0, "evictions": 0, "invalidations": 0}

    def get_or_load(self, key: str, loader: Callable[[str], M | None]) -> M | None:
        with self._lock:
            item = self._items.get(key)
            if item is not None:
                self._items.move_to_end(key)
                self.stats["hits"] += 1
                return item.model_copy(deep=True)
            self.stats["misses"] += 1
            version = self._version

        loaded = loader(key)
        if loaded is None:
            return None
        with self._lock:
            if version != self._version:
                # A write landed while loading; do not cache what may be stale
                return loaded
            self._items[key] = loaded.model_copy(deep=True)
            self._items.move_to_end(key)
            while len(self._items) > self.max_size:
                evicted, _ = self._items.popitem(last=False)
                self.stats["evictions"] += 1
                logger.debug("Cache evicted %s", evicted)
        return loaded

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._version += 1
            if self._items.pop(key, None) is not None:
                self.stats["invalidations"] += 1

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: str) -> bool:
        return key in self._items


class CachedGraphStore(GraphStore):
    def __init__(self, inner: GraphStore, max_size: int = 100) -> None:
        self.inner = inner
        self.cache: LRUCache[GraphDefinition] = LRUCache(max_size)

    def get(self, graph_id: str) -> GraphDefinition | None:
        return self.cache.get_or_load(graph_id, self.inner.get)

    def save(self, graph: GraphDefinition) -> None:
        try:
            self.inner.save(graph)
        finally:
            self.cache.invalidate(graph.id)

    def delete(self, graph_id: str) -> bool:
        try:
            return self.inner.delete(graph_id)
        finally:
            self.cache.invalidate(graph_id)

    def list(self) -> list[GraphDefinition]:
        return self.inner.list()

    def query(self, query: GraphQuery) -> GraphPage:
        return self.inner.query(query)


class CachedExecutionStore(ExecutionStore):
    def __init__(self, inner: ExecutionStore, max_size: int = 100) -> None:
        self.inner = inner
        self.cache: LRUCache[ExecutionRecord] = LRUCache(max_size)

    def get(self, execution_id: str) -> ExecutionRecord | None:
        return self.cache.get_or_load(execution_id, self.inner.get)

    def save(self, record: ExecutionRecord) -> None:
        try:
            self.inner.save(record)
        finally:
            self.cache.invalidate(record.id)

    def delete(self, execution_id: str) -> bool:
        try:
            return self.inner.delete(execution_id)
        finally:
            self.cache.invalidate(execution_id)

    def list(self) -> list[ExecutionRecord]:
        return self.inner.list()

    def query(self, query: ExecutionQuery) -> ExecutionPage:
        return self.inner.query(query)
