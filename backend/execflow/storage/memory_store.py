"""In-process stores for tests and single-process deployments.

Documents are held in their JSON form, so every read returns a fresh copy
and callers can never mutate stored state by accident.
"""

from __future__ import annotations

import copy
import threading

from execflow.models.execution import ExecutionRecord
from execflow.models.graph import GraphDefinition
from execflow.storage.base import ExecutionStore, GraphStore


class InMemoryGraphStore(GraphStore):
    def __init__(self) -> None:
        self._docs: dict[str, dict] = {}
        self._lock = threading.Lock()

    def get(self, graph_id: str) -> GraphDefinition | None:
        with self._lock:
            doc = self._docs.get(graph_id)
        return GraphDefinition.model_validate(copy.deepcopy(doc)) if doc is not None else None

    def save(self, graph: GraphDefinition) -> None:
        doc = graph.to_document()
        with self._lock:
            self._docs[graph.id] = doc

    def delete(self, graph_id: str) -> bool:
        with self._lock:
            return self._docs.pop(graph_id, None) is not None

    def list(self) -> list[GraphDefinition]:
        with self._lock:
            docs = list(self._docs.values())
        return [GraphDefinition.model_validate(copy.deepcopy(d)) for d in docs]


class InMemoryExecutionStore(ExecutionStore):
    def __init__(self) -> None:
        self._docs: dict[str, dict] = {}
        self._lock = threading.Lock()

    def get(self, execution_id: str) -> ExecutionRecord | None:
        with self._lock:
            doc = self._docs.get(execution_id)
        return ExecutionRecord.model_validate(copy.deepcopy(doc)) if doc is not None else None

    def save(self, record: ExecutionRecord) -> None:
        doc = record.model_dump(mode="json")
        with self._lock:
            self._docs[record.id] = doc

    def delete(self, execution_id: str) -> bool:
        with self._lock:
            return self._docs.pop(execution_id, None) is not None

    def list(self) -> list[ExecutionRecord]:
        with self._lock:
            docs = list(self._docs.values())
        return [ExecutionRecord.model_validate(copy.deepcopy(d)) for d in docs]
