"""SQLModel-backed stores: one JSON document per id, plus indexed columns.

Every write runs in its own session and commits once, so a failed write
leaves the previously persisted document in place. SQLAlchemy errors are
logged and re-raised as StorageError.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from execflow.models.execution import ExecutionPage, ExecutionQuery, ExecutionRecord, ExecutionRow
from execflow.models.graph import GraphDefinition, GraphRow
from execflow.storage.base import ExecutionStore, GraphStore, apply_execution_query
from execflow.workflows.errors import StorageError

logger = logging.getLogger(__name__)


class SQLGraphStore(GraphStore):
    """Graph definitions in the ``graph_definition`` table."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(self, graph_id: str) -> GraphDefinition | None:
        try:
            with Session(self.engine) as session:
                row = session.get(GraphRow, graph_id)
                if row is None:
                    return None
                return GraphDefinition.model_validate(row.document)
        except SQLAlchemyError as e:
            logger.error("Failed to load graph %s: %s", graph_id, e)
            raise StorageError(f"Failed to load graph {graph_id}") from e

    def save(self, graph: GraphDefinition) -> None:
        try:
            with Session(self.engine) as session:
                row = session.get(GraphRow, graph.id)
                if row is None:
                    row = GraphRow(id=graph.id)
                row.name = graph.name
                row.status = graph.status
                row.is_published = graph.is_published
                row.document = graph.to_document()
                row.updated_at = datetime.now(timezone.utc)
                session.add(row)
                session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to save graph %s: %s", graph.id, e)
            raise StorageError(f"Failed to save graph {graph.id}") from e

    def delete(self, graph_id: str) -> bool:
        try:
            with Session(self.engine) as session:
                row = session.get(GraphRow, graph_id)
                if row is None:
                    return False
                session.delete(row)
                session.commit()
                return True
        except SQLAlchemyError as e:
            logger.error("Failed to delete graph %s: %s", graph_id, e)
            raise StorageError(f"Failed to delete graph {graph_id}") from e

    def list(self) -> list[GraphDefinition]:
        try:
            with Session(self.engine) as session:
                rows = session.exec(select(GraphRow)).all()
                return [GraphDefinition.model_validate(row.document) for row in rows]
        except SQLAlchemyError as e:
            logger.error("Failed to list graphs: %s", e)
            raise StorageError("Failed to list graphs") from e


class SQLExecutionStore(ExecutionStore):
    """Execution records in the ``execution_record`` table."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(self, execution_id: str) -> ExecutionRecord | None:
        try:
            with Session(self.engine) as session:
                row = session.get(ExecutionRow, execution_id)
                if row is None:
                    return None
                return ExecutionRecord.model_validate(row.document)
        except SQLAlchemyError as e:
            logger.error("Failed to load execution %s: %s", execution_id, e)
            raise StorageError(f"Failed to load execution {execution_id}") from e

    def save(self, record: ExecutionRecord) -> None:
        try:
            with Session(self.engine) as session:
                row = session.get(ExecutionRow, record.id)
                if row is None:
                    row = ExecutionRow(id=record.id, graph_id=record.graph_id, created_at=record.created_at)
                row.graph_id = record.graph_id
                row.status = record.status
                row.document = record.model_dump(mode="json")
                row.updated_at = record.updated_at
                session.add(row)
                session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to save execution %s: %s", record.id, e)
            raise StorageError(f"Failed to save execution {record.id}") from e

    def delete(self, execution_id: str) -> bool:
        try:
            with Session(self.engine) as session:
                row = session.get(ExecutionRow, execution_id)
                if row is None:
                    return False
                session.delete(row)
                session.commit()
                return True
        except SQLAlchemyError as e:
            logger.error("Failed to delete execution %s: %s", execution_id, e)
            raise StorageError(f"Failed to delete execution {execution_id}") from e

    def list(self) -> list[ExecutionRecord]:
        return self._select()

    def query(self, query: ExecutionQuery) -> ExecutionPage:
        # Indexed columns narrow the candidates; the rest is filtered in Python
        return apply_execution_query(self._select(query.graph_id, query.statuses), query)

    def _select(
        self,
        graph_id: str | None = None,
        statuses: list[str] | None = None,
    ) -> list[ExecutionRecord]:
        statement = select(ExecutionRow)
        if graph_id:
            statement = statement.where(ExecutionRow.graph_id == graph_id)
        if statuses:
            statement = statement.where(col(ExecutionRow.status).in_(statuses))
        try:
            with Session(self.engine) as session:
                rows = session.exec(statement).all()
                return [ExecutionRecord.model_validate(row.document) for row in rows]
        except SQLAlchemyError as e:
            logger.error("Failed to list executions: %s", e)
            raise StorageError("Failed to list executions") from e
