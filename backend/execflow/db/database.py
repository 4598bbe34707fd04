"""Database setup — SQLite with WAL mode via SQLModel/SQLAlchemy.

SQLite holds one JSON document per graph definition and per execution
record, with a few indexed columns for filtering.
"""

from __future__ import annotations

import os

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine


def prepare_database_url(url: str) -> str:
    """Ensure the data directory of a file-backed SQLite URL exists."""
    if url.startswith("sqlite:///") and url != "sqlite:///:memory:":
        db_path = url.replace("sqlite:///", "")
        db_dir = os.path.dirname(db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
    return url


# Enable WAL mode for all SQLite connections
@event.listens_for(Engine, "connect")
def set_sqlite_wal(dbapi_connection, connection_record):
    """Enable WAL mode so monitor reads do not block recorder writes."""
    if type(dbapi_connection).__module__.split(".")[0] != "sqlite3":
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")  # Safe with WAL
    cursor.execute("PRAGMA busy_timeout=5000")    # 5s wait on lock
    cursor.close()


def make_engine(url: str) -> Engine:
    """Create an engine for the given URL.

    In-memory SQLite shares a single connection across threads so every
    session sees the same database.
    """
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(
        prepare_database_url(url),
        echo=False,
        connect_args={"check_same_thread": False},  # Required for SQLite + async
    )


def create_db_and_tables(engine: Engine) -> None:
    """Create all tables defined by SQLModel metadata."""
    # Import table models so SQLModel metadata registers them
    from execflow.models.execution import ExecutionRow  # noqa: F401
    from execflow.models.graph import GraphRow  # noqa: F401

    SQLModel.metadata.create_all(engine)