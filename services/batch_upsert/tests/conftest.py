"""
Pytest fixtures for batch upsert tests.

Behavioral tests run on an in-memory SQLite database. PostgreSQL
integration tests require the DATABASE_URL environment variable and are
skipped if it is not set.
"""

import os

import pytest
from sqlalchemy import Boolean, Column, Integer, MetaData, String, Table, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from services.batch_upsert.engine import BatchEngine
from services.batch_upsert.routing import TableRegistry


def get_database_url() -> str | None:
    """Get database URL from environment."""
    return os.environ.get("DATABASE_URL")


def build_users_table(metadata: MetaData, name: str = "users") -> Table:
    """Users table used across the test suite."""
    return Table(
        name, metadata,
        Column("id", Integer, primary_key=True),
        Column("name", String(100), nullable=False),
        Column("email", String(255), unique=True),
        Column("is_admin", Boolean, nullable=False),
    )


@pytest.fixture
def sqlite_engine() -> Engine:
    """
    In-memory SQLite engine with working SAVEPOINT support.

    pysqlite's own transaction handling breaks SAVEPOINT, so BEGIN is
    emitted by SQLAlchemy instead.
    """
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    yield engine
    engine.dispose()


@pytest.fixture
def metadata() -> MetaData:
    return MetaData()


@pytest.fixture
def users_table(metadata) -> Table:
    return build_users_table(metadata)


@pytest.fixture
def registry(users_table) -> TableRegistry:
    """Registry with the users table as default and is_admin defaulting to False."""
    registry = TableRegistry(default_table="users")
    registry.register(users_table, defaults={"is_admin": False})
    return registry


@pytest.fixture
def batch(sqlite_engine, metadata, registry) -> BatchEngine:
    """Batch engine over a freshly created SQLite schema."""
    metadata.create_all(sqlite_engine)
    return BatchEngine(sqlite_engine, registry)


@pytest.fixture(scope="module")
def database_url() -> str:
    """
    Get database URL, skip if not set.

    This fixture ensures integration tests only run when
    a real PostgreSQL database is available.
    """
    url = get_database_url()
    if not url:
        pytest.skip("requires PostgreSQL integration DB (set DATABASE_URL)")
    return url
